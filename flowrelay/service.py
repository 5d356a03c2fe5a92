"""Coordinators used by the CLI and by embedding applications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import FlowRelayConfig
from .contracts import (
    ConnectionStatus,
    GraphDefinition,
    ProviderConnection,
    RunRecord,
    RunStatus,
    WorkflowPreview,
    WorkflowSummary,
    utcnow,
)
from .errors import AuthenticationError, ConnectionNotFoundError, NotFoundError
from .http import HttpClient
from .persistence.repository import Repository
from .providers import PROVIDERS, BaseProvider, get_provider
from .runner import OrchestratorRunner
from .utils.correlation import decode_correlation_id, is_composite

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {"n8n": "n8n", "make": "Make", "zapier": "Zapier"}


class OrchestratorService:
    """Graph CRUD, run creation and callback delivery."""

    def __init__(
        self,
        repository: Repository,
        runner: OrchestratorRunner | None = None,
        config: FlowRelayConfig | None = None,
    ) -> None:
        self._repository = repository
        self._runner = runner or OrchestratorRunner(repository, config=config)
        self._tasks: set[asyncio.Task] = set()

    async def list_graphs(self, workspace_id: Optional[str] = None) -> List[GraphDefinition]:
        return await self._repository.list_graphs(workspace_id)

    async def get_graph(self, graph_id: str) -> GraphDefinition:
        graph = await self._repository.get_graph(graph_id)
        if graph is None:
            raise NotFoundError(f"Graph {graph_id} not found")
        return graph

    async def create_graph(
        self, data: GraphDefinition | Dict[str, Any], workspace_id: Optional[str] = None
    ) -> GraphDefinition:
        graph = data if isinstance(data, GraphDefinition) else GraphDefinition.model_validate(data)
        if workspace_id:
            graph.workspace_id = workspace_id
        return await self._repository.save_graph(graph)

    async def update_graph(self, graph_id: str, changes: Dict[str, Any]) -> GraphDefinition:
        graph = await self.get_graph(graph_id)
        merged = {**graph.model_dump(by_alias=True), **changes, "id": graph.id}
        updated = GraphDefinition.model_validate(merged)
        return await self._repository.save_graph(updated)

    async def delete_graph(self, graph_id: str) -> None:
        if not await self._repository.delete_graph(graph_id):
            raise NotFoundError(f"Graph {graph_id} not found")

    async def run(self, graph_id: str, inputs: Any = None) -> RunRecord:
        """Create a run and start executing it in the background.

        Returns a snapshot of the run as it was when execution started; use
        :meth:`get_run` to observe progress.
        """
        graph = await self.get_graph(graph_id)
        run = RunRecord(graph_id=graph.id, inputs=inputs)
        await self._repository.save_run(run)

        run.transition(RunStatus.RUNNING)
        run.append_log("Starting orchestration")
        await self._repository.save_run(run)
        snapshot = run.model_copy(deep=True)

        task = asyncio.create_task(self._runner.execute(graph, run, inputs))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return snapshot

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Orchestration execution error: {exc}")

    async def wait_for_runs(self) -> None:
        """Wait until every background run started by this service settles."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def get_runs(self, graph_id: str) -> List[RunRecord]:
        return await self._repository.list_runs(graph_id)

    async def get_run(self, run_id: str) -> RunRecord:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def handle_callback(self, token: str, payload: Any) -> RunRecord:
        """Route a callback to its run.

        ``token`` is either the run's correlation token or a composite
        ``graph:run[:node]`` id addressing one parked node.
        """
        run = await self._repository.find_run_by_token(token)
        node_id = None
        if run is None and is_composite(token):
            parts = decode_correlation_id(token)
            candidate = await self._repository.get_run(parts.run_id)
            if candidate is not None and candidate.graph_id == parts.graph_id:
                run, node_id = candidate, parts.node_id
        if run is None:
            raise NotFoundError(f"Run with token {token} not found")
        return await self._runner.resume(run, payload, node_id)


class ConnectionService:
    """Manage stored provider credentials."""

    def __init__(
        self,
        repository: Repository,
        http: HttpClient | None = None,
        providers: Optional[Dict[str, BaseProvider]] = None,
    ) -> None:
        self._repository = repository
        self._http = http
        self._providers = dict(providers or {})

    def _provider(self, name: str) -> BaseProvider:
        if name not in self._providers:
            self._providers[name] = get_provider(name, self._repository, self._http)
        return self._providers[name]

    async def connect(
        self,
        provider: str,
        credentials: Dict[str, Any],
        workspace_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ProviderConnection:
        adapter = self._provider(provider)
        if not await adapter.authenticate(credentials):
            raise AuthenticationError("Invalid credentials")

        for existing in await self._repository.list_connections(workspace_id):
            if (
                existing.provider == adapter.name
                and existing.workspace_id == workspace_id
                and existing.status == ConnectionStatus.ACTIVE
            ):
                existing.status = ConnectionStatus.INACTIVE
                await self._repository.save_connection(existing)

        connection = ProviderConnection(
            workspace_id=workspace_id,
            provider=adapter.name,
            name=name,
            credentials=credentials,
            last_sync=utcnow(),
        )
        await self._repository.save_connection(connection)
        logger.info(f"Connected {adapter.name} for workspace {workspace_id}")
        return connection

    async def disconnect(self, connection_id: str, workspace_id: Optional[str] = None) -> None:
        connection = await self._repository.get_connection(connection_id)
        if connection is None or (workspace_id and connection.workspace_id != workspace_id):
            raise NotFoundError("Connection not found")
        await self._repository.delete_connection(connection_id)

    async def test(self, provider: str, credentials: Dict[str, Any]) -> bool:
        adapter = self._provider(provider)
        try:
            return bool(await adapter.authenticate(credentials))
        except Exception as exc:
            logger.warning(f"Testing {provider} credentials failed: {exc}")
            return False

    async def list(self, workspace_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [c.redacted() for c in await self._repository.list_connections(workspace_id)]

    async def list_providers(self, workspace_id: Optional[str] = None) -> List[Dict[str, Any]]:
        providers = []
        for key in PROVIDERS:
            connection = await self._repository.find_connection(workspace_id, key)
            providers.append(
                {
                    "id": key,
                    "name": PROVIDER_NAMES.get(key, key),
                    "status": "connected" if connection else "disconnected",
                    "type": "external",
                    "connectionId": connection.id if connection else None,
                }
            )
        return providers

    async def _active_connection(self, provider: str, workspace_id: Optional[str]) -> str:
        connection = await self._repository.find_connection(workspace_id, provider)
        if connection is None:
            raise ConnectionNotFoundError(f"No active connection found for provider: {provider}")
        return connection.id

    async def list_workflows(
        self, provider: str, workspace_id: Optional[str] = None
    ) -> List[WorkflowSummary]:
        adapter = self._provider(provider)
        connection_id = await self._active_connection(adapter.name, workspace_id)
        return await adapter.list_workflows(connection_id)

    async def get_workflow_preview(
        self, provider: str, workflow_id: str, workspace_id: Optional[str] = None
    ) -> WorkflowPreview:
        adapter = self._provider(provider)
        connection_id = await self._active_connection(adapter.name, workspace_id)
        return await adapter.get_workflow_preview(workflow_id, connection_id)
