"""In-memory implementation of the flowrelay repositories."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional

from ..contracts import (
    ConnectionStatus,
    GraphDefinition,
    ProviderConnection,
    RunRecord,
    utcnow,
)
from ..errors import StaleRunError
from .repository import Repository


class InMemoryRepository(Repository):
    """Store graphs, runs and connections in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers see the same isolation a database would give them.
    """

    def __init__(self) -> None:
        self._graphs: Dict[str, GraphDefinition] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._connections: Dict[str, ProviderConnection] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Graphs
    async def save_graph(self, graph: GraphDefinition) -> GraphDefinition:
        graph.updated_at = utcnow()
        self._graphs[graph.id] = graph.model_copy(deep=True)
        return graph

    async def get_graph(self, graph_id: str) -> GraphDefinition | None:
        graph = self._graphs.get(graph_id)
        return graph.model_copy(deep=True) if graph else None

    async def list_graphs(self, workspace_id: Optional[str] = None) -> list[GraphDefinition]:
        graphs = [
            g.model_copy(deep=True)
            for g in self._graphs.values()
            if workspace_id is None or g.workspace_id == workspace_id
        ]
        return sorted(graphs, key=lambda g: g.updated_at, reverse=True)

    async def delete_graph(self, graph_id: str) -> bool:
        return self._graphs.pop(graph_id, None) is not None

    # ------------------------------------------------------------------
    # Runs
    async def save_run(self, run: RunRecord) -> RunRecord:
        async with self._lock:
            stored = self._runs.get(run.id)
            if stored is not None and stored.version != run.version:
                raise StaleRunError(
                    f"Run {run.id} is at version {stored.version}, not {run.version}"
                )
            run.version += 1
            run.updated_at = utcnow()
            copy = run.model_copy(deep=True)
            if stored is not None:
                copy.lease_owner = stored.lease_owner
                copy.locked_until = stored.locked_until
            self._runs[run.id] = copy
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def find_run_by_token(self, token: str) -> RunRecord | None:
        for run in self._runs.values():
            if run.correlation_token == token:
                return run.model_copy(deep=True)
        return None

    async def list_runs(self, graph_id: str) -> list[RunRecord]:
        runs = [r.model_copy(deep=True) for r in self._runs.values() if r.graph_id == graph_id]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return False
            now = time.time()
            if run.lease_owner not in (None, owner) and (run.locked_until or 0) > now:
                return False
            run.lease_owner = owner
            run.locked_until = now + ttl
            return True

    async def release_lease(self, run_id: str, owner: str) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is not None and run.lease_owner == owner:
                run.lease_owner = None
                run.locked_until = None

    # ------------------------------------------------------------------
    # Connections
    async def save_connection(self, connection: ProviderConnection) -> ProviderConnection:
        connection.updated_at = utcnow()
        self._connections[connection.id] = connection.model_copy(deep=True)
        return connection

    async def get_connection(self, connection_id: str) -> ProviderConnection | None:
        conn = self._connections.get(connection_id)
        return conn.model_copy(deep=True) if conn else None

    async def find_connection(
        self,
        workspace_id: Optional[str],
        provider: str,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> ProviderConnection | None:
        matches = [
            c
            for c in self._connections.values()
            if c.provider == provider
            and c.status == status
            and (workspace_id is None or c.workspace_id == workspace_id)
        ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.created_at).model_copy(deep=True)

    async def list_connections(
        self, workspace_id: Optional[str] = None
    ) -> list[ProviderConnection]:
        conns = [
            c.model_copy(deep=True)
            for c in self._connections.values()
            if workspace_id is None or c.workspace_id == workspace_id
        ]
        return sorted(conns, key=lambda c: c.created_at, reverse=True)

    async def delete_connection(self, connection_id: str) -> bool:
        return self._connections.pop(connection_id, None) is not None
