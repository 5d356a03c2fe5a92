"""Repository abstractions for graphs, runs and provider connections."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import (
    ConnectionStatus,
    GraphDefinition,
    ProviderConnection,
    RunRecord,
)


class GraphStore(Protocol):
    """Persistence for graph definitions."""

    async def save_graph(self, graph: GraphDefinition) -> GraphDefinition:
        """Insert or replace a graph definition."""

    async def get_graph(self, graph_id: str) -> GraphDefinition | None:
        """Return the graph or ``None``."""

    async def list_graphs(self, workspace_id: Optional[str] = None) -> list[GraphDefinition]:
        """Return graphs, most recently updated first."""

    async def delete_graph(self, graph_id: str) -> bool:
        """Delete a graph; ``False`` if it did not exist."""


class RunStore(Protocol):
    """Persistence for run records."""

    async def save_run(self, run: RunRecord) -> RunRecord:
        """Insert a new run or update it if ``run.version`` is current.

        Raises:
            StaleRunError: The stored version moved on since ``run`` was loaded.
        """

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Return the run or ``None``."""

    async def find_run_by_token(self, token: str) -> RunRecord | None:
        """Look a run up by its correlation token."""

    async def list_runs(self, graph_id: str) -> list[RunRecord]:
        """Return the runs of a graph, newest first."""

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        """Atomically take (or renew) the lease on a run."""

    async def release_lease(self, run_id: str, owner: str) -> None:
        """Drop the lease if ``owner`` holds it."""


class ConnectionStore(Protocol):
    """Persistence for provider connections."""

    async def save_connection(self, connection: ProviderConnection) -> ProviderConnection:
        """Insert or replace a connection."""

    async def get_connection(self, connection_id: str) -> ProviderConnection | None:
        """Return the connection or ``None``."""

    async def find_connection(
        self,
        workspace_id: Optional[str],
        provider: str,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> ProviderConnection | None:
        """Return the most recent matching connection."""

    async def list_connections(
        self, workspace_id: Optional[str] = None
    ) -> list[ProviderConnection]:
        """Return connections, newest first."""

    async def delete_connection(self, connection_id: str) -> bool:
        """Delete a connection; ``False`` if it did not exist."""


class Repository(GraphStore, RunStore, ConnectionStore, Protocol):
    """A backend that stores everything flowrelay needs."""
