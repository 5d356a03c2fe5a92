"""Base interface for remote automation back-ends."""

from __future__ import annotations

import abc
from typing import Any, Dict

from ..contracts import ExecutionResult, ExecutionStatus, WorkflowPreview, WorkflowSummary
from ..errors import ConnectionMismatchError, ConnectionNotFoundError
from ..http import HttpClient
from ..persistence.repository import ConnectionStore


class ProviderAdapter(metaclass=abc.ABCMeta):
    """Uniform access to one external workflow engine."""

    name: str = ""
    supports_polling: bool = False

    @abc.abstractmethod
    async def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """Check credentials with a cheap read-only call.

        Returns ``False`` for rejected credentials. Transport failures may
        raise; callers treat both as "not authenticated".
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def list_workflows(self, connection_id: str) -> list[WorkflowSummary]:
        """List remote workflows visible to the connection."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_workflow_preview(
        self, workflow_id: str, connection_id: str
    ) -> WorkflowPreview:
        """Return structure, metadata and (best effort) the webhook URL."""
        raise NotImplementedError

    @abc.abstractmethod
    async def execute_workflow(
        self, workflow_id: str, data: Any, connection_id: str
    ) -> ExecutionResult:
        """Trigger a remote workflow. Failures are reported, not raised."""
        raise NotImplementedError

    async def poll_execution(self, execution_id: str, connection_id: str) -> ExecutionStatus:
        """Return the status of an asynchronous execution."""
        raise NotImplementedError(f"{self.name} does not support polling")


class BaseProvider(ProviderAdapter):
    """Adapter with credential lookup through a :class:`ConnectionStore`."""

    def __init__(self, connections: ConnectionStore, http: HttpClient | None = None) -> None:
        self._connections = connections
        self._http = http or HttpClient()

    async def get_credentials(self, connection_id: str) -> Dict[str, Any]:
        connection = await self._connections.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        if connection.provider != self.name:
            raise ConnectionMismatchError(
                f"Connection is for {connection.provider}, not {self.name}"
            )
        return connection.credentials
