"""PostgreSQL implementation of the flowrelay repositories."""

from __future__ import annotations

import time
from typing import Any, Optional

import asyncpg

from ..contracts import (
    ConnectionStatus,
    GraphDefinition,
    ProviderConnection,
    RunRecord,
    utcnow,
)
from ..errors import StaleRunError
from .repository import Repository
from .serialization import (
    connection_from_row,
    connection_to_row,
    graph_from_row,
    graph_to_row,
    run_from_row,
    run_to_row,
)


def _native(value):
    return value


class PostgresRepository(Repository):
    """Persist graphs, runs and connections using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS graphs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                workspace_id TEXT,
                definition TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                status TEXT NOT NULL,
                logs TEXT,
                correlation_token TEXT UNIQUE,
                inputs TEXT,
                metadata TEXT,
                state TEXT,
                output TEXT,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                lease_owner TEXT,
                locked_until DOUBLE PRECISION
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS provider_connections (
                id TEXT PRIMARY KEY,
                workspace_id TEXT,
                provider TEXT NOT NULL,
                name TEXT,
                credentials TEXT NOT NULL,
                status TEXT NOT NULL,
                last_sync TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    async def _run(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _affected(status: str) -> int:
        # asyncpg returns command tags such as "UPDATE 1"
        return int(status.split()[-1]) if status and status.split()[-1].isdigit() else 0

    # ------------------------------------------------------------------
    # Graphs
    async def save_graph(self, graph: GraphDefinition) -> GraphDefinition:
        graph.updated_at = utcnow()
        row = graph_to_row(graph, stamp=_native)
        await self._run(
            """
            INSERT INTO graphs (id, name, description, workspace_id, definition, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                workspace_id = EXCLUDED.workspace_id,
                definition = EXCLUDED.definition,
                updated_at = EXCLUDED.updated_at
            """,
            row["id"],
            row["name"],
            row["description"],
            row["workspace_id"],
            row["definition"],
            row["created_at"],
            row["updated_at"],
        )
        return graph

    async def get_graph(self, graph_id: str) -> GraphDefinition | None:
        row = await self._fetchrow("SELECT * FROM graphs WHERE id = $1", graph_id)
        return graph_from_row(row) if row else None

    async def list_graphs(self, workspace_id: Optional[str] = None) -> list[GraphDefinition]:
        if workspace_id is None:
            rows = await self._fetch("SELECT * FROM graphs ORDER BY updated_at DESC")
        else:
            rows = await self._fetch(
                "SELECT * FROM graphs WHERE workspace_id = $1 ORDER BY updated_at DESC",
                workspace_id,
            )
        return [graph_from_row(r) for r in rows]

    async def delete_graph(self, graph_id: str) -> bool:
        status = await self._run("DELETE FROM graphs WHERE id = $1", graph_id)
        return self._affected(status) > 0

    # ------------------------------------------------------------------
    # Runs
    async def save_run(self, run: RunRecord) -> RunRecord:
        run.updated_at = utcnow()
        row = run_to_row(run, stamp=_native)
        if run.version == 0:
            await self._run(
                """
                INSERT INTO runs (id, graph_id, status, logs, correlation_token, inputs, metadata,
                                  state, output, started_at, finished_at, created_at, updated_at, version)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, 1)
                """,
                row["id"],
                row["graph_id"],
                row["status"],
                row["logs"],
                row["correlation_token"],
                row["inputs"],
                row["metadata"],
                row["state"],
                row["output"],
                row["started_at"],
                row["finished_at"],
                row["created_at"],
                row["updated_at"],
            )
        else:
            status = await self._run(
                """
                UPDATE runs
                SET status = $1, logs = $2, inputs = $3, metadata = $4, state = $5, output = $6,
                    started_at = $7, finished_at = $8, updated_at = $9, version = version + 1
                WHERE id = $10 AND version = $11
                """,
                row["status"],
                row["logs"],
                row["inputs"],
                row["metadata"],
                row["state"],
                row["output"],
                row["started_at"],
                row["finished_at"],
                row["updated_at"],
                run.id,
                run.version,
            )
            if self._affected(status) == 0:
                raise StaleRunError(f"Run {run.id} changed since version {run.version}")
        run.version += 1
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await self._fetchrow("SELECT * FROM runs WHERE id = $1", run_id)
        return run_from_row(row) if row else None

    async def find_run_by_token(self, token: str) -> RunRecord | None:
        row = await self._fetchrow("SELECT * FROM runs WHERE correlation_token = $1", token)
        return run_from_row(row) if row else None

    async def list_runs(self, graph_id: str) -> list[RunRecord]:
        rows = await self._fetch(
            "SELECT * FROM runs WHERE graph_id = $1 ORDER BY created_at DESC", graph_id
        )
        return [run_from_row(r) for r in rows]

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        now = time.time()
        status = await self._run(
            """
            UPDATE runs SET lease_owner = $1, locked_until = $2
            WHERE id = $3 AND (lease_owner IS NULL OR lease_owner = $1 OR locked_until < $4)
            """,
            owner,
            now + ttl,
            run_id,
            now,
        )
        return self._affected(status) == 1

    async def release_lease(self, run_id: str, owner: str) -> None:
        await self._run(
            "UPDATE runs SET lease_owner = NULL, locked_until = NULL WHERE id = $1 AND lease_owner = $2",
            run_id,
            owner,
        )

    # ------------------------------------------------------------------
    # Connections
    async def save_connection(self, connection: ProviderConnection) -> ProviderConnection:
        connection.updated_at = utcnow()
        row = connection_to_row(connection, stamp=_native)
        await self._run(
            """
            INSERT INTO provider_connections
                (id, workspace_id, provider, name, credentials, status, last_sync, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                credentials = EXCLUDED.credentials,
                status = EXCLUDED.status,
                last_sync = EXCLUDED.last_sync,
                updated_at = EXCLUDED.updated_at
            """,
            row["id"],
            row["workspace_id"],
            row["provider"],
            row["name"],
            row["credentials"],
            row["status"],
            row["last_sync"],
            row["created_at"],
            row["updated_at"],
        )
        return connection

    async def get_connection(self, connection_id: str) -> ProviderConnection | None:
        row = await self._fetchrow(
            "SELECT * FROM provider_connections WHERE id = $1", connection_id
        )
        return connection_from_row(row) if row else None

    async def find_connection(
        self,
        workspace_id: Optional[str],
        provider: str,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> ProviderConnection | None:
        if workspace_id is None:
            row = await self._fetchrow(
                "SELECT * FROM provider_connections WHERE provider = $1 AND status = $2 "
                "ORDER BY created_at DESC LIMIT 1",
                provider,
                ConnectionStatus(status).value,
            )
        else:
            row = await self._fetchrow(
                "SELECT * FROM provider_connections "
                "WHERE provider = $1 AND status = $2 AND workspace_id = $3 "
                "ORDER BY created_at DESC LIMIT 1",
                provider,
                ConnectionStatus(status).value,
                workspace_id,
            )
        return connection_from_row(row) if row else None

    async def list_connections(
        self, workspace_id: Optional[str] = None
    ) -> list[ProviderConnection]:
        if workspace_id is None:
            rows = await self._fetch(
                "SELECT * FROM provider_connections ORDER BY created_at DESC"
            )
        else:
            rows = await self._fetch(
                "SELECT * FROM provider_connections WHERE workspace_id = $1 ORDER BY created_at DESC",
                workspace_id,
            )
        return [connection_from_row(r) for r in rows]

    async def delete_connection(self, connection_id: str) -> bool:
        status = await self._run(
            "DELETE FROM provider_connections WHERE id = $1", connection_id
        )
        return self._affected(status) > 0
