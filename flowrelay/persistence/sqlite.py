"""SQLite implementation of the flowrelay repositories."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional

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

RUN_COLUMNS = (
    "id, graph_id, status, logs, correlation_token, inputs, metadata, state, output, "
    "started_at, finished_at, created_at, updated_at, version, lease_owner, locked_until"
)


class SQLiteRepository(Repository):
    """Persist graphs, runs and connections using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS graphs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                workspace_id TEXT,
                definition TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
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
                started_at TEXT,
                finished_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                lease_owner TEXT,
                locked_until REAL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS provider_connections (
                id TEXT PRIMARY KEY,
                workspace_id TEXT,
                provider TEXT NOT NULL,
                name TEXT,
                credentials TEXT NOT NULL,
                status TEXT NOT NULL,
                last_sync TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Graphs
    async def save_graph(self, graph: GraphDefinition) -> GraphDefinition:
        graph.updated_at = utcnow()
        row = graph_to_row(graph)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO graphs (id, name, description, workspace_id, definition, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                workspace_id = excluded.workspace_id,
                definition = excluded.definition,
                updated_at = excluded.updated_at
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
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM graphs WHERE id = ?", graph_id
        )
        return graph_from_row(row) if row else None

    async def list_graphs(self, workspace_id: Optional[str] = None) -> list[GraphDefinition]:
        if workspace_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM graphs ORDER BY updated_at DESC"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM graphs WHERE workspace_id = ? ORDER BY updated_at DESC",
                workspace_id,
            )
        return [graph_from_row(r) for r in rows]

    async def delete_graph(self, graph_id: str) -> bool:
        count = await asyncio.to_thread(self._execute, "DELETE FROM graphs WHERE id = ?", graph_id)
        return count > 0

    # ------------------------------------------------------------------
    # Runs
    async def save_run(self, run: RunRecord) -> RunRecord:
        run.updated_at = utcnow()
        row = run_to_row(run)
        if run.version == 0:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO runs ({RUN_COLUMNS}) VALUES ({', '.join('?' * 16)})",
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
                1,
                None,
                None,
            )
        else:
            count = await asyncio.to_thread(
                self._execute,
                """
                UPDATE runs
                SET status = ?, logs = ?, inputs = ?, metadata = ?, state = ?, output = ?,
                    started_at = ?, finished_at = ?, updated_at = ?, version = version + 1
                WHERE id = ? AND version = ?
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
            if count == 0:
                raise StaleRunError(f"Run {run.id} changed since version {run.version}")
        run.version += 1
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {RUN_COLUMNS} FROM runs WHERE id = ?", run_id
        )
        return run_from_row(row) if row else None

    async def find_run_by_token(self, token: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {RUN_COLUMNS} FROM runs WHERE correlation_token = ?",
            token,
        )
        return run_from_row(row) if row else None

    async def list_runs(self, graph_id: str) -> list[RunRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {RUN_COLUMNS} FROM runs WHERE graph_id = ? ORDER BY created_at DESC, rowid DESC",
            graph_id,
        )
        return [run_from_row(r) for r in rows]

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        now = time.time()
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE runs SET lease_owner = ?, locked_until = ?
            WHERE id = ? AND (lease_owner IS NULL OR lease_owner = ? OR locked_until < ?)
            """,
            owner,
            now + ttl,
            run_id,
            owner,
            now,
        )
        return count == 1

    async def release_lease(self, run_id: str, owner: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET lease_owner = NULL, locked_until = NULL WHERE id = ? AND lease_owner = ?",
            run_id,
            owner,
        )

    # ------------------------------------------------------------------
    # Connections
    async def save_connection(self, connection: ProviderConnection) -> ProviderConnection:
        connection.updated_at = utcnow()
        row = connection_to_row(connection)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO provider_connections
                (id, workspace_id, provider, name, credentials, status, last_sync, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                credentials = excluded.credentials,
                status = excluded.status,
                last_sync = excluded.last_sync,
                updated_at = excluded.updated_at
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
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM provider_connections WHERE id = ?", connection_id
        )
        return connection_from_row(row) if row else None

    async def find_connection(
        self,
        workspace_id: Optional[str],
        provider: str,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> ProviderConnection | None:
        query = "SELECT * FROM provider_connections WHERE provider = ? AND status = ?"
        params: list[Any] = [provider, ConnectionStatus(status).value]
        if workspace_id is not None:
            query += " AND workspace_id = ?"
            params.append(workspace_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return connection_from_row(row) if row else None

    async def list_connections(
        self, workspace_id: Optional[str] = None
    ) -> list[ProviderConnection]:
        if workspace_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM provider_connections ORDER BY created_at DESC, rowid DESC",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM provider_connections WHERE workspace_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                workspace_id,
            )
        return [connection_from_row(r) for r in rows]

    async def delete_connection(self, connection_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM provider_connections WHERE id = ?", connection_id
        )
        return count > 0
