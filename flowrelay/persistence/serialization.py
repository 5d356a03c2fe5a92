"""Row conversion shared by the SQL backends.

Structured columns (graph nodes/edges, run logs, metadata, state) are stored
as JSON text. Run logs in particular are one blob that is parsed and
rewritten wholesale on every save.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from ..contracts import GraphDefinition, ProviderConnection, RunRecord

Stamp = Callable[[Optional[datetime]], Any]


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Any, default: Any = None) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def graph_to_row(graph: GraphDefinition, stamp: Stamp = iso) -> dict[str, Any]:
    dumped = graph.model_dump(mode="json", by_alias=True)
    return {
        "id": graph.id,
        "name": graph.name,
        "description": graph.description,
        "workspace_id": graph.workspace_id,
        "definition": _dumps(
            {"nodes": dumped["nodes"], "edges": dumped["edges"], "version": graph.version}
        ),
        "created_at": stamp(graph.created_at),
        "updated_at": stamp(graph.updated_at),
    }


def graph_from_row(row: Mapping[str, Any]) -> GraphDefinition:
    definition = _loads(row["definition"], {})
    return GraphDefinition(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        workspace_id=row["workspace_id"],
        nodes=definition.get("nodes", []),
        edges=definition.get("edges", []),
        version=definition.get("version", 1),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def run_to_row(run: RunRecord, stamp: Stamp = iso) -> dict[str, Any]:
    dumped = run.model_dump(mode="json")
    return {
        "id": run.id,
        "graph_id": run.graph_id,
        "status": run.status.value,
        "logs": _dumps(dumped["logs"]),
        "correlation_token": run.correlation_token,
        "inputs": _dumps(dumped["inputs"]),
        "metadata": _dumps(dumped["metadata"]),
        "state": _dumps(dumped["state"]),
        "output": _dumps(dumped["output"]),
        "started_at": stamp(run.started_at),
        "finished_at": stamp(run.finished_at),
        "created_at": stamp(run.created_at),
        "updated_at": stamp(run.updated_at),
        "version": run.version,
    }


def run_from_row(row: Mapping[str, Any]) -> RunRecord:
    return RunRecord(
        id=row["id"],
        graph_id=row["graph_id"],
        status=row["status"],
        logs=_loads(row["logs"], []),
        correlation_token=row["correlation_token"],
        inputs=_loads(row["inputs"]),
        metadata=_loads(row["metadata"], {}),
        state=_loads(row["state"], {}),
        output=_loads(row["output"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=row["version"],
        lease_owner=row["lease_owner"],
        locked_until=row["locked_until"],
    )


def connection_to_row(conn: ProviderConnection, stamp: Stamp = iso) -> dict[str, Any]:
    return {
        "id": conn.id,
        "workspace_id": conn.workspace_id,
        "provider": conn.provider,
        "name": conn.name,
        "credentials": _dumps(conn.credentials),
        "status": conn.status.value,
        "last_sync": stamp(conn.last_sync),
        "created_at": stamp(conn.created_at),
        "updated_at": stamp(conn.updated_at),
    }


def connection_from_row(row: Mapping[str, Any]) -> ProviderConnection:
    return ProviderConnection(
        id=row["id"],
        workspace_id=row["workspace_id"],
        provider=row["provider"],
        name=row["name"],
        credentials=_loads(row["credentials"], {}),
        status=row["status"],
        last_sync=row["last_sync"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
