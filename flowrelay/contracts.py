"""Core data contracts for flowrelay graphs, runs and provider connections."""

from __future__ import annotations

import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidTransitionError
from .utils.correlation import mint_token


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    """Step-type tags understood by the runner."""

    REMOTE_WEBHOOK = "RemoteWebhook"
    LOCAL_FLOW = "LocalFlow"
    DATA_MAPPER = "DataMapper"
    WAIT_FOR_CALLBACK = "WaitForCallback"
    CONDITION = "Condition"
    ERROR_BOUNDARY = "ErrorBoundary"
    PARALLEL = "Parallel"


ERROR_HANDLE = "error"


class GraphNode(BaseModel):
    """One typed step of a graph."""

    id: str
    type: str
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _lift_canvas_shape(cls, value: Any) -> Any:
        # Canvas nodes carry {type: "customNode", data: {nodeType, label, config}}
        if isinstance(value, dict) and isinstance(value.get("data"), dict):
            data = value["data"]
            value = {
                "id": value.get("id"),
                "type": data.get("nodeType") or value.get("type"),
                "label": data.get("label"),
                "config": data.get("config") or {},
            }
        return value

    @property
    def display_name(self) -> str:
        return self.label or self.id


class GraphEdge(BaseModel):
    """Directed dependency: ``target`` consumes ``source``'s output."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")

    @model_validator(mode="after")
    def _default_id(self) -> "GraphEdge":
        if not self.id:
            suffix = f":{self.source_handle}" if self.source_handle else ""
            self.id = f"{self.source}->{self.target}{suffix}"
        return self


class GraphDefinition(BaseModel):
    """User-authored orchestration graph."""

    id: str = Field(default_factory=_new_id)
    name: str = "Untitled"
    description: Optional[str] = None
    workspace_id: Optional[str] = None
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_references(self) -> "GraphDefinition":
        node_ids = [n.id for n in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("Node ids must be unique")
        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known or edge.target not in known:
                raise ValueError(
                    f"Edge {edge.id} references unknown node ({edge.source} -> {edge.target})"
                )
        edge_ids = [e.id for e in self.edges]
        if len(edge_ids) != len(set(edge_ids)):
            raise ValueError("Edge ids must be unique")
        return self

    # ------------------------------------------------------------------
    # Structure helpers
    def node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def entry_nodes(self) -> List[GraphNode]:
        """Nodes without incoming edges, in definition order."""
        targets = {e.target for e in self.edges}
        return [n for n in self.nodes if n.id not in targets]

    def adjacency(self) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = defaultdict(list)
        for edge in self.edges:
            adjacency[edge.source].append(edge.target)
        return dict(adjacency)

    def incoming(self, node_id: str) -> List[GraphEdge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> List[GraphEdge]:
        return [e for e in self.edges if e.source == node_id]

    def reachable_from(self, start: List[str], skip_handle: Optional[str] = None) -> List[str]:
        """Breadth-first reachability, optionally ignoring edges with ``skip_handle``."""
        seen: List[str] = []
        queue = deque(start)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.append(current)
            for edge in self.outgoing(current):
                if skip_handle is not None and edge.source_handle == skip_handle:
                    continue
                if edge.target not in seen:
                    queue.append(edge.target)
        return seen

    def reachable_from_entries(self) -> List[str]:
        return self.reachable_from([n.id for n in self.entry_nodes()])

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle reachable from the entry nodes, if any."""
        adjacency = self.adjacency()
        done: set[str] = set()

        for entry in self.entry_nodes():
            if entry.id in done:
                continue
            path = [entry.id]
            on_path = {entry.id}
            stack = [iter(adjacency.get(entry.id, []))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                elif child in on_path:
                    return path[path.index(child):] + [child]
                elif child not in done:
                    path.append(child)
                    on_path.add(child)
                    stack.append(iter(adjacency.get(child, [])))
        return None


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    WAITING = "WAITING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED}

ALLOWED_TRANSITIONS: Dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.WAITING, RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.WAITING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


class LogEntry(BaseModel):
    """One line of a run's audit trail."""

    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    level: Optional[str] = None
    data: Optional[Any] = None
    correlation_id: Optional[str] = None


class NodeStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    WAITING = "waiting"
    FAILED = "failed"


class ExecutionState(BaseModel):
    """Durable traversal ledger; everything needed to continue a run."""

    nodes: Dict[str, NodeStatus] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    edges: Dict[str, bool] = Field(default_factory=dict)
    order: List[str] = Field(default_factory=list)
    waiting: List[str] = Field(default_factory=list)
    faults: Dict[str, Any] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    def is_settled(self, node_id: str) -> bool:
        status = self.nodes.get(node_id)
        return status is not None and status != NodeStatus.WAITING

    def executed(self) -> List[str]:
        return [n for n in self.order if self.nodes.get(n) == NodeStatus.COMPLETED]


class RunRecord(BaseModel):
    """One execution instance of a graph."""

    id: str = Field(default_factory=_new_id)
    graph_id: str
    status: RunStatus = RunStatus.PENDING
    logs: List[LogEntry] = Field(default_factory=list)
    correlation_token: str = Field(default_factory=mint_token)
    inputs: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    state: ExecutionState = Field(default_factory=ExecutionState)
    output: Any = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0
    lease_owner: Optional[str] = None
    locked_until: Optional[float] = None

    def append_log(
        self,
        message: str,
        level: Optional[str] = None,
        data: Optional[Any] = None,
        correlation_id: Optional[str] = None,
    ) -> LogEntry:
        entry = LogEntry(message=message, level=level, data=data, correlation_id=correlation_id)
        self.logs.append(entry)
        return entry

    def transition(self, status: RunStatus) -> None:
        """Move to ``status`` if the state machine allows it."""
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Run {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status == RunStatus.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        if status in TERMINAL_STATUSES:
            self.finished_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"


class ProviderConnection(BaseModel):
    """Stored credentials for one provider in one workspace."""

    id: str = Field(default_factory=_new_id)
    workspace_id: Optional[str] = None
    provider: str
    name: Optional[str] = None
    credentials: Dict[str, Any] = Field(default_factory=dict)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_sync: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def redacted(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"credentials"})


# ----------------------------------------------------------------------
# Provider payloads


class WorkflowSummary(BaseModel):
    id: str
    name: str
    description: str = ""
    provider: str
    last_updated: Optional[datetime] = None
    status: str = "unknown"
    active: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)


class FlowData(BaseModel):
    """Normalized node/edge view of a remote workflow."""

    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)


class WorkflowPreview(BaseModel):
    id: str
    name: str
    description: str = ""
    provider: str
    flow_data: FlowData = Field(default_factory=FlowData)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    webhook_url: Optional[str] = None


class ExecutionResult(BaseModel):
    success: bool
    data: Any = None
    output: Any = None
    error: Optional[str] = None
    execution_id: Optional[str] = None
    status: Optional[str] = None
    duration: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionStatus(BaseModel):
    execution_id: str
    status: str = "unknown"  # completed | running | failed | pending | unknown
    data: Any = None
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
