"""Durable graph traversal for orchestrator runs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import FlowRelayConfig
from .contracts import (
    ERROR_HANDLE,
    GraphDefinition,
    GraphEdge,
    GraphNode,
    NodeStatus,
    NodeType,
    RunRecord,
    RunStatus,
    utcnow,
)
from .errors import (
    GraphValidationError,
    NotFoundError,
    RunLockedError,
    StaleRunError,
)
from .nodes import NodeDispatcher, NodeResult, callback_output
from .persistence.repository import Repository
from .utils import retry
from .utils.correlation import encode_correlation_id

logger = logging.getLogger(__name__)

MERGE_POLICIES = ("last", "first", "keyed", "list", "merge")


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class OrchestratorRunner:
    """Walks a graph for one run, persisting every step.

    Progress lives in ``run.state``: settled nodes, their outputs and the
    activity of every edge. Traversal recomputes what is ready from that
    ledger alone, so a run can continue in another process after a restart.
    """

    def __init__(
        self,
        repository: Repository,
        dispatcher: NodeDispatcher | None = None,
        config: FlowRelayConfig | None = None,
        owner: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._config = config or FlowRelayConfig()
        self._dispatcher = dispatcher or NodeDispatcher(repository, config=self._config)
        self._owner = owner or default_owner()
        self._locks: Dict[str, list] = {}

    @property
    def owner(self) -> str:
        return self._owner

    # ------------------------------------------------------------------
    # Entry points
    async def execute(
        self, graph: GraphDefinition, run: RunRecord, inputs: Any = None
    ) -> RunRecord:
        """Run ``graph`` until it completes, fails or parks on a callback.

        A graph without entry nodes, or with a cycle reachable from one,
        fails the run without raising. Any other error fails the run and is
        re-raised.
        """
        async with self._exclusive(run.id):
            lease = self._lease_token()
            await self._claim(run, lease)
            try:
                if inputs is not None and not run.state.nodes:
                    run.inputs = inputs
                run.transition(RunStatus.RUNNING)
                await self._persist(run, lease)
                await self._traverse(graph, run, lease)
            except GraphValidationError as exc:
                logger.error(f"Run {run.id} rejected graph {graph.id}: {exc}")
                await self._fail(run, lease, f"Error: {exc}")
            except (StaleRunError, RunLockedError) as exc:
                await self._abandon(run, lease, exc)
                raise
            except Exception as exc:
                logger.exception(f"Run {run.id} failed")
                if not run.is_terminal:
                    await self._fail(run, lease, f"Error: {exc}")
                raise
            finally:
                await self._repository.release_lease(run.id, lease)
        return run

    async def resume(
        self, run: RunRecord, callback_data: Any, node_id: Optional[str] = None
    ) -> RunRecord:
        """Deliver a callback payload and continue a WAITING run.

        The callback is recorded in the run log and metadata whatever the
        run's status; only WAITING runs continue traversal. A callback that
        arrives while this runner is still executing the run waits for that
        execution to finish.
        """
        async with self._exclusive(run.id):
            lease = self._lease_token()
            await self._claim(run, lease)
            try:
                await self._deliver(run, lease, callback_data, node_id)
            except (StaleRunError, RunLockedError) as exc:
                await self._abandon(run, lease, exc)
                raise
            except Exception as exc:
                logger.exception(f"Callback processing failed for run {run.id}")
                if not run.is_terminal:
                    await self._fail(run, lease, f"Callback processing error: {exc}")
                raise
            finally:
                await self._repository.release_lease(run.id, lease)
        return run

    async def _deliver(
        self, run: RunRecord, lease: str, callback_data: Any, node_id: Optional[str]
    ) -> None:
        correlation_id = None
        if isinstance(callback_data, dict):
            correlation_id = callback_data.get("correlationId")
        run.append_log(
            "Callback received",
            data=callback_data,
            correlation_id=correlation_id or run.id,
        )
        run.metadata["callbackData"] = callback_data
        run.metadata["callbackReceivedAt"] = utcnow().isoformat()

        if run.status != RunStatus.WAITING:
            logger.info(f"Run {run.id} is {run.status.value}; callback stored only")
            await self._persist(run, lease)
            return

        parked = node_id or (run.state.waiting[0] if run.state.waiting else None)
        if parked is None or parked not in run.state.waiting:
            logger.warning(f"Run {run.id} has no node {node_id} waiting for a callback")
            run.append_log(f"Callback ignored: node {node_id} is not waiting", level="warning")
            await self._persist(run, lease)
            return

        run.append_log("Resuming execution after callback")
        run.transition(RunStatus.RUNNING)
        await self._persist(run, lease)

        graph = await self._repository.get_graph(run.graph_id)
        if graph is None:
            raise NotFoundError(f"Graph {run.graph_id} not found")
        node = graph.node(parked)
        if node is None:
            raise NotFoundError(f"Node {parked} not found in graph {graph.id}")

        output = callback_output(node, run.state.outputs.get(parked), callback_data)
        self._complete(graph, run, node, NodeResult(output=output))
        self._settle_boundaries(graph, run)
        await self._persist(run, lease)
        await self._traverse(graph, run, lease)

    # ------------------------------------------------------------------
    # Lease and persistence
    @contextlib.asynccontextmanager
    async def _exclusive(self, run_id: str) -> AsyncIterator[None]:
        """Serialize ``execute`` and ``resume`` calls for one run in this process."""
        entry = self._locks.setdefault(run_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if not entry[1]:
                self._locks.pop(run_id, None)

    def _lease_token(self) -> str:
        # one token per call, so a call never re-enters another call's lease
        return f"{self._owner}:{uuid.uuid4().hex[:8]}"

    async def _claim(self, run: RunRecord, lease: str) -> None:
        """Take the run's lease and reload its durable state into ``run``."""
        if await self._repository.get_run(run.id) is None:
            await self._repository.save_run(run)

        settings = self._config.runner
        for attempt in range(settings.lease_wait_attempts):
            if await self._repository.acquire_lease(run.id, lease, settings.lease_seconds):
                break
            delay = retry.compute_backoff(attempt, settings.lease_wait_delay)
            logger.info(f"Run {run.id} is leased elsewhere, retrying in {delay:.0f}ms")
            await retry.schedule_retry(delay / 1000)
        else:
            raise RunLockedError(f"Run {run.id} is locked by another worker")

        self._reload(run, await self._repository.get_run(run.id))

    @staticmethod
    def _reload(run: RunRecord, stored: RunRecord) -> None:
        for field in RunRecord.model_fields:
            setattr(run, field, getattr(stored, field))

    async def _persist(self, run: RunRecord, lease: str) -> None:
        renewed = await self._repository.acquire_lease(
            run.id, lease, self._config.runner.lease_seconds
        )
        if not renewed:
            raise RunLockedError(f"Lease on run {run.id} was lost")
        await self._repository.save_run(run)

    async def _fail(self, run: RunRecord, lease: str, message: str) -> None:
        run.append_log(message, level="error")
        run.transition(RunStatus.FAILED)
        await self._persist(run, lease)

    async def _abandon(self, run: RunRecord, lease: str, error: Exception) -> None:
        """Fail the stored run after a lost write, unless another worker now holds it."""
        logger.error(f"Run {run.id} lost a concurrent update: {error}")
        if not await self._repository.acquire_lease(
            run.id, lease, self._config.runner.lease_seconds
        ):
            logger.warning(f"Run {run.id} is owned by another worker; leaving it to them")
            return
        stored = await self._repository.get_run(run.id)
        if stored is None or stored.is_terminal:
            return
        stored.append_log(f"Error: {error}", level="error")
        stored.transition(RunStatus.FAILED)
        await self._repository.save_run(stored)
        self._reload(run, stored)

    # ------------------------------------------------------------------
    # Traversal
    async def _traverse(self, graph: GraphDefinition, run: RunRecord, lease: str) -> None:
        if not graph.entry_nodes():
            raise GraphValidationError("No entry nodes found")
        cycle = graph.find_cycle()
        if cycle:
            raise GraphValidationError(f"Cycle detected: {' -> '.join(cycle)}")

        reachable = set(graph.reachable_from_entries())
        state = run.state

        while True:
            ready = self._ready(graph, run, reachable)
            if not ready:
                break

            dead = [n for n in ready if self._is_dead(graph, run, n, reachable)]
            if dead:
                for node in dead:
                    self._skip(graph, run, node.id)
                self._settle_boundaries(graph, run)
                await self._persist(run, lease)
                continue

            batch = self._batch(graph, run, ready)
            inputs = {node.id: self._node_input(graph, run, node) for node in batch}
            for node in batch:
                run.append_log(f"Executing node: {node.display_name}")
                logger.info(f"Run {run.id}: executing {node.type} node {node.id}")

            if len(batch) == 1:
                node = batch[0]
                try:
                    results: List[Any] = [
                        await self._dispatcher.dispatch(node, inputs[node.id], run, graph)
                    ]
                except Exception as exc:
                    results = [exc]
            else:
                results = await asyncio.gather(
                    *(
                        self._dispatcher.dispatch(node, inputs[node.id], run, graph)
                        for node in batch
                    ),
                    return_exceptions=True,
                )

            for node, result in zip(batch, results):
                if state.nodes.get(node.id) == NodeStatus.SKIPPED:
                    # a failed sibling already unwound this node's boundary scope
                    logger.info(f"Run {run.id}: discarding result of skipped node {node.id}")
                    continue
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    self._handle_failure(graph, run, node, inputs[node.id], result)
                elif result.suspended:
                    self._park(graph, run, node, inputs[node.id])
                else:
                    self._complete(graph, run, node, result)
            self._settle_boundaries(graph, run)
            await self._persist(run, lease)

        if state.waiting:
            run.transition(RunStatus.WAITING)
            logger.info(f"Run {run.id} waiting for callbacks on {state.waiting}")
        else:
            executed = state.executed()
            run.output = state.outputs.get(executed[-1]) if executed else None
            run.transition(RunStatus.COMPLETED)
            logger.info(f"Run {run.id} completed")
        await self._persist(run, lease)

    def _ready(
        self, graph: GraphDefinition, run: RunRecord, reachable: set[str]
    ) -> List[GraphNode]:
        """Unsettled nodes whose incoming edges have all been decided.

        Ordered by when their latest predecessor finished, then by position
        in the graph, which keeps the walk breadth-first.
        """
        state = run.state
        position = {node_id: index for index, node_id in enumerate(state.order)}
        ready = []
        for index, node in enumerate(graph.nodes):
            if node.id not in reachable or node.id in state.nodes:
                continue
            incoming = [e for e in graph.incoming(node.id) if e.source in reachable]
            if all(e.id in state.edges for e in incoming):
                latest = max((position.get(e.source, -1) for e in incoming), default=-1)
                ready.append((latest, index, node))
        return [node for _, _, node in sorted(ready, key=lambda item: item[:2])]

    def _is_dead(
        self, graph: GraphDefinition, run: RunRecord, node: GraphNode, reachable: set[str]
    ) -> bool:
        incoming = [e for e in graph.incoming(node.id) if e.source in reachable]
        return bool(incoming) and not any(run.state.edges[e.id] for e in incoming)

    def _batch(self, graph: GraphDefinition, run: RunRecord, ready: List[GraphNode]) -> List[GraphNode]:
        """The next node, plus its ready siblings when a Parallel node fans out to them."""
        first = ready[0]
        fan_out = {
            e.source
            for e in self._active_incoming(graph, run, first.id)
            if self._type_of(graph, e.source) == NodeType.PARALLEL.value
        }
        if not fan_out:
            return [first]
        return [
            node
            for node in ready
            if any(e.source in fan_out for e in self._active_incoming(graph, run, node.id))
        ]

    @staticmethod
    def _type_of(graph: GraphDefinition, node_id: str) -> Optional[str]:
        node = graph.node(node_id)
        return node.type if node else None

    @staticmethod
    def _active_incoming(graph: GraphDefinition, run: RunRecord, node_id: str) -> List[GraphEdge]:
        return [e for e in graph.incoming(node_id) if run.state.edges.get(e.id)]

    def _node_input(self, graph: GraphDefinition, run: RunRecord, node: GraphNode) -> Any:
        """Collapse the outputs of active predecessors with the node's merge policy."""
        if not graph.incoming(node.id):
            return run.inputs

        state = run.state
        position = {node_id: index for index, node_id in enumerate(state.order)}
        values: Dict[str, Any] = {}
        for edge in sorted(
            self._active_incoming(graph, run, node.id),
            key=lambda e: position.get(e.source, -1),
        ):
            if edge.source_handle == ERROR_HANDLE and edge.source in state.faults:
                values[edge.source] = state.faults[edge.source]
            else:
                values[edge.source] = state.outputs.get(edge.source)

        policy = node.config.get("merge", "last")
        if policy not in MERGE_POLICIES:
            logger.warning(f"Unknown merge policy {policy!r} on node {node.id}; using 'last'")
            policy = "last"
        if not values:
            return None
        if policy == "keyed":
            return values
        if policy == "list":
            return list(values.values())
        if policy == "first":
            return next(iter(values.values()))
        if policy == "merge":
            merged: Dict[str, Any] = {}
            for source, value in values.items():
                if isinstance(value, dict):
                    merged.update(value)
                else:
                    merged[source] = value
            return merged
        return list(values.values())[-1]

    # ------------------------------------------------------------------
    # Ledger updates
    def _complete(
        self, graph: GraphDefinition, run: RunRecord, node: GraphNode, result: NodeResult
    ) -> None:
        state = run.state
        state.nodes[node.id] = NodeStatus.COMPLETED
        state.outputs[node.id] = result.output
        if node.id in state.waiting:
            state.waiting.remove(node.id)
            run.metadata["waitingFor"] = [
                w for w in run.metadata.get("waitingFor", []) if w.get("nodeId") != node.id
            ]
        state.order.append(node.id)
        branches = result.branches or {}
        for edge in graph.outgoing(node.id):
            if node.type == NodeType.ERROR_BOUNDARY.value and edge.source_handle == ERROR_HANDLE:
                continue  # decided once the protected scope settles
            state.edges[edge.id] = branches.get(edge.source_handle, True)

    def _park(self, graph: GraphDefinition, run: RunRecord, node: GraphNode, node_input: Any) -> None:
        state = run.state
        state.nodes[node.id] = NodeStatus.WAITING
        state.outputs[node.id] = node_input
        state.waiting.append(node.id)
        run.metadata.setdefault("waitingFor", []).append(
            {
                "nodeId": node.id,
                "callbackToken": encode_correlation_id(graph.id, run.id, node.id),
            }
        )
        run.append_log(f"Waiting for callback: {node.display_name}")

    def _skip(self, graph: GraphDefinition, run: RunRecord, node_id: str) -> None:
        state = run.state
        state.nodes[node_id] = NodeStatus.SKIPPED
        if node_id in state.waiting:
            state.waiting.remove(node_id)
            run.metadata["waitingFor"] = [
                w for w in run.metadata.get("waitingFor", []) if w.get("nodeId") != node_id
            ]
        for edge in graph.outgoing(node_id):
            state.edges[edge.id] = False

    def _handle_failure(
        self,
        graph: GraphDefinition,
        run: RunRecord,
        node: GraphNode,
        node_input: Any,
        error: Exception,
    ) -> None:
        """Hand a node failure to the innermost enclosing ErrorBoundary, or re-raise."""
        boundary = self._boundary_for(graph, run, node.id)
        if boundary is None:
            raise error

        state = run.state
        logger.warning(f"Run {run.id}: node {node.id} failed, handled by {boundary}: {error}")
        run.append_log(
            f"Node {node.display_name} failed: {error}",
            level="error",
            data={"nodeId": node.id, "boundary": boundary},
        )
        state.nodes[node.id] = NodeStatus.FAILED
        state.errors[node.id] = str(error)
        state.order.append(node.id)
        for edge in graph.outgoing(node.id):
            state.edges[edge.id] = False
        for member in self._scope(graph, boundary):
            if not state.is_settled(member):
                self._skip(graph, run, member)

        state.faults[boundary] = {"error": str(error), "nodeId": node.id, "input": node_input}
        for edge in graph.outgoing(boundary):
            if edge.source_handle == ERROR_HANDLE:
                state.edges[edge.id] = True

    def _boundary_for(self, graph: GraphDefinition, run: RunRecord, node_id: str) -> Optional[str]:
        state = run.state
        candidates = []
        for node in graph.nodes:
            if (
                node.type == NodeType.ERROR_BOUNDARY.value
                and state.nodes.get(node.id) == NodeStatus.COMPLETED
                and node.id not in state.faults
            ):
                scope = self._scope(graph, node.id)
                if node_id in scope:
                    candidates.append((len(scope), node.id))
        return min(candidates)[1] if candidates else None

    @staticmethod
    def _scope(graph: GraphDefinition, boundary_id: str) -> List[str]:
        """Nodes protected by a boundary: explicit ``scope`` or its non-error successors."""
        node = graph.node(boundary_id)
        explicit = node.config.get("scope") if node else None
        if explicit:
            return [n for n in explicit if n != boundary_id]
        handlers = {
            e.target for e in graph.outgoing(boundary_id) if e.source_handle == ERROR_HANDLE
        }
        starts = [
            e.target for e in graph.outgoing(boundary_id) if e.source_handle != ERROR_HANDLE
        ]
        members = graph.reachable_from(starts, skip_handle=ERROR_HANDLE)
        return [m for m in members if m != boundary_id and m not in handlers]

    def _settle_boundaries(self, graph: GraphDefinition, run: RunRecord) -> None:
        """Deactivate error edges of boundaries whose scope finished cleanly."""
        state = run.state
        for node in graph.nodes:
            if (
                node.type != NodeType.ERROR_BOUNDARY.value
                or state.nodes.get(node.id) != NodeStatus.COMPLETED
                or node.id in state.faults
            ):
                continue
            pending = [
                e
                for e in graph.outgoing(node.id)
                if e.source_handle == ERROR_HANDLE and e.id not in state.edges
            ]
            if pending and all(state.is_settled(m) for m in self._scope(graph, node.id)):
                for edge in pending:
                    state.edges[edge.id] = False
