"""Per-type node handlers used by the orchestrator runner."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

from .config import FlowRelayConfig
from .contracts import GraphDefinition, GraphNode, NodeType, RunRecord
from .errors import (
    ConfigurationError,
    ConnectionNotFoundError,
    LocalFlowError,
    PollingTimeoutError,
    ProviderExecutionError,
)
from .http import HttpClient
from .persistence.repository import ConnectionStore
from .providers import BaseProvider, get_provider
from .utils import retry
from .utils.paths import get_path, render_template, set_path

logger = logging.getLogger(__name__)


class NodeResult(BaseModel):
    """Outcome of one node dispatch.

    ``branches`` maps a source handle to whether edges leaving through it
    are taken; handles not listed are always taken. ``suspended`` parks the
    node until a callback arrives.
    """

    output: Any = None
    branches: Optional[Dict[str, bool]] = None
    suspended: bool = False


class NodeConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class RetryingConfig(NodeConfig):
    retry_attempts: int = Field(default=0, alias="retryAttempts")
    retry_delay: float = Field(default=1000, alias="retryDelay")  # ms


class RemoteWebhookConfig(RetryingConfig):
    url: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body_template: Any = Field(default=None, alias="bodyTemplate")
    timeout: float = 30000  # ms
    provider: Optional[str] = None
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    enable_polling: bool = Field(default=False, alias="enablePolling")
    polling_interval: float = Field(default=2000, alias="pollingInterval")  # ms
    max_polling_attempts: int = Field(default=30, alias="maxPollingAttempts")


class LocalFlowNodeConfig(RetryingConfig):
    flow_id: Optional[str] = Field(default=None, alias="flowId")
    base_url: Optional[str] = Field(default=None, alias="baseURL")


class FieldMapping(NodeConfig):
    source: str = Field(alias="from")
    target: str = Field(alias="to")


class DataMapperConfig(NodeConfig):
    mappings: List[FieldMapping] = Field(default_factory=list)


class WaitForCallbackConfig(NodeConfig):
    merge_input: bool = Field(default=False, alias="mergeInput")


class ConditionConfig(NodeConfig):
    path: Optional[str] = None
    operator: str = "truthy"
    value: Any = None


def _compare(left: Any, right: Any, op) -> bool:
    try:
        return bool(op(left, right))
    except TypeError:
        return False


OPERATORS = {
    "equals": lambda a, b: a == b,
    "notEquals": lambda a, b: a != b,
    "gt": lambda a, b: _compare(a, b, lambda x, y: x > y),
    "gte": lambda a, b: _compare(a, b, lambda x, y: x >= y),
    "lt": lambda a, b: _compare(a, b, lambda x, y: x < y),
    "lte": lambda a, b: _compare(a, b, lambda x, y: x <= y),
    "contains": lambda a, b: _compare(a, b, lambda x, y: y in x),
    "in": lambda a, b: _compare(a, b, lambda x, y: x in y),
    "exists": lambda a, b: a is not None,
    "notExists": lambda a, b: a is None,
    "truthy": lambda a, b: bool(a),
    "falsy": lambda a, b: not a,
}


def evaluate_condition(config: ConditionConfig, data: Any) -> bool:
    """Evaluate ``path operator value`` against ``data``."""
    check = OPERATORS.get(config.operator)
    if check is None:
        raise ConfigurationError(f"Unknown condition operator: {config.operator}")
    subject = get_path(data, config.path) if config.path else data
    return check(subject, config.value)


def _parse(model: type[NodeConfig], node: GraphNode) -> Any:
    try:
        return model.model_validate(node.config)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid config for node {node.display_name}: {exc}") from exc


class NodeDispatcher:
    """Route a node to the handler for its type.

    Handlers return a :class:`NodeResult` and raise on failure; retrying is
    done here, failure bookkeeping is left to the runner.
    """

    def __init__(
        self,
        connections: ConnectionStore,
        http: HttpClient | None = None,
        config: FlowRelayConfig | None = None,
        providers: Optional[Dict[str, BaseProvider]] = None,
    ) -> None:
        self._config = config or FlowRelayConfig()
        self._connections = connections
        self._http = http or HttpClient(timeout=self._config.runner.http_timeout)
        self._providers = dict(providers or {})

    async def dispatch(
        self,
        node: GraphNode,
        data: Any,
        run: RunRecord,
        graph: GraphDefinition | None = None,
    ) -> NodeResult:
        handler = {
            NodeType.REMOTE_WEBHOOK.value: self._remote_webhook,
            NodeType.LOCAL_FLOW.value: self._local_flow,
            NodeType.DATA_MAPPER.value: self._data_mapper,
            NodeType.WAIT_FOR_CALLBACK.value: self._wait_for_callback,
            NodeType.CONDITION.value: self._condition,
        }.get(node.type)
        if handler is None:
            # Parallel, ErrorBoundary and unknown types pass data through;
            # their behaviour lives in the traversal.
            return NodeResult(output=data)
        return await handler(node, data, graph)

    def provider(self, name: str) -> BaseProvider:
        if name not in self._providers:
            self._providers[name] = get_provider(name, self._connections, self._http)
        return self._providers[name]

    # ------------------------------------------------------------------
    async def _remote_webhook(
        self, node: GraphNode, data: Any, graph: GraphDefinition | None
    ) -> NodeResult:
        config: RemoteWebhookConfig = _parse(RemoteWebhookConfig, node)

        async def attempt() -> Any:
            if config.provider and config.workflow_id:
                return await self._execute_via_provider(config, data, graph)
            if not config.url:
                raise ConfigurationError(f"RemoteWebhook {node.display_name} has no url")
            body = render_template(config.body_template, data) if config.body_template else data
            return await self._http.request(
                config.method,
                config.url,
                headers=config.headers,
                json=body,
                timeout=config.timeout,
            )

        output = await retry.execute_with_retry(
            attempt,
            config.retry_attempts,
            config.retry_delay,
            f"RemoteWebhook ({node.display_name})",
        )
        return NodeResult(output=output)

    async def _execute_via_provider(
        self, config: RemoteWebhookConfig, data: Any, graph: GraphDefinition | None
    ) -> Any:
        provider = self.provider(config.provider)
        connection_id = config.connection_id
        if not connection_id:
            workspace_id = graph.workspace_id if graph else None
            connection = await self._connections.find_connection(workspace_id, provider.name)
            if connection is None:
                raise ConnectionNotFoundError(
                    f"No active connection found for provider: {provider.name}"
                )
            connection_id = connection.id

        result = await provider.execute_workflow(config.workflow_id, data, connection_id)
        if not result.success:
            raise ProviderExecutionError(result.error or "Workflow execution failed")

        if config.enable_polling and provider.supports_polling and result.execution_id:
            return await self._poll_for_completion(
                provider,
                result.execution_id,
                connection_id,
                config.polling_interval,
                config.max_polling_attempts,
            )
        return result.output if result.output is not None else result.data

    async def _poll_for_completion(
        self,
        provider: BaseProvider,
        execution_id: str,
        connection_id: str,
        interval: float,
        max_attempts: int,
    ) -> Any:
        for _ in range(max_attempts):
            await retry.schedule_retry(interval / 1000)
            status = await provider.poll_execution(execution_id, connection_id)
            if status.status in ("completed", "success"):
                return status.output if status.output is not None else status.data
            if status.status in ("failed", "error"):
                raise ProviderExecutionError(
                    f"Workflow execution failed: {status.error or 'Unknown error'}"
                )
        raise PollingTimeoutError(f"Polling timeout after {max_attempts} attempts")

    async def _local_flow(
        self, node: GraphNode, data: Any, graph: GraphDefinition | None
    ) -> NodeResult:
        config: LocalFlowNodeConfig = _parse(LocalFlowNodeConfig, node)
        if not config.flow_id:
            raise ConfigurationError(f"LocalFlow {node.display_name} has no flowId")
        base_url = (config.base_url or self._config.local_flow.base_url).rstrip("/")
        question = data.get("question") if isinstance(data, dict) else None
        payload = {"question": question or json.dumps(data, default=str)}

        async def attempt() -> Any:
            try:
                return await self._http.post(f"{base_url}/predict/{config.flow_id}", json=payload)
            except requests.RequestException as exc:
                raise LocalFlowError(f"LocalFlow failed: {exc}") from exc

        output = await retry.execute_with_retry(
            attempt,
            config.retry_attempts,
            config.retry_delay,
            f"LocalFlow ({node.display_name})",
        )
        return NodeResult(output=output)

    async def _data_mapper(
        self, node: GraphNode, data: Any, graph: GraphDefinition | None
    ) -> NodeResult:
        config: DataMapperConfig = _parse(DataMapperConfig, node)
        result: Dict[str, Any] = {}
        for mapping in config.mappings:
            set_path(result, mapping.target, get_path(data, mapping.source))
        return NodeResult(output=result)

    async def _wait_for_callback(
        self, node: GraphNode, data: Any, graph: GraphDefinition | None
    ) -> NodeResult:
        _parse(WaitForCallbackConfig, node)
        return NodeResult(output=data, suspended=True)

    async def _condition(
        self, node: GraphNode, data: Any, graph: GraphDefinition | None
    ) -> NodeResult:
        outcome = evaluate_condition(_parse(ConditionConfig, node), data)
        logger.info(f"Condition {node.display_name} evaluated to {outcome}")
        return NodeResult(output=data, branches={"true": outcome, "false": not outcome})


def callback_output(node: GraphNode, parked_input: Any, payload: Any) -> Any:
    """Output of a WaitForCallback node once its callback arrived."""
    config: WaitForCallbackConfig = _parse(WaitForCallbackConfig, node)
    if config.merge_input and isinstance(parked_input, dict) and isinstance(payload, dict):
        return {**parked_input, **payload}
    return payload
