"""Make.com provider adapter.

Make scenarios are listed and inspected through the REST API
(``Authorization: Token <key>``) and triggered through their webhook
module. Make has no execution polling API, so ``poll_execution`` always
answers ``unknown``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

import requests

from ..contracts import (
    ExecutionResult,
    ExecutionStatus,
    FlowData,
    WorkflowPreview,
    WorkflowSummary,
)
from ..errors import ConfigurationError, ProviderError
from .base import BaseProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://us1.make.com/api/v2"


class MakeProvider(BaseProvider):
    name = "make"

    def _base_url(self, credentials: Dict[str, Any]) -> str:
        return str(credentials.get("baseUrl") or DEFAULT_BASE_URL).rstrip("/")

    async def _api(self, credentials: Dict[str, Any], path: str, **kwargs: Any) -> Any:
        return await self._http.get(
            f"{self._base_url(credentials)}{path}",
            headers={
                "Authorization": f"Token {credentials.get('apiKey', '')}",
                "Content-Type": "application/json",
            },
            **kwargs,
        )

    async def authenticate(self, credentials: Dict[str, Any]) -> bool:
        if not credentials.get("apiKey"):
            return False
        try:
            await self._api(credentials, "/scenarios", params={"limit": 1})
        except requests.RequestException as exc:
            logger.error(f"[MakeProvider] Authentication failed: {exc}")
            return False
        return True

    async def list_workflows(self, connection_id: str) -> list[WorkflowSummary]:
        credentials = await self.get_credentials(connection_id)
        try:
            body = await self._api(credentials, "/scenarios")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to list Make scenarios: {exc}") from exc

        scenarios = body.get("scenarios", []) if isinstance(body, dict) else body or []
        summaries = []
        for scenario in scenarios:
            active = (scenario.get("scheduling") or {}).get("type") == "indefinitely"
            summaries.append(
                WorkflowSummary(
                    id=str(scenario.get("id") or scenario.get("scenarioId")),
                    name=scenario.get("name") or "Unnamed Scenario",
                    description=scenario.get("description") or "",
                    provider=self.name,
                    last_updated=scenario.get("lastEdit"),
                    status="active" if active else "inactive",
                    active=active,
                )
            )
        return summaries

    async def get_workflow_preview(
        self, workflow_id: str, connection_id: str
    ) -> WorkflowPreview:
        credentials = await self.get_credentials(connection_id)
        try:
            body = await self._api(credentials, f"/scenarios/{workflow_id}")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to get Make scenario preview: {exc}") from exc

        scenario = body.get("scenario", body) if isinstance(body, dict) else {}
        modules = (scenario.get("blueprint") or {}).get("flow") or []
        return WorkflowPreview(
            id=str(workflow_id),
            name=scenario.get("name") or "Unnamed Scenario",
            description=scenario.get("description") or "",
            provider=self.name,
            flow_data=self._to_flow_data(modules),
            webhook_url=self._webhook_url(scenario, modules, credentials),
            metadata={
                "active": (scenario.get("scheduling") or {}).get("type") == "indefinitely",
                "lastEdit": scenario.get("lastEdit"),
                "teamId": scenario.get("teamId"),
                "organizationId": scenario.get("organizationId"),
            },
        )

    @staticmethod
    def _webhook_url(
        scenario: Dict[str, Any], modules: list[Dict[str, Any]], credentials: Dict[str, Any]
    ) -> str | None:
        hook = next(
            (
                m
                for m in modules
                if "webhook" in str(m.get("module", "")).lower()
                or m.get("type") == "webhook"
                or (m.get("mapper") or {}).get("url")
            ),
            None,
        )
        if hook is None:
            return None
        url = (hook.get("mapper") or {}).get("url") or hook.get("url")
        if not url and scenario.get("hook"):
            # hooks live at https://hook.<region>.make.com/<hookId>
            region = "eu1" if "eu" in str(credentials.get("baseUrl", "")) else "us1"
            url = f"https://hook.{region}.make.com/{scenario['hook']}"
        return url

    async def execute_workflow(
        self, workflow_id: str, data: Any, connection_id: str
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            preview = await self.get_workflow_preview(workflow_id, connection_id)
            if not preview.webhook_url:
                raise ProviderError(f"No webhook URL found for Make scenario: {workflow_id}")
            body = await self._http.post(
                preview.webhook_url,
                json=data,
                headers={"Content-Type": "application/json"},
                timeout=60000,
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error(f"[MakeProvider] Failed to execute scenario {workflow_id}: {exc}")
            return ExecutionResult(success=False, error=str(exc), status="failed")

        execution_id = body.get("executionId") if isinstance(body, dict) else None
        return ExecutionResult(
            success=True,
            output=body,
            execution_id=str(execution_id) if execution_id else None,
            status="completed",
            duration=(time.monotonic() - started) * 1000,
            metadata={"webhookUrl": preview.webhook_url},
        )

    async def poll_execution(self, execution_id: str, connection_id: str) -> ExecutionStatus:
        logger.warning("[MakeProvider] Polling is not supported by Make.com")
        return ExecutionStatus(
            execution_id=execution_id,
            status="unknown",
            metadata={"message": "Make.com has no execution polling API; use webhooks."},
        )

    @staticmethod
    def _to_flow_data(modules: list[Dict[str, Any]]) -> FlowData:
        nodes = []
        edges = []
        previous = None
        for index, module in enumerate(modules):
            node_id = str(module.get("id") or f"module-{index}")
            nodes.append(
                {
                    "id": node_id,
                    "type": "default",
                    "position": {"x": 100 + index * 250, "y": 100},
                    "data": {
                        "label": module.get("module") or module.get("name") or f"Module {index + 1}",
                        "type": module.get("type") or "module",
                    },
                }
            )
            if previous is not None:
                edges.append({"id": f"e-{previous}-{node_id}", "source": previous, "target": node_id})
            previous = node_id
        return FlowData(nodes=nodes, edges=edges)
