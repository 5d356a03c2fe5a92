"""Zapier provider adapter.

Zapier's public API only covers listing and inspecting Zaps; execution
happens through a "Webhooks by Zapier" trigger and cannot be tracked.
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

DEFAULT_BASE_URL = "https://api.zapier.com/v1"
WEBHOOK_APPS = ("webhook", "webhooks")


class ZapierProvider(BaseProvider):
    name = "zapier"

    async def _api(self, credentials: Dict[str, Any], path: str, **kwargs: Any) -> Any:
        base_url = str(credentials.get("baseUrl") or DEFAULT_BASE_URL).rstrip("/")
        return await self._http.get(
            f"{base_url}{path}",
            headers={
                "X-API-Key": str(credentials.get("apiKey", "")),
                "Content-Type": "application/json",
            },
            **kwargs,
        )

    async def authenticate(self, credentials: Dict[str, Any]) -> bool:
        if not credentials.get("apiKey"):
            logger.error("[ZapierProvider] Zapier API key is required")
            return False
        try:
            await self._api(credentials, "/users/me")
        except requests.RequestException as exc:
            logger.error(f"[ZapierProvider] Authentication failed: {exc}")
            return False
        return True

    async def list_workflows(self, connection_id: str) -> list[WorkflowSummary]:
        credentials = await self.get_credentials(connection_id)
        try:
            body = await self._api(credentials, "/zaps")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to list Zapier Zaps: {exc}") from exc

        zaps = body.get("data", []) if isinstance(body, dict) else body or []
        return [
            WorkflowSummary(
                id=str(zap.get("id")),
                name=zap.get("title") or zap.get("name") or "Unnamed Zap",
                description=zap.get("description") or "",
                provider=self.name,
                last_updated=zap.get("modified_at"),
                status="active" if zap.get("state") == "on" else "inactive",
                active=zap.get("state") == "on",
            )
            for zap in zaps
        ]

    async def get_workflow_preview(
        self, workflow_id: str, connection_id: str
    ) -> WorkflowPreview:
        credentials = await self.get_credentials(connection_id)
        try:
            zap = await self._api(credentials, f"/zaps/{workflow_id}")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to get Zapier Zap preview: {exc}") from exc

        zap = zap if isinstance(zap, dict) else {}
        steps = zap.get("steps") or []
        trigger = next(
            (s for s in steps if s.get("type") == "read" and s.get("app") in WEBHOOK_APPS),
            None,
        )
        return WorkflowPreview(
            id=str(workflow_id),
            name=zap.get("title") or zap.get("name") or "Unnamed Zap",
            description=zap.get("description") or "",
            provider=self.name,
            flow_data=self._to_flow_data(steps),
            webhook_url=trigger.get("url") if trigger else None,
            metadata={
                "active": zap.get("state") == "on",
                "modified_at": zap.get("modified_at"),
                "url": zap.get("url"),
            },
        )

    async def execute_workflow(
        self, workflow_id: str, data: Any, connection_id: str
    ) -> ExecutionResult:
        execution_id = f"zapier-{workflow_id}-{int(time.time() * 1000)}"
        started = time.monotonic()
        try:
            preview = await self.get_workflow_preview(workflow_id, connection_id)
            if not preview.webhook_url:
                raise ProviderError(f"No webhook URL found for Zapier Zap: {workflow_id}")
            body = await self._http.post(
                preview.webhook_url,
                json=data,
                headers={"Content-Type": "application/json"},
                timeout=60000,
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error(f"[ZapierProvider] Failed to execute Zap {workflow_id}: {exc}")
            return ExecutionResult(
                success=False, execution_id=execution_id, error=str(exc), status="failed"
            )

        return ExecutionResult(
            success=True,
            output=body,
            execution_id=execution_id,
            status="completed",
            duration=(time.monotonic() - started) * 1000,
            metadata={
                "webhookUrl": preview.webhook_url,
                "message": "Zapier webhook triggered successfully",
            },
        )

    async def poll_execution(self, execution_id: str, connection_id: str) -> ExecutionStatus:
        logger.warning("[ZapierProvider] Polling is not supported by Zapier")
        return ExecutionStatus(
            execution_id=execution_id,
            status="unknown",
            metadata={"message": "Zapier has no execution polling API; check the Zap history."},
        )

    @staticmethod
    def _to_flow_data(steps: list[Dict[str, Any]]) -> FlowData:
        nodes = []
        edges = []
        previous = None
        for index, step in enumerate(steps):
            node_id = str(step.get("id") or f"step-{index}")
            kind = "Trigger" if step.get("type") == "read" else "Action"
            app = step.get("app_name") or step.get("app") or "Unknown"
            nodes.append(
                {
                    "id": node_id,
                    "type": "default",
                    "position": {"x": 100 + index * 250, "y": 100},
                    "data": {
                        "label": f"{kind}: {app}",
                        "type": kind.lower(),
                        "description": step.get("description") or step.get("title") or "",
                        "app": app,
                    },
                }
            )
            if previous is not None:
                edges.append({"id": f"e-{previous}-{node_id}", "source": previous, "target": node_id})
            previous = node_id
        return FlowData(nodes=nodes, edges=edges)
