"""n8n provider adapter."""

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

WEBHOOK_NODE = "n8n-nodes-base.webhook"

EXECUTION_STATUSES = {
    "success": "completed",
    "error": "failed",
    "crashed": "failed",
    "canceled": "failed",
    "running": "running",
    "waiting": "running",
    "new": "pending",
}


class N8nProvider(BaseProvider):
    """Talks to the n8n public REST API (``/api/v1``) with an API key.

    Workflows are triggered through their webhook node, so only workflows
    with a webhook trigger can be executed. Executions that report an id
    can be polled.
    """

    name = "n8n"
    supports_polling = True

    def _base_url(self, credentials: Dict[str, Any]) -> str:
        return str(credentials.get("baseUrl", "")).rstrip("/")

    def _headers(self, credentials: Dict[str, Any]) -> Dict[str, str]:
        return {
            "X-N8N-API-KEY": str(credentials.get("apiKey", "")),
            "Content-Type": "application/json",
        }

    async def _api(self, credentials: Dict[str, Any], path: str, **kwargs: Any) -> Any:
        return await self._http.get(
            f"{self._base_url(credentials)}/api/v1{path}",
            headers=self._headers(credentials),
            **kwargs,
        )

    async def authenticate(self, credentials: Dict[str, Any]) -> bool:
        if not credentials.get("baseUrl") or not credentials.get("apiKey"):
            return False
        try:
            await self._api(credentials, "/workflows", params={"limit": 1})
        except requests.RequestException as exc:
            logger.error(f"n8n authentication failed: {exc}")
            return False
        return True

    async def list_workflows(self, connection_id: str) -> list[WorkflowSummary]:
        credentials = await self.get_credentials(connection_id)
        try:
            body = await self._api(credentials, "/workflows")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to list n8n workflows: {exc}") from exc

        workflows = body.get("data", []) if isinstance(body, dict) else body or []
        return [
            WorkflowSummary(
                id=str(wf.get("id")),
                name=wf.get("name") or "Unnamed workflow",
                description=(wf.get("settings") or {}).get("description") or "",
                provider=self.name,
                last_updated=wf.get("updatedAt"),
                status="active" if wf.get("active") else "inactive",
                active=bool(wf.get("active")),
                tags=[t.get("name") for t in wf.get("tags") or [] if isinstance(t, dict)],
            )
            for wf in workflows
        ]

    async def get_workflow_preview(
        self, workflow_id: str, connection_id: str
    ) -> WorkflowPreview:
        credentials = await self.get_credentials(connection_id)
        try:
            workflow = await self._api(credentials, f"/workflows/{workflow_id}")
        except requests.RequestException as exc:
            raise ProviderError(f"Failed to get n8n workflow preview: {exc}") from exc

        nodes = workflow.get("nodes") or []
        webhook_url = None
        webhook = next((n for n in nodes if n.get("type") == WEBHOOK_NODE), None)
        if webhook is not None:
            path = (webhook.get("parameters") or {}).get("path") or workflow_id
            webhook_url = f"{self._base_url(credentials)}/webhook/{path}"

        triggers = [
            n.get("type")
            for n in nodes
            if "trigger" in (n.get("type") or "").lower() or "webhook" in (n.get("type") or "")
        ]
        return WorkflowPreview(
            id=str(workflow.get("id", workflow_id)),
            name=workflow.get("name") or "Unnamed workflow",
            description=(workflow.get("settings") or {}).get("description") or "",
            provider=self.name,
            flow_data=self._to_flow_data(workflow),
            metadata={
                "nodes": len(nodes),
                "triggers": triggers,
                "active": bool(workflow.get("active")),
            },
            webhook_url=webhook_url,
        )

    async def execute_workflow(
        self, workflow_id: str, data: Any, connection_id: str
    ) -> ExecutionResult:
        started = time.monotonic()
        try:
            preview = await self.get_workflow_preview(workflow_id, connection_id)
            if not preview.webhook_url:
                raise ProviderError("Workflow does not have a webhook trigger")
            body = await self._http.post(preview.webhook_url, json=data, timeout=60000)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error(f"Failed to execute n8n workflow {workflow_id}: {exc}")
            return ExecutionResult(success=False, error=str(exc), status="failed")

        execution_id = body.get("executionId") if isinstance(body, dict) else None
        return ExecutionResult(
            success=True,
            data=body,
            execution_id=str(execution_id) if execution_id else None,
            status="running" if execution_id else "completed",
            duration=(time.monotonic() - started) * 1000,
            metadata={"webhookUrl": preview.webhook_url},
        )

    async def poll_execution(self, execution_id: str, connection_id: str) -> ExecutionStatus:
        try:
            credentials = await self.get_credentials(connection_id)
            execution = await self._api(credentials, f"/executions/{execution_id}")
        except Exception as exc:
            logger.error(f"Failed to poll n8n execution {execution_id}: {exc}")
            return ExecutionStatus(execution_id=execution_id, status="failed", error=str(exc))

        if not isinstance(execution, dict):
            logger.warning(f"Unexpected response polling n8n execution {execution_id}: {execution!r}")
            return ExecutionStatus(
                execution_id=execution_id,
                status="unknown",
                error=f"Unexpected execution response: {execution!r}",
            )

        return ExecutionStatus(
            execution_id=execution_id,
            status=self._status_of(execution),
            data=execution.get("data"),
            started_at=execution.get("startedAt"),
            finished_at=execution.get("stoppedAt"),
        )

    @staticmethod
    def _status_of(execution: Dict[str, Any]) -> str:
        status = execution.get("status")
        if status in EXECUTION_STATUSES:
            return EXECUTION_STATUSES[status]
        if execution.get("finished"):
            return "completed"
        if execution.get("stoppedAt"):
            return "failed"
        return "running" if execution.get("startedAt") else "pending"

    @staticmethod
    def _to_flow_data(workflow: Dict[str, Any]) -> FlowData:
        nodes = [
            {
                "id": node.get("name"),
                "type": "default",
                "position": node.get("position") or [index * 200, index * 100],
                "data": {"label": node.get("name"), "type": node.get("type")},
            }
            for index, node in enumerate(workflow.get("nodes") or [])
        ]
        edges = []
        # {"Source": {"main": [[{"node": "Target", "type": "main", "index": 0}]]}}
        for source, outputs in (workflow.get("connections") or {}).items():
            for output_index, targets in enumerate((outputs or {}).get("main") or []):
                for target in targets or []:
                    edges.append(
                        {
                            "id": f"{source}-{target.get('node')}",
                            "source": source,
                            "target": target.get("node"),
                            "sourceHandle": f"output_{output_index}",
                            "targetHandle": f"input_{target.get('index', 0)}",
                        }
                    )
        return FlowData(nodes=nodes, edges=edges)
