"""Example chaining two remote webhooks, the second one through a connected n8n instance.

Requires N8N_BASE_URL and N8N_API_KEY, plus an n8n workflow id with a webhook trigger.
"""

import asyncio
import os
import sys

from flowrelay import ConnectionService, OrchestratorService, get_repository


async def main():
    workflow_id = sys.argv[1]
    repository = get_repository()

    connections = ConnectionService(repository)
    await connections.connect(
        "n8n",
        {"baseUrl": os.environ["N8N_BASE_URL"], "apiKey": os.environ["N8N_API_KEY"]},
        workspace_id="guides",
    )

    service = OrchestratorService(repository)
    graph = await service.create_graph(
        {
            "name": "Echo then n8n",
            "nodes": [
                {
                    "id": "echo",
                    "type": "RemoteWebhook",
                    "config": {
                        "url": "https://httpbin.org/post",
                        "bodyTemplate": '{"x": "{{value}}"}',
                        "retryAttempts": 2,
                    },
                },
                {"id": "pick", "type": "DataMapper", "config": {"mappings": [{"from": "json.x", "to": "x"}]}},
                {
                    "id": "n8n",
                    "type": "RemoteWebhook",
                    "config": {"provider": "n8n", "workflowId": workflow_id, "enablePolling": True},
                },
            ],
            "edges": [{"source": "echo", "target": "pick"}, {"source": "pick", "target": "n8n"}],
        },
        workspace_id="guides",
    )

    run = await service.run(graph.id, {"value": 42})
    await service.wait_for_runs()
    run = await service.get_run(run.id)

    print(f"Run {run.id}: {run.status.value}")
    for entry in run.logs:
        print(f"  {entry.timestamp.isoformat()} {entry.message}")
    print(f"Output: {run.output}")


if __name__ == "__main__":
    asyncio.run(main())
