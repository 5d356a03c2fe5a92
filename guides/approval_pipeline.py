"""Example showing a graph that waits for an external approval callback."""

import asyncio

from flowrelay import OrchestratorService, RunStatus, get_repository


async def main():
    """Run a small approval graph and answer its callback."""
    service = OrchestratorService(get_repository())

    graph = await service.create_graph(
        {
            "name": "Order approval",
            "nodes": [
                {
                    "id": "prepare",
                    "type": "DataMapper",
                    "config": {"mappings": [{"from": "order.id", "to": "orderId"}]},
                },
                {"id": "approve", "type": "WaitForCallback", "config": {"mergeInput": True}},
                {
                    "id": "check",
                    "type": "Condition",
                    "config": {"path": "approved", "operator": "equals", "value": True},
                },
                {"id": "ship", "type": "DataMapper", "config": {"mappings": [{"from": "orderId", "to": "shipped"}]}},
                {"id": "cancel", "type": "DataMapper", "config": {"mappings": [{"from": "orderId", "to": "cancelled"}]}},
            ],
            "edges": [
                {"source": "prepare", "target": "approve"},
                {"source": "approve", "target": "check"},
                {"source": "check", "target": "ship", "sourceHandle": "true"},
                {"source": "check", "target": "cancel", "sourceHandle": "false"},
            ],
        }
    )

    run = await service.run(graph.id, {"order": {"id": "A-100"}})
    await service.wait_for_runs()
    run = await service.get_run(run.id)
    print(f"Run {run.id} is {run.status.value}")

    if run.status == RunStatus.WAITING:
        token = run.metadata["waitingFor"][0]["callbackToken"]
        print(f"Delivering approval to {token}")
        run = await service.handle_callback(token, {"approved": True})

    print(f"Run {run.id} finished as {run.status.value} with output {run.output}")


if __name__ == "__main__":
    asyncio.run(main())
