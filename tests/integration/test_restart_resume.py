import pytest

from flowrelay.contracts import RunStatus
from flowrelay.nodes import NodeDispatcher
from flowrelay.persistence import SQLiteRepository
from flowrelay.runner import OrchestratorRunner
from flowrelay.service import OrchestratorService

APPROVAL_GRAPH = {
    "name": "Order approval",
    "nodes": [
        {"id": "reserve", "type": "RemoteWebhook", "config": {"url": "https://stock.example.com/reserve"}},
        {"id": "approve", "type": "WaitForCallback", "config": {"mergeInput": True}},
        {"id": "ship", "type": "DataMapper", "config": {"mappings": [{"from": "reservation", "to": "shipped"}]}},
    ],
    "edges": [
        {"source": "reserve", "target": "approve"},
        {"source": "approve", "target": "ship"},
    ],
}


def _service(repo, fake_http, owner):
    runner = OrchestratorRunner(repo, NodeDispatcher(repo, http=fake_http), owner=owner)
    return OrchestratorService(repo, runner=runner)


@pytest.mark.asyncio
async def test_resume_after_restart_does_not_repeat_work(tmp_path, fake_http):
    fake_http.routes[("POST", "https://stock.example.com/reserve")] = {"reservation": "R-1"}
    db_path = tmp_path / "runs.db"

    first = _service(SQLiteRepository(db_path), fake_http, "worker-1")
    graph = await first.create_graph(APPROVAL_GRAPH)
    started = await first.run(graph.id, {"orderId": 9})
    await first.wait_for_runs()
    assert (await first.get_run(started.id)).status == RunStatus.WAITING

    # a fresh process: new repository connection, new runner
    second = _service(SQLiteRepository(db_path), fake_http, "worker-2")
    run = await second.handle_callback(started.correlation_token, {"approved": True})

    assert run.status == RunStatus.COMPLETED
    assert run.output == {"shipped": "R-1"}
    assert len(fake_http.calls) == 1

    stored = await second.get_run(started.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.lease_owner is None
    assert [e.message for e in stored.logs].count("Executing node: reserve") == 1


@pytest.mark.asyncio
async def test_expired_lease_of_crashed_worker_is_taken_over(tmp_path, fake_http):
    fake_http.routes[("POST", "https://stock.example.com/reserve")] = {"reservation": "R-2"}
    repo = SQLiteRepository(tmp_path / "runs.db")
    service = _service(repo, fake_http, "worker-1")
    graph = await service.create_graph(APPROVAL_GRAPH)
    started = await service.run(graph.id, {})
    await service.wait_for_runs()

    # worker-3 took the lease and died before releasing it
    assert await repo.acquire_lease(started.id, "worker-3", -1)

    other = _service(SQLiteRepository(tmp_path / "runs.db"), fake_http, "worker-2")
    token = (await other.get_run(started.id)).metadata["waitingFor"][0]["callbackToken"]
    run = await other.handle_callback(token, {"approved": True})

    assert run.status == RunStatus.COMPLETED
    assert run.output == {"shipped": "R-2"}
