import asyncio

import pytest

from flowrelay.contracts import ConnectionStatus, NodeStatus, RunStatus
from flowrelay.errors import AuthenticationError, ConnectionNotFoundError, NotFoundError
from flowrelay.nodes import NodeDispatcher
from flowrelay.runner import OrchestratorRunner
from flowrelay.service import ConnectionService, OrchestratorService

N8N = "https://n8n.example.com"

APPROVAL_GRAPH = {
    "name": "Approval",
    "nodes": [
        {"id": "prep", "type": "DataMapper", "config": {"mappings": [{"from": "orderId", "to": "id"}]}},
        {"id": "approve", "type": "WaitForCallback", "label": "Approve order"},
        {"id": "ship", "type": "DataMapper", "config": {"mappings": [{"from": "approved", "to": "shipped"}]}},
    ],
    "edges": [{"source": "prep", "target": "approve"}, {"source": "approve", "target": "ship"}],
}


@pytest.fixture
def service(repo, fake_http):
    runner = OrchestratorRunner(repo, NodeDispatcher(repo, http=fake_http), owner="test-worker")
    return OrchestratorService(repo, runner=runner)


@pytest.fixture
def connections(repo, fake_http):
    return ConnectionService(repo, http=fake_http)


@pytest.mark.asyncio
async def test_graph_crud(service):
    graph = await service.create_graph(APPROVAL_GRAPH, workspace_id="acme")
    assert graph.workspace_id == "acme"
    assert [g.id for g in await service.list_graphs("acme")] == [graph.id]

    renamed = await service.update_graph(graph.id, {"name": "Order approval"})
    assert renamed.id == graph.id
    assert (await service.get_graph(graph.id)).name == "Order approval"

    with pytest.raises(ValueError):
        await service.update_graph(graph.id, {"edges": [{"source": "prep", "target": "ghost"}]})

    await service.delete_graph(graph.id)
    with pytest.raises(NotFoundError):
        await service.get_graph(graph.id)
    with pytest.raises(NotFoundError):
        await service.delete_graph(graph.id)


@pytest.mark.asyncio
async def test_run_returns_running_snapshot_and_executes_in_background(service):
    graph = await service.create_graph(APPROVAL_GRAPH)

    started = await service.run(graph.id, {"orderId": 7})
    assert started.status == RunStatus.RUNNING
    assert [entry.message for entry in started.logs] == ["Starting orchestration"]

    await service.wait_for_runs()

    run = await service.get_run(started.id)
    assert run.status == RunStatus.WAITING
    assert run.state.outputs["approve"] == {"id": 7}
    assert [r.id for r in await service.get_runs(graph.id)] == [run.id]


@pytest.mark.asyncio
async def test_run_unknown_graph(service):
    with pytest.raises(NotFoundError, match="Graph missing not found"):
        await service.run("missing", {})
    with pytest.raises(NotFoundError):
        await service.get_run("missing")


@pytest.mark.asyncio
async def test_callback_by_run_token(service):
    graph = await service.create_graph(APPROVAL_GRAPH)
    started = await service.run(graph.id, {"orderId": 7})
    await service.wait_for_runs()

    run = await service.handle_callback(started.correlation_token, {"approved": True})

    assert run.status == RunStatus.COMPLETED
    assert run.output == {"shipped": True}


@pytest.mark.asyncio
async def test_callback_by_composite_token(service):
    graph = await service.create_graph(APPROVAL_GRAPH)
    started = await service.run(graph.id, {"orderId": 7})
    await service.wait_for_runs()
    waiting = (await service.get_run(started.id)).metadata["waitingFor"]
    assert waiting[0]["callbackToken"] == f"{graph.id}:{started.id}:approve"

    run = await service.handle_callback(waiting[0]["callbackToken"], {"approved": False})

    assert run.status == RunStatus.COMPLETED
    assert run.output == {"shipped": False}


@pytest.mark.asyncio
async def test_callback_with_unknown_token(service):
    graph = await service.create_graph(APPROVAL_GRAPH)
    started = await service.run(graph.id, {})
    await service.wait_for_runs()

    with pytest.raises(NotFoundError, match="Run with token nope not found"):
        await service.handle_callback("nope", {})
    with pytest.raises(NotFoundError):
        await service.handle_callback(f"other-graph:{started.id}:approve", {})


@pytest.mark.asyncio
async def test_connect_replaces_previous_active_connection(connections, repo, fake_http):
    fake_http.routes[("GET", f"{N8N}/api/v1/workflows")] = {"data": []}
    credentials = {"baseUrl": N8N, "apiKey": "k"}

    first = await connections.connect("n8n", credentials, workspace_id="acme")
    second = await connections.connect("n8n", credentials, workspace_id="acme", name="Prod")

    assert second.last_sync is not None
    assert (await repo.get_connection(first.id)).status == ConnectionStatus.INACTIVE
    assert (await repo.find_connection("acme", "n8n")).id == second.id

    listed = await connections.list("acme")
    assert len(listed) == 2
    assert all("credentials" not in item for item in listed)


@pytest.mark.asyncio
async def test_connect_rejects_invalid_credentials(connections, repo):
    with pytest.raises(AuthenticationError, match="Invalid credentials"):
        await connections.connect("n8n", {"baseUrl": N8N, "apiKey": "bad"}, workspace_id="acme")
    assert await repo.list_connections("acme") == []


@pytest.mark.asyncio
async def test_test_credentials(connections, fake_http):
    fake_http.routes[("GET", f"{N8N}/api/v1/workflows")] = {"data": []}
    assert await connections.test("n8n", {"baseUrl": N8N, "apiKey": "k"}) is True
    assert await connections.test("zapier", {}) is False


@pytest.mark.asyncio
async def test_list_providers_reports_connection_state(connections, fake_http):
    fake_http.routes[("GET", f"{N8N}/api/v1/workflows")] = {"data": []}
    connection = await connections.connect("n8n", {"baseUrl": N8N, "apiKey": "k"}, workspace_id="acme")

    providers = {p["id"]: p for p in await connections.list_providers("acme")}

    assert set(providers) == {"n8n", "make", "zapier"}
    assert providers["n8n"]["status"] == "connected"
    assert providers["n8n"]["connectionId"] == connection.id
    assert providers["make"] == {
        "id": "make",
        "name": "Make",
        "status": "disconnected",
        "type": "external",
        "connectionId": None,
    }


@pytest.mark.asyncio
async def test_disconnect_checks_workspace(connections, repo, fake_http):
    fake_http.routes[("GET", f"{N8N}/api/v1/workflows")] = {"data": []}
    connection = await connections.connect("n8n", {"baseUrl": N8N, "apiKey": "k"}, workspace_id="acme")

    with pytest.raises(NotFoundError, match="Connection not found"):
        await connections.disconnect(connection.id, workspace_id="other")

    await connections.disconnect(connection.id, workspace_id="acme")
    assert await repo.get_connection(connection.id) is None


@pytest.mark.asyncio
async def test_workflows_require_active_connection(connections, fake_http):
    with pytest.raises(ConnectionNotFoundError, match="No active connection found for provider: n8n"):
        await connections.list_workflows("n8n", "acme")

    fake_http.routes[("GET", f"{N8N}/api/v1/workflows")] = {"data": [{"id": 3, "name": "Sync"}]}
    await connections.connect("n8n", {"baseUrl": N8N, "apiKey": "k"}, workspace_id="acme")

    workflows = await connections.list_workflows("n8n", "acme")
    assert [w.name for w in workflows] == ["Sync"]


class GatedDispatcher(NodeDispatcher):
    """Holds one node in flight until the test opens the gate."""

    def __init__(self, *args, held: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.held = held
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def dispatch(self, node, data, run, graph=None):
        if node.id == self.held:
            self.entered.set()
            await self.gate.wait()
        return await super().dispatch(node, data, run, graph)


@pytest.mark.asyncio
async def test_callback_during_sibling_webhook_waits_for_execution(repo, fake_http):
    fake_http.routes[("POST", "https://hooks.example.com/slow")] = {"synced": True}
    dispatcher = GatedDispatcher(repo, http=fake_http, held="sync")
    service = OrchestratorService(repo, runner=OrchestratorRunner(repo, dispatcher, owner="test-worker"))
    graph = await service.create_graph(
        {
            "nodes": [
                {"id": "start", "type": "Task"},
                {"id": "approve", "type": "WaitForCallback"},
                {"id": "sync", "type": "RemoteWebhook", "config": {"url": "https://hooks.example.com/slow"}},
            ],
            "edges": [{"source": "start", "target": "approve"}, {"source": "start", "target": "sync"}],
        }
    )

    started = await service.run(graph.id, {"orderId": 7})
    await dispatcher.entered.wait()
    callback = asyncio.create_task(
        service.handle_callback(f"{graph.id}:{started.id}:approve", {"approved": True})
    )
    await asyncio.sleep(0)
    dispatcher.gate.set()
    await callback
    await service.wait_for_runs()

    run = await service.get_run(started.id)
    assert run.status == RunStatus.COMPLETED
    assert run.state.nodes["sync"] == NodeStatus.COMPLETED
    assert run.state.nodes["approve"] == NodeStatus.COMPLETED
    assert run.state.outputs["sync"] == {"synced": True}
    assert run.output == {"approved": True}
    assert run.lease_owner is None
    assert [e.message for e in run.logs if e.level == "error"] == []
