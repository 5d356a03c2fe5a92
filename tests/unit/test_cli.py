import asyncio
import json

from typer.testing import CliRunner

import flowrelay.persistence as persistence
from flowrelay.cli import app
from flowrelay.contracts import GraphDefinition
from flowrelay.persistence import InMemoryRepository

GRAPH_YAML = """
name: Greeting
nodes:
  - id: greet
    type: DataMapper
    label: Greet
    config:
      mappings:
        - from: user.name
          to: name
  - id: approve
    type: WaitForCallback
edges:
  - source: greet
    target: approve
"""


def _setup_repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    persistence._repository_instance = repo
    return repo


def _line(output: str, prefix: str) -> str:
    return next(line for line in output.splitlines() if line.startswith(prefix))


def test_graph_import_list_and_show(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "greeting.yaml"
    path.write_text(GRAPH_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["graph", "import", str(path), "--workspace", "acme"])
    assert result.exit_code == 0, f"Import failed: {result.stdout}"
    assert "Imported graph" in result.stdout
    graph = asyncio.run(repo.list_graphs("acme"))[0]

    result = runner.invoke(app, ["graph", "list"])
    assert result.exit_code == 0
    assert f"{graph.id}\tGreeting\t2 nodes" in result.stdout

    result = runner.invoke(app, ["graph", "show", graph.id])
    assert result.exit_code == 0
    assert "- greet [DataMapper] Greet" in result.stdout
    assert "greet -> approve" in result.stdout


def test_graph_import_rejects_bad_files(tmp_path):
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["graph", "import", str(tmp_path / "absent.yaml")])
    assert result.exit_code == 1
    assert "Specified path does not exist" in result.stdout

    broken = tmp_path / "broken.yaml"
    broken.write_text("nodes:\n  - id: a\n    type: Task\nedges:\n  - source: a\n    target: b\n")
    result = runner.invoke(app, ["graph", "import", str(broken)])
    assert result.exit_code == 1
    assert "Invalid graph definition" in result.stdout


def test_graph_run_then_callback(tmp_path):
    repo = _setup_repo()
    graph = GraphDefinition.model_validate(
        {
            "nodes": [
                {"id": "greet", "type": "DataMapper", "config": {"mappings": [{"from": "name", "to": "hello"}]}},
                {"id": "approve", "type": "WaitForCallback", "config": {"mergeInput": True}},
            ],
            "edges": [{"source": "greet", "target": "approve"}],
        }
    )
    asyncio.run(repo.save_graph(graph))

    runner = CliRunner()
    result = runner.invoke(app, ["graph", "run", graph.id, "--inputs", '{"name": "Ann"}'])
    assert result.exit_code == 0, f"Run failed: {result.stdout}"
    assert result.stdout.startswith("Run ")
    assert ": WAITING" in result.stdout
    token = _line(result.stdout, "Callback token: ").split(": ", 1)[1]

    result = runner.invoke(app, ["run", "callback", token, "--payload", '{"ok": true}'])
    assert result.exit_code == 0, f"Callback failed: {result.stdout}"
    assert ": COMPLETED" in result.stdout

    run = asyncio.run(repo.list_runs(graph.id))[0]
    assert run.output == {"hello": "Ann", "ok": True}

    result = runner.invoke(app, ["run", "show", run.id])
    assert result.exit_code == 0
    assert "Callback received" in result.stdout
    assert f"Graph: {graph.id}" in result.stdout

    result = runner.invoke(app, ["run", "list", graph.id])
    assert run.id in result.stdout


def test_graph_run_failure_exits_non_zero():
    repo = _setup_repo()
    graph = GraphDefinition.model_validate(
        {"nodes": [{"id": "call", "type": "RemoteWebhook", "config": {}}]}
    )
    asyncio.run(repo.save_graph(graph))

    result = CliRunner().invoke(app, ["graph", "run", graph.id])

    assert result.exit_code == 1
    assert ": FAILED" in result.stdout


def test_missing_records_and_bad_json():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["graph", "show", "missing"])
    assert result.exit_code == 1
    assert "Graph missing not found" in result.stdout

    result = runner.invoke(app, ["run", "callback", "nope"])
    assert result.exit_code == 1
    assert "Run with token nope not found" in result.stdout

    result = runner.invoke(app, ["graph", "run", "missing", "--inputs", "{not json"])
    assert result.exit_code == 1
    assert "Inputs must be valid JSON" in result.stdout


def test_provider_commands_without_network():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["provider", "list"])
    assert result.exit_code == 0
    assert "n8n\tdisconnected" in result.stdout
    assert "zapier\tdisconnected" in result.stdout

    result = runner.invoke(app, ["provider", "test", "zapier", "--credentials", json.dumps({})])
    assert result.exit_code == 1
    assert "Credentials are invalid" in result.stdout

    result = runner.invoke(app, ["provider", "workflows", "make"])
    assert result.exit_code == 1
    assert "No active connection found for provider: make" in result.stdout

    result = runner.invoke(app, ["provider", "disconnect", "missing"])
    assert result.exit_code == 1
    assert "Connection not found" in result.stdout
