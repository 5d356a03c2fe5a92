"""Command line interface for flowrelay graphs, runs and provider connections."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from flowrelay.config import configure_logging, load_config
from flowrelay.errors import FlowRelayError
from flowrelay.persistence import get_repository
from flowrelay.service import ConnectionService, OrchestratorService

app = typer.Typer(help="CLI for flowrelay orchestration graphs")

graph_app = typer.Typer(help="Commands for managing graphs")
run_app = typer.Typer(help="Commands for inspecting runs and delivering callbacks")
provider_app = typer.Typer(help="Commands for managing provider connections")

app.add_typer(graph_app, name="graph")
app.add_typer(run_app, name="run")
app.add_typer(provider_app, name="provider")


@app.callback()
def main() -> None:
    """flowrelay CLI entry point."""
    configure_logging(load_config())


def _parse_json(value: Optional[str], what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        typer.secho(f"{what} must be valid JSON", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _call(coro: Any) -> Any:
    """Run ``coro`` and turn flowrelay errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except FlowRelayError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _orchestrator() -> OrchestratorService:
    return OrchestratorService(get_repository(), config=load_config())


def _connections() -> ConnectionService:
    return ConnectionService(get_repository())


# ----------------------------------------------------------------------
# Graphs


@graph_app.command("import")
def graph_import(
    path: Path,
    workspace: Optional[str] = typer.Option(None, help="Workspace the graph belongs to"),
) -> None:
    """
    Import a graph definition from a JSON or YAML file.

    Example:
        flowrelay graph import ./graphs/order_sync.yaml --workspace acme
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        graph = _call(_orchestrator().create_graph(data, workspace_id=workspace))
    except ValueError as exc:
        typer.secho(f"Invalid graph definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Imported graph {graph.id} ({graph.name})")


@graph_app.command("list")
def graph_list(workspace: Optional[str] = None) -> None:
    """List graphs, most recently updated first."""
    graphs = _call(_orchestrator().list_graphs(workspace))
    if not graphs:
        typer.echo("No graphs found")
        return
    for graph in graphs:
        typer.echo(f"{graph.id}\t{graph.name}\t{len(graph.nodes)} nodes")


@graph_app.command("show")
def graph_show(graph_id: str) -> None:
    """Show the nodes and edges of a graph."""
    graph = _call(_orchestrator().get_graph(graph_id))
    typer.echo(f"Graph {graph.id}: {graph.name}")
    if graph.description:
        typer.echo(graph.description)
    for node in graph.nodes:
        typer.echo(f"- {node.id} [{node.type}] {node.display_name}")
    for edge in graph.edges:
        handle = f" ({edge.source_handle})" if edge.source_handle else ""
        typer.echo(f"  {edge.source} -> {edge.target}{handle}")


@graph_app.command("delete")
def graph_delete(graph_id: str) -> None:
    """Delete a graph."""
    _call(_orchestrator().delete_graph(graph_id))
    typer.echo(f"Deleted graph {graph_id}")


@graph_app.command("run")
def graph_run(
    graph_id: str,
    inputs: Optional[str] = typer.Option(None, help="JSON payload for the entry nodes"),
) -> None:
    """
    Run a graph and wait until it completes, fails or waits for a callback.

    Example:
        flowrelay graph run 0b6e... --inputs '{"orderId": 42}'
        # Output: Run 5c1f...: WAITING
        #         Callback token: 9f0c...
    """
    payload = _parse_json(inputs, "Inputs")

    async def _run() -> Any:
        service = _orchestrator()
        started = await service.run(graph_id, payload)
        await service.wait_for_runs()
        return await service.get_run(started.id)

    run = _call(_run())
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Callback token: {run.correlation_token}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output, default=str)}")
    if run.status.value == "FAILED":
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Runs


@run_app.command("list")
def run_list(graph_id: str) -> None:
    """List the runs of a graph, newest first."""
    runs = _call(_orchestrator().get_runs(graph_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.status.value}\t{run.created_at.isoformat()}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show the status, parked nodes and log of a run."""
    run = _call(_orchestrator().get_run(run_id))
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Graph: {run.graph_id}")
    for waiting in run.metadata.get("waitingFor", []):
        typer.echo(f"Waiting: {waiting['nodeId']} (token {waiting['callbackToken']})")
    for entry in run.logs:
        level = f" [{entry.level}]" if entry.level else ""
        typer.echo(f"- {entry.timestamp.isoformat()}{level} {entry.message}")


@run_app.command("callback")
def run_callback(
    token: str,
    payload: Optional[str] = typer.Option(None, help="JSON callback payload"),
) -> None:
    """
    Deliver a callback to a run by correlation token.

    Example:
        flowrelay run callback 9f0c... --payload '{"approved": true}'
    """
    data = _parse_json(payload, "Payload") or {}
    run = _call(_orchestrator().handle_callback(token, data))
    typer.echo(f"Run {run.id}: {run.status.value}")


# ----------------------------------------------------------------------
# Providers


@provider_app.command("list")
def provider_list(workspace: Optional[str] = None) -> None:
    """Show which providers have an active connection."""
    providers = _call(_connections().list_providers(workspace))
    for item in providers:
        connection = f"\t{item['connectionId']}" if item["connectionId"] else ""
        typer.echo(f"{item['id']}\t{item['status']}{connection}")


@provider_app.command("test")
def provider_test(
    provider: str,
    credentials: str = typer.Option(..., help="JSON credentials, e.g. '{\"apiKey\": \"...\"}'"),
) -> None:
    """Check credentials against a provider without storing them."""
    valid = _call(_connections().test(provider, _parse_json(credentials, "Credentials")))
    if valid:
        typer.echo("Credentials are valid")
    else:
        typer.secho("Credentials are invalid", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@provider_app.command("connect")
def provider_connect(
    provider: str,
    credentials: str = typer.Option(..., help="JSON credentials"),
    workspace: Optional[str] = None,
    name: Optional[str] = None,
) -> None:
    """Authenticate and store a provider connection."""
    connection = _call(
        _connections().connect(
            provider, _parse_json(credentials, "Credentials"), workspace_id=workspace, name=name
        )
    )
    typer.echo(f"Connected {connection.provider}: {connection.id}")


@provider_app.command("disconnect")
def provider_disconnect(connection_id: str, workspace: Optional[str] = None) -> None:
    """Delete a stored connection."""
    _call(_connections().disconnect(connection_id, workspace))
    typer.echo(f"Disconnected {connection_id}")


@provider_app.command("workflows")
def provider_workflows(provider: str, workspace: Optional[str] = None) -> None:
    """List the remote workflows of a connected provider."""
    workflows = _call(_connections().list_workflows(provider, workspace))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
