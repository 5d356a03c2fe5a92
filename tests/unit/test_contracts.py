import pytest
from pydantic import ValidationError

from flowrelay.contracts import (
    GraphDefinition,
    GraphEdge,
    GraphNode,
    RunRecord,
    RunStatus,
)
from flowrelay.errors import InvalidTransitionError


def test_graph_node_accepts_canvas_shape():
    node = GraphNode.model_validate(
        {
            "id": "n1",
            "type": "customNode",
            "position": {"x": 0, "y": 0},
            "data": {"nodeType": "DataMapper", "label": "Map", "config": {"mappings": []}},
        }
    )
    assert node.type == "DataMapper"
    assert node.label == "Map"
    assert node.config == {"mappings": []}
    assert node.display_name == "Map"


def test_graph_edge_defaults_id_and_reads_source_handle_alias():
    edge = GraphEdge.model_validate({"source": "a", "target": "b", "sourceHandle": "true"})
    assert edge.source_handle == "true"
    assert edge.id == "a->b:true"
    assert GraphEdge(source="a", target="b").id == "a->b"


def test_graph_rejects_unknown_edge_endpoints():
    with pytest.raises(ValidationError, match="unknown node"):
        GraphDefinition(nodes=[{"id": "a", "type": "DataMapper"}], edges=[{"source": "a", "target": "x"}])


def test_graph_rejects_duplicate_node_ids():
    with pytest.raises(ValidationError, match="unique"):
        GraphDefinition(nodes=[{"id": "a", "type": "X"}, {"id": "a", "type": "Y"}])


def test_graph_structure_helpers(make_graph):
    graph = make_graph(
        [("a", "X"), ("b", "X"), ("c", "X"), ("d", "X")],
        [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
    )
    assert [n.id for n in graph.entry_nodes()] == ["a"]
    assert graph.adjacency() == {"a": ["b", "c"], "b": ["d"], "c": ["d"]}
    assert [e.source for e in graph.incoming("d")] == ["b", "c"]
    assert graph.reachable_from_entries() == ["a", "b", "c", "d"]
    assert graph.find_cycle() is None


def test_find_cycle_reports_reachable_cycle(make_graph):
    graph = make_graph([("a", "X"), ("b", "X"), ("c", "X")], [("a", "b"), ("b", "c"), ("c", "b")])
    assert graph.find_cycle() == ["b", "c", "b"]


def test_find_cycle_handles_long_chains(make_graph):
    nodes = [(f"n{i}", "X") for i in range(1500)]
    chain = [(f"n{i}", f"n{i + 1}") for i in range(1499)]

    assert make_graph(nodes, chain).find_cycle() is None
    assert make_graph(nodes, chain + [("n1499", "n3")]).find_cycle()[:2] == ["n3", "n4"]
    assert make_graph(nodes, chain + [("n1499", "n3")]).find_cycle()[-2:] == ["n1499", "n3"]


def test_run_transitions_follow_state_machine():
    run = RunRecord(graph_id="g")
    assert run.status == RunStatus.PENDING
    assert run.started_at is None

    run.transition(RunStatus.RUNNING)
    assert run.started_at is not None
    run.transition(RunStatus.WAITING)
    run.transition(RunStatus.RUNNING)
    run.transition(RunStatus.COMPLETED)
    assert run.finished_at is not None
    assert run.is_terminal

    with pytest.raises(InvalidTransitionError):
        run.transition(RunStatus.RUNNING)


def test_pending_run_cannot_wait():
    run = RunRecord(graph_id="g")
    with pytest.raises(InvalidTransitionError):
        run.transition(RunStatus.WAITING)


def test_runs_get_unique_correlation_tokens():
    assert RunRecord(graph_id="g").correlation_token != RunRecord(graph_id="g").correlation_token
