"""Unit tests for wayfinder.graph_validation."""

from __future__ import annotations

from typing import Any

from wayfinder.calibration import PlanarPoint
from wayfinder.geometry import TracedGeometry
from wayfinder.graph import Edge, GraphNode, PredefinedRoute, WalkableGraph
from wayfinder.graph_builder import build_graph
from wayfinder.graph_validation import check_predefined_route, connected_components, validate_graph


def _ring(n: int) -> WalkableGraph:
    """`n` nodes on a ring, each linked to both neighbours."""
    nodes = {f"r{i}": GraphNode(f"r{i}", float(i * 10), 0.0) for i in range(n)}
    adjacency = {
        f"r{i}": [Edge(f"r{(i - 1) % n}", 10.0), Edge(f"r{(i + 1) % n}", 10.0)] for i in range(n)
    }
    return WalkableGraph(nodes_by_id=nodes, adjacency=adjacency)


def _kinds(report: dict[str, Any]) -> dict[str, str]:
    return {issue["kind"]: issue["severity"] for issue in report["issues"]}


def test_validate_empty_graph_is_error() -> None:
    """An empty graph cannot route anything."""
    report = validate_graph(WalkableGraph())
    assert report["ok"] is False
    assert _kinds(report) == {"graph_empty": "error"}


def test_validate_ring_is_ok_with_sparse_warning() -> None:
    """A well connected but small graph only warns about sampling density."""
    report = validate_graph(_ring(20))

    assert report["ok"] is True
    assert report["summary"]["components"] == 1
    assert report["summary"]["avg_edges_per_node"] == 2.0
    assert _kinds(report) == {"low_connectivity": "warning", "sparse_sampling": "warning"}


def test_validate_flags_fragmentation(street_payload: dict[str, Any]) -> None:
    """The detached pier makes the small street graph too fragmented."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph
    report = validate_graph(graph, min_recommended_nodes=0)

    assert report["summary"]["components"] == 2
    assert _kinds(report)["fragmented"] == "error"
    assert report["ok"] is False


def test_validate_reports_isolated_nodes_and_long_edges() -> None:
    """Isolated nodes and implausible edges are errors."""
    graph = _ring(4)
    graph.nodes_by_id["lonely"] = GraphNode("lonely", 500.0, 500.0)
    graph.adjacency["lonely"] = []
    graph.adjacency["r0"].append(Edge("r2", 5000.0))

    report = validate_graph(graph, min_recommended_nodes=0)
    kinds = _kinds(report)

    assert report["isolated_node_ids"] == ["lonely"]
    assert kinds["isolated_nodes"] == "error"
    assert kinds["long_edge"] == "error"


def test_validate_warns_on_invalid_predefined_route() -> None:
    """Predefined routes that do not snap onto the graph become warnings."""
    graph = _ring(20)
    graph.predefined_routes.append(PredefinedRoute("x", "y", (PlanarPoint(0, 0), PlanarPoint(0, 900))))

    report = validate_graph(graph, min_recommended_nodes=0)
    assert _kinds(report)["predefined_route_invalid"] == "warning"
    assert report["ok"] is True


def test_connected_components_in_insertion_order() -> None:
    """Components are listed by their first node in insertion order."""
    graph = _ring(3)
    graph.nodes_by_id["z"] = GraphNode("z", 99.0, 99.0)
    graph.adjacency["z"] = []

    components = connected_components(graph)
    assert [sorted(c) for c in components] == [["r0", "r1", "r2"], ["z"]]


def test_check_predefined_route_same_ids() -> None:
    """A route that starts and ends at the same id is meaningless."""
    route = PredefinedRoute("x", "x", (PlanarPoint(0, 0), PlanarPoint(10, 0)))
    assert "same id" in check_predefined_route(_ring(5), route, 25.0)
