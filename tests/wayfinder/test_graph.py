"""Unit tests for wayfinder.graph."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from wayfinder.calibration import GeoPoint, PlanarPoint
from wayfinder.geometry import TracedGeometry
from wayfinder.graph import (
    Edge,
    GraphNode,
    PredefinedRoute,
    WalkableGraph,
    door_nodes_for_room,
    load_graph,
    prune_graph,
    save_graph,
)
from wayfinder.graph_builder import build_graph


def _pair_graph(distance: float) -> WalkableGraph:
    nodes = {"a": GraphNode("a", 0.0, 0.0), "b": GraphNode("b", distance, 0.0)}
    adjacency = {"a": [Edge("b", distance)], "b": [Edge("a", distance)]}
    return WalkableGraph(nodes_by_id=nodes, adjacency=adjacency)


def test_save_and_load_preserve_graph(tmp_path: Path, street_payload: dict[str, Any]) -> None:
    """A saved graph reloads with the same nodes, edges and routes."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph
    graph.predefined_routes.append(
        PredefinedRoute("cafe", "library", (PlanarPoint(100, 100), PlanarPoint(400, 600)), ("George St",))
    )

    out = save_graph(graph, tmp_path / "nested" / "graph.json")
    loaded = load_graph(out)

    assert list(loaded.nodes_by_id) == list(graph.nodes_by_id)
    assert loaded.edge_count() == graph.edge_count()
    assert loaded.predefined_routes == graph.predefined_routes
    assert loaded.nodes_by_id["door_cafe-door"].room_id == "cafe"
    assert "saved_at" in loaded.metadata


def test_from_dict_drops_dangling_edges() -> None:
    """Edges pointing at unknown nodes are discarded on load."""
    payload = {
        "version": 1,
        "nodes": [{"id": "a", "x": 0, "y": 0, "lat": -33.87, "lng": 151.2}, {"id": "b", "x": 3, "y": 4}],
        "adjacency": {"a": [{"to": "b", "distance": 5}, {"to": "ghost", "distance": 1}], "ghost": []},
    }
    graph = WalkableGraph.from_dict(payload)

    assert graph.edge_count() == 1
    assert graph.nodes_by_id["a"].geo == GeoPoint(-33.87, 151.2)
    assert graph.nodes_by_id["b"].geo is None


def test_from_dict_rejects_unknown_version() -> None:
    """Only the current artifact version is accepted."""
    with pytest.raises(ValueError, match="version"):
        WalkableGraph.from_dict({"version": 99, "nodes": []})


def test_load_graph_missing_file(tmp_path: Path) -> None:
    """Loading a missing artifact raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_graph(tmp_path / "absent.json")


def test_prune_graph_removes_long_loops_and_duplicates() -> None:
    """Pruning drops self-loops, keeps the shortest duplicate and caps edge length."""
    graph = _pair_graph(10.0)
    graph.nodes_by_id["c"] = GraphNode("c", 100.0, 0.0)
    graph.adjacency["a"] += [Edge("a", 0.0), Edge("b", 12.0), Edge("c", 100.0)]
    graph.adjacency["c"] = [Edge("a", 100.0)]

    pruned, stats = prune_graph(graph, max_edge_distance=45.0)

    assert stats == {"self_loops": 1, "duplicates": 1, "too_long": 2}
    assert [e.to for e in pruned.neighbors("a")] == ["b"]
    assert pruned.neighbors("a")[0].distance == 10.0
    assert pruned.neighbors("c") == []
    assert len(graph.adjacency["a"]) == 4


def test_prune_graph_keeps_long_traced_edges() -> None:
    """The length cap spares traced edges and the flag survives serialization."""
    nodes = {"a": GraphNode("a", 0.0, 0.0), "b": GraphNode("b", 300.0, 0.0), "c": GraphNode("c", 0.0, 300.0)}
    adjacency = {
        "a": [Edge("b", 300.0, "Market St", traced=True), Edge("c", 300.0)],
        "b": [Edge("a", 300.0, "Market St", traced=True)],
        "c": [Edge("a", 300.0)],
    }
    graph = WalkableGraph(nodes_by_id=nodes, adjacency=adjacency)

    pruned, stats = prune_graph(graph, max_edge_distance=45.0)

    assert stats["too_long"] == 2
    assert [e.to for e in pruned.neighbors("a")] == ["b"]
    assert pruned.neighbors("c") == []

    restored = WalkableGraph.from_dict(pruned.to_dict())
    assert restored.neighbors("a")[0].traced is True
    assert restored.neighbors("a")[0].label == "Market St"


def test_prune_graph_rejects_non_positive_limit() -> None:
    """A zero edge cap would delete every edge."""
    with pytest.raises(ValueError):
        prune_graph(_pair_graph(1.0), max_edge_distance=0)


def test_spatial_index_is_cached_until_invalidated() -> None:
    """The lazily built index is reused across lookups."""
    graph = _pair_graph(10.0)
    first = graph.spatial_index
    assert graph.spatial_index is first

    graph.invalidate_index()
    assert graph.spatial_index is not first


def test_door_nodes_for_room_is_case_insensitive(street_payload: dict[str, Any]) -> None:
    """Room ids match regardless of case."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph
    assert [n.id for n in door_nodes_for_room(graph, "LIBRARY")] == ["door_library-door"]
    assert door_nodes_for_room(graph, "gym") == []


def test_bounds_cover_all_nodes(street_payload: dict[str, Any]) -> None:
    """Bounds span the full node extent."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph
    assert graph.bounds() == {"min_x": 90.0, "min_y": 100.0, "max_x": 650.0, "max_y": 1000.0}
    assert WalkableGraph().bounds() is None
