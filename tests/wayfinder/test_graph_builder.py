"""Unit tests for wayfinder.graph_builder."""

from __future__ import annotations

from typing import Any

import pytest

from wayfinder.calibration import CoordinateCalibrator, PlanarPoint
from wayfinder.config import PRECINCT_CONTROL_POINTS
from wayfinder.geometry import TracedGeometry
from wayfinder.graph import PredefinedRoute
from wayfinder.graph_builder import BuildOptions, attach_predefined_routes, build_graph


def test_build_graph_snaps_shared_endpoints(street_payload: dict[str, Any]) -> None:
    """Streets meeting at a point share a single node."""
    result = build_graph(TracedGeometry.from_dict(street_payload))
    graph = result.graph

    walkway = [n for n in graph.nodes_by_id.values() if not n.is_door]
    assert len(walkway) == 7
    assert graph.nodes_by_id["n_00001"].point == PlanarPoint(100.0, 300.0)
    neighbors = {e.to for e in graph.neighbors("n_00001")}
    assert neighbors == {"n_00000", "n_00002", "n_00003"}


def test_build_graph_edges_are_bidirectional_and_labelled(street_payload: dict[str, Any]) -> None:
    """Every edge has a reverse twin with the same distance and street label."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph

    for src, edge in graph.iter_edges():
        back = graph.edge_between(edge.to, src)
        assert back is not None
        assert back.distance == pytest.approx(edge.distance)
        assert back.label == edge.label
    assert graph.edge_between("n_00001", "n_00003").label == "Market St"
    assert graph.edge_between("n_00001", "n_00003").distance == pytest.approx(300.0)


def test_build_graph_attaches_doors_within_range(street_payload: dict[str, Any]) -> None:
    """Door nodes join the nearest walkway node and infer their room."""
    result = build_graph(TracedGeometry.from_dict(street_payload))
    graph = result.graph

    library = graph.nodes_by_id["door_library-door"]
    assert library.is_door
    assert library.label == "library entrance"
    assert [e.to for e in graph.neighbors(library.id)] == ["n_00004"]

    cafe = graph.nodes_by_id["door_cafe-door"]
    assert cafe.room_id == "cafe"
    edge = graph.neighbors(cafe.id)[0]
    assert edge.to == "n_00000"
    assert edge.distance <= BuildOptions().door_max_distance
    assert result.isolated_doors == []


def test_build_graph_leaves_far_doors_isolated(street_payload: dict[str, Any]) -> None:
    """Doors farther than `door_max_distance` from any walkway stay unattached."""
    street_payload["doors"].append({"id": "far", "points": [[300, 900], [310, 900]]})
    result = build_graph(TracedGeometry.from_dict(street_payload))

    assert result.isolated_doors == ["door_far"]
    assert result.graph.neighbors("door_far") == []
    assert any("far" in w for w in result.warnings)


def test_build_graph_is_deterministic(street_payload: dict[str, Any]) -> None:
    """Identical input produces identical node ids, coordinates and edges."""
    first = build_graph(TracedGeometry.from_dict(street_payload)).graph
    second = build_graph(TracedGeometry.from_dict(street_payload)).graph

    assert first.to_dict()["nodes"] == second.to_dict()["nodes"]
    assert first.to_dict()["adjacency"] == second.to_dict()["adjacency"]


def test_build_graph_snap_radius_merges_close_points() -> None:
    """Endpoints within the snap radius collapse onto the first node."""
    geometry = TracedGeometry.from_dict(
        {
            "paths": [
                {"kind": "line", "points": [[0, 0], [50, 0]]},
                {"kind": "line", "points": [[51.5, 0], [100, 0]]},
            ]
        }
    )
    graph = build_graph(geometry, options=BuildOptions(snap_radius=2.0)).graph
    assert len(graph) == 3

    loose = build_graph(geometry, options=BuildOptions(snap_radius=1.0)).graph
    assert len(loose) == 4


def test_build_graph_counts_bad_path_data() -> None:
    """Unparseable path data is skipped and reported."""
    geometry = TracedGeometry.from_dict(
        {"paths": [{"kind": "path", "d": "M 0 0 L 10"}, {"kind": "line", "points": [[0, 0], [10, 0]]}]}
    )
    result = build_graph(geometry)

    assert result.skipped_primitives == 1
    assert len(result.graph) == 2
    assert result.summary()["skipped_primitives"] == 1


def test_build_graph_attaches_geo_with_calibration(street_payload: dict[str, Any]) -> None:
    """With a calibrator every node carries a GPS position."""
    calibrator = CoordinateCalibrator()
    calibrator.calibrate(PRECINCT_CONTROL_POINTS)
    graph = build_graph(TracedGeometry.from_dict(street_payload), calibration=calibrator).graph

    for node in graph.nodes_by_id.values():
        assert node.geo is not None
        back = calibrator.project(node.geo)
        assert back.x == pytest.approx(node.x, abs=1e-6)
        assert back.y == pytest.approx(node.y, abs=1e-6)


def test_attach_predefined_routes_filters_invalid(street_payload: dict[str, Any]) -> None:
    """Routes whose ends do not snap into one component are rejected."""
    graph = build_graph(TracedGeometry.from_dict(street_payload)).graph
    good = PredefinedRoute("cafe", "library", (PlanarPoint(100, 100), PlanarPoint(100, 300), PlanarPoint(400, 600)))
    split = PredefinedRoute("cafe", "pier", (PlanarPoint(100, 100), PlanarPoint(620, 1000)))
    short = PredefinedRoute("a", "b", (PlanarPoint(100, 100),))

    attached, rejected = attach_predefined_routes(graph, [good, split, short], max_endpoint_distance=25.0)

    assert attached.predefined_routes == [good]
    assert {r["route"] for r in rejected} == {"cafe->pier", "a->b"}
    assert graph.predefined_routes == []


def test_build_graph_skips_numbers_after_close_path() -> None:
    """Path data with numbers after `Z` is skipped while other walkways still build."""
    geometry = TracedGeometry.from_dict(
        {
            "paths": [
                {"kind": "path", "d": "M 0 0 L 10 0 L 10 10 Z 5 5"},
                {"kind": "line", "points": [[50, 50], [80, 50]]},
            ]
        }
    )
    result = build_graph(geometry)

    assert result.skipped_primitives == 1
    assert len(result.graph) == 2
