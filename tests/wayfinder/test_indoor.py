"""Unit tests for wayfinder.indoor."""

from __future__ import annotations

import pytest

from wayfinder.calibration import PlanarPoint
from wayfinder.geometry import TracedGeometry
from wayfinder.indoor import (
    FloorConnector,
    IndoorBuilding,
    build_indoor_graph,
    connector_base_id,
    connector_type_for,
    indoor_node_id,
)
from wayfinder.nodes import ConnectorType, FloorTransitionNode, IndoorNode


def _corridor(*points: tuple[float, float]) -> TracedGeometry:
    return TracedGeometry.from_dict({"paths": [{"kind": "polyline", "points": [list(p) for p in points]}]})


def _two_floor_building(**connector_overrides: PlanarPoint) -> IndoorBuilding:
    stair_l2 = connector_overrides.get("stair_l2", PlanarPoint(100, 5))
    return IndoorBuilding(
        building_id="B1",
        floors={"L1": _corridor((0, 0), (100, 0)), "L2": _corridor((0, 0), (50, 0), (100, 0))},
        connectors=[
            FloorConnector("Stair.1", "L1", PlanarPoint(100, 5)),
            FloorConnector("Stair.1", "L2", stair_l2),
        ],
        meters_per_unit=0.5,
    )


def test_connector_base_id_strips_floor_suffix() -> None:
    """Per-floor portal ids collapse onto one connector id."""
    assert connector_base_id("Stair.1.floor2") == "Stair.1"
    assert connector_base_id("elev.12.L3") == "elev.12"
    assert connector_base_id("Lobby") == "Lobby"


def test_connector_type_from_id() -> None:
    """Connector kinds are read from the id prefix."""
    assert connector_type_for("Elev.2") is ConnectorType.ELEVATOR
    assert connector_type_for("Ramp.1") is ConnectorType.RAMP
    assert connector_type_for("Escalator.4") is ConnectorType.ESCALATOR
    assert connector_type_for("Stair.1") is ConnectorType.STAIRS
    assert ConnectorType.ELEVATOR.step_free and not ConnectorType.STAIRS.step_free


def test_build_indoor_graph_scopes_ids_and_scales_weights() -> None:
    """Floor nodes are namespaced and edge weights are in meters."""
    graph = build_indoor_graph(_two_floor_building())

    a = indoor_node_id("B1", "L1", "n_00000")
    b = indoor_node_id("B1", "L1", "n_00001")
    assert isinstance(graph.nodes[a], IndoorNode)
    assert graph.nodes[a].floor_id == "L1"
    assert graph.adjacency[a][b] == pytest.approx(50.0)
    assert graph.floor_ids() == ["L1", "L2"]


def test_build_indoor_graph_links_connector_across_floors() -> None:
    """Connector anchors join their floor walkway and each other."""
    graph = build_indoor_graph(_two_floor_building(), floor_change_cost=50.0)

    l1 = indoor_node_id("B1", "L1", "transition:Stair.1")
    l2 = indoor_node_id("B1", "L2", "transition:Stair.1")
    assert isinstance(graph.nodes[l1], FloorTransitionNode)
    assert graph.adjacency[l1][l2] == 50.0
    assert graph.adjacency[l1][indoor_node_id("B1", "L1", "n_00001")] == pytest.approx(2.5)
    assert graph.adjacency[l2][indoor_node_id("B1", "L2", "n_00002")] == pytest.approx(2.5)
    assert graph.issues == []
    assert graph.summary()["transition_nodes"] == 2


def test_build_indoor_graph_reports_connector_defects() -> None:
    """Single-floor, duplicated and unreachable connectors become issues."""
    building = _two_floor_building(stair_l2=PlanarPoint(900, 900))
    building.connectors += [
        FloorConnector("Elev.9", "L1", PlanarPoint(0, 5)),
        FloorConnector("Elev.9", "L1", PlanarPoint(0, 6)),
    ]

    graph = build_indoor_graph(building, transition_connect_distance=100.0)
    kinds = sorted(issue["kind"] for issue in graph.issues)

    assert kinds == ["connector_duplicate", "connector_single_floor", "connector_unlinked"]
    assert indoor_node_id("B1", "L1", "transition:Elev.9") not in graph.nodes


def test_build_indoor_graph_validates_scale() -> None:
    """Non-positive scales are rejected."""
    with pytest.raises(ValueError, match="meters_per_unit"):
        build_indoor_graph(IndoorBuilding(building_id="B", meters_per_unit=0.0))
