"""Per-building indoor graphs with floor-transition connectors.

Each floor is built with the walkable-graph builder; stairs/elevator
connectors that appear on several floors become floor-transition nodes
linked to their floor's walkway and to each other.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np

from wayfinder.calibration import PlanarPoint
from wayfinder.geometry import TracedGeometry
from wayfinder.graph_builder import BuildOptions, build_graph
from wayfinder.nodes import ConnectorType, FloorTransitionNode, IndoorNode
from wayfinder.spatial_index import pick_nearest, planar_distances

logger = logging.getLogger(__name__)

_CONNECTOR_ID_RE = re.compile(r"^((?:Stair|Elev|Escalator|Ramp)\.\d+)", re.IGNORECASE)


def connector_base_id(portal_id: str) -> str:
    """Strip per-floor suffixes: `Stair.1.floor2` -> `Stair.1`."""
    match = _CONNECTOR_ID_RE.match(portal_id.strip())
    return match.group(1) if match else portal_id.strip()


def connector_type_for(connector_id: str) -> ConnectorType:
    lowered = connector_id.lower()
    if lowered.startswith("elev"):
        return ConnectorType.ELEVATOR
    if lowered.startswith("escalator"):
        return ConnectorType.ESCALATOR
    if lowered.startswith("ramp"):
        return ConnectorType.RAMP
    return ConnectorType.STAIRS


@dataclass(slots=True, frozen=True)
class FloorConnector:
    """One floor's anchor of a vertical connector (stairs, lift, ...)."""

    connector_id: str
    floor_id: str
    point: PlanarPoint
    connector_type: ConnectorType = ConnectorType.STAIRS


@dataclass(slots=True)
class IndoorBuilding:
    building_id: str
    floors: dict[str, TracedGeometry] = field(default_factory=dict)
    connectors: list[FloorConnector] = field(default_factory=list)
    meters_per_unit: float = 1.0


IndoorGraphNode = IndoorNode | FloorTransitionNode


@dataclass(slots=True)
class IndoorGraph:
    """Fused floors of one building.

    Edge weights are in meters (planar distance x `meters_per_unit`, plus
    `floor_change_cost` between connector anchors).
    """

    building_id: str
    meters_per_unit: float
    nodes: dict[str, IndoorGraphNode] = field(default_factory=dict)
    adjacency: dict[str, dict[str, float]] = field(default_factory=dict)
    issues: list[dict[str, Any]] = field(default_factory=list)

    def floor_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for node in self.nodes.values():
            seen.setdefault(node.floor_id, None)
        return list(seen)

    def iter_edges(self) -> Iterator[tuple[str, str, float]]:
        for a, edges in self.adjacency.items():
            for b, weight in edges.items():
                yield a, b, weight

    def add_edge(self, a: str, b: str, weight: float) -> None:
        if a == b:
            return
        current = self.adjacency[a].get(b)
        if current is None or weight < current:
            self.adjacency[a][b] = weight
            self.adjacency[b][a] = weight

    def summary(self) -> dict[str, Any]:
        return {
            "building_id": self.building_id,
            "floors": self.floor_ids(),
            "nodes": len(self.nodes),
            "transition_nodes": sum(1 for n in self.nodes.values() if isinstance(n, FloorTransitionNode)),
            "edges": sum(len(edges) for edges in self.adjacency.values()),
            "issues": list(self.issues),
        }


def indoor_node_id(building_id: str, floor_id: str, local_id: str) -> str:
    return f"indoor:{building_id}:{floor_id}:{local_id}"


def build_indoor_graph(
    building: IndoorBuilding,
    options: BuildOptions | None = None,
    floor_change_cost: float = 50.0,
    transition_connect_distance: float = 100.0,
) -> IndoorGraph:
    """Build one building's multi-floor graph.

    Args:
        building: Floor geometry plus vertical connector anchors.
        options: Builder thresholds used for every floor.
        floor_change_cost: Cost (meters) of moving between two floors on a connector.
        transition_connect_distance: Max planar distance from a connector
            anchor to the floor walkway node it attaches to.

    Returns:
        IndoorGraph; connector defects are recorded in `issues`, never raised.
    """
    if building.meters_per_unit <= 0:
        raise ValueError("meters_per_unit must be > 0")
    if floor_change_cost < 0:
        raise ValueError("floor_change_cost must be >= 0")

    scale = building.meters_per_unit
    graph = IndoorGraph(building_id=building.building_id, meters_per_unit=scale)
    build_opts = options or BuildOptions(min_recommended_nodes=0)

    floor_members: dict[str, list[str]] = {}
    for floor_id, geometry in building.floors.items():
        result = build_graph(geometry, options=build_opts)
        members: list[str] = []
        for node in result.graph.nodes_by_id.values():
            node_id = indoor_node_id(building.building_id, floor_id, node.id)
            graph.nodes[node_id] = IndoorNode(
                id=node_id,
                building_id=building.building_id,
                floor_id=floor_id,
                x=node.x,
                y=node.y,
                label=node.label,
                room_id=node.room_id,
            )
            graph.adjacency[node_id] = {}
            members.append(node_id)
        for local_id, edge in result.graph.iter_edges():
            a = indoor_node_id(building.building_id, floor_id, local_id)
            b = indoor_node_id(building.building_id, floor_id, edge.to)
            graph.add_edge(a, b, edge.distance * scale)
        floor_members[floor_id] = members
        for door_id in result.isolated_doors:
            graph.issues.append(
                {
                    "kind": "door_isolated",
                    "severity": "warning",
                    "floor_id": floor_id,
                    "node_id": indoor_node_id(building.building_id, floor_id, door_id),
                    "message": f"Door {door_id} on floor {floor_id} has no walkway within range",
                }
            )

    groups: dict[str, dict[str, FloorConnector]] = {}
    for connector in building.connectors:
        per_floor = groups.setdefault(connector.connector_id, {})
        if connector.floor_id in per_floor:
            graph.issues.append(
                {
                    "kind": "connector_duplicate",
                    "severity": "warning",
                    "connector_id": connector.connector_id,
                    "floor_id": connector.floor_id,
                    "message": f"Connector {connector.connector_id} listed twice on floor {connector.floor_id}",
                }
            )
            continue
        per_floor[connector.floor_id] = connector

    for connector_id, per_floor in groups.items():
        if len(per_floor) < 2:
            only_floor = next(iter(per_floor))
            graph.issues.append(
                {
                    "kind": "connector_single_floor",
                    "severity": "warning",
                    "connector_id": connector_id,
                    "floor_id": only_floor,
                    "message": f"Connector {connector_id} only appears on floor {only_floor}",
                }
            )
            logger.warning("Connector %s in %s only appears on one floor", connector_id, building.building_id)
            continue

        anchors: list[str] = []
        for floor_id, connector in per_floor.items():
            node_id = indoor_node_id(building.building_id, floor_id, f"transition:{connector_id}")
            graph.nodes[node_id] = FloorTransitionNode(
                id=node_id,
                building_id=building.building_id,
                floor_id=floor_id,
                x=connector.point.x,
                y=connector.point.y,
                connector_id=connector_id,
                connector_type=connector.connector_type,
            )
            graph.adjacency[node_id] = {}
            anchors.append(node_id)

            members = floor_members.get(floor_id, [])
            coords = np.array([[graph.nodes[m].x, graph.nodes[m].y] for m in members], dtype=float).reshape(-1, 2)
            best = pick_nearest(planar_distances(coords, connector.point), transition_connect_distance)
            if best is None:
                graph.issues.append(
                    {
                        "kind": "connector_unlinked",
                        "severity": "warning",
                        "connector_id": connector_id,
                        "floor_id": floor_id,
                        "message": f"Connector {connector_id} on floor {floor_id} has no walkway node within "
                        f"{transition_connect_distance:g} units",
                    }
                )
                logger.warning("Connector %s on floor %s is not linked to the walkway", connector_id, floor_id)
                continue
            target = members[best]
            graph.add_edge(node_id, target, connector.point.distance_to(graph.nodes[target].point) * scale)

        for i, a in enumerate(anchors):
            for b in anchors[i + 1 :]:
                graph.add_edge(a, b, floor_change_cost)

    logger.info(
        "Built indoor graph for %s: %d floors, %d nodes, %d issues",
        building.building_id,
        len(building.floors),
        len(graph.nodes),
        len(graph.issues),
    )
    return graph
