"""Outdoor/indoor graph fusion through building entrance portals.

Supports:
- Outdoor street nodes with GPS positions (edge costs in meters)
- Indoor floor graphs per building, including floor transitions
- Entrance portals joining both sides at a fixed crossing cost
- Route segmentation into homogeneous outdoor/portal/indoor/transition legs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from wayfinder.calibration import GeoPoint, PlanarPoint, haversine_m
from wayfinder.graph import WalkableGraph
from wayfinder.indoor import IndoorGraph
from wayfinder.nodes import (
    FloorTransitionNode,
    HybridNode,
    IndoorNode,
    NodeKind,
    OutdoorNode,
    PortalNode,
    node_geo,
    node_placement,
)
from wayfinder.pathfinding import astar_search

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BuildingEntrance:
    entrance_id: str
    building_id: str
    floor_id: str
    geo: GeoPoint
    point: PlanarPoint
    name: str | None = None
    accessible: bool = True


@dataclass(slots=True, frozen=True)
class IndoorPoint:
    """A query position on a specific building floor plan."""

    building_id: str
    floor_id: str
    point: PlanarPoint


@dataclass(slots=True, frozen=True)
class FusionOptions:
    entrance_geo_threshold_m: float = 50.0
    entrance_planar_threshold: float = 50.0
    entrance_cost: float = 10.0
    mixed_space_heuristic: float = 10000.0
    outdoor_meters_per_unit: float = 1.0


@dataclass(slots=True)
class HybridGraph:
    nodes: dict[str, HybridNode] = field(default_factory=dict)
    adjacency: dict[str, dict[str, float]] = field(default_factory=dict)
    meters_per_unit: dict[str, float] = field(default_factory=dict)
    options: FusionOptions = field(default_factory=FusionOptions)
    report: dict[str, Any] = field(default_factory=dict)

    def add_node(self, node: HybridNode) -> None:
        self.nodes[node.id] = node
        self.adjacency.setdefault(node.id, {})

    def add_edge(self, a: str, b: str, weight: float) -> None:
        if a == b:
            return
        current = self.adjacency[a].get(b)
        if current is None or weight < current:
            self.adjacency[a][b] = weight
            self.adjacency[b][a] = weight

    def neighbors(self, node_id: str) -> Iterable[tuple[str, float]]:
        return self.adjacency.get(node_id, {}).items()

    def edge_weight(self, a: str, b: str) -> float:
        return self.adjacency[a][b]

    def heuristic(self, a: HybridNode, b: HybridNode) -> float:
        """Straight-line estimate between any two node kinds.

        Geographic distance when both ends have GPS, floor-plan distance when
        both are placed in the same building, otherwise a large constant.
        """
        geo_a, geo_b = node_geo(a), node_geo(b)
        if geo_a is not None and geo_b is not None:
            return haversine_m(geo_a, geo_b)
        place_a, place_b = node_placement(a), node_placement(b)
        if place_a is not None and place_b is not None and place_a[0] == place_b[0]:
            scale = self.meters_per_unit.get(place_a[0], 1.0)
            return place_a[2].distance_to(place_b[2]) * scale
        return self.options.mixed_space_heuristic


@dataclass(slots=True)
class RouteSegment:
    kind: NodeKind
    node_ids: list[str] = field(default_factory=list)
    points: list[dict[str, Any]] = field(default_factory=list)
    building_id: str | None = None
    floor_id: str | None = None
    from_floor_id: str | None = None
    to_floor_id: str | None = None
    distance: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "node_ids": list(self.node_ids),
            "points": list(self.points),
            "distance": float(self.distance),
        }
        if self.building_id is not None:
            payload["building_id"] = self.building_id
        if self.floor_id is not None:
            payload["floor_id"] = self.floor_id
        if self.kind is NodeKind.FLOOR_TRANSITION:
            payload["from_floor_id"] = self.from_floor_id
            payload["to_floor_id"] = self.to_floor_id
        return payload


@dataclass(slots=True)
class HybridRoute:
    segments: list[RouteSegment]
    total_distance: float
    buildings_traversed: list[str]
    node_ids: list[str]

    @property
    def has_indoor_segments(self) -> bool:
        return any(s.kind in (NodeKind.INDOOR, NodeKind.FLOOR_TRANSITION) for s in self.segments)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "total_distance": float(self.total_distance),
            "buildings_traversed": list(self.buildings_traversed),
            "has_indoor_segments": self.has_indoor_segments,
            "node_ids": list(self.node_ids),
        }


def outdoor_node_id(local_id: str) -> str:
    return f"outdoor:{local_id}"


def portal_node_id(entrance_id: str) -> str:
    return f"entrance:{entrance_id}"


def build_hybrid_graph(
    outdoor: WalkableGraph | None,
    entrances: Iterable[BuildingEntrance],
    indoor_graphs: Mapping[str, IndoorGraph],
    options: FusionOptions | None = None,
) -> HybridGraph:
    """Fuse the outdoor graph, indoor building graphs and entrance portals.

    Args:
        outdoor: Street-level walkable graph; nodes need GPS to join portals.
        entrances: Entrance records, one portal node each.
        indoor_graphs: Indoor graphs keyed by building id.
        options: Connection thresholds and costs.

    Returns:
        HybridGraph whose `report` lists fusion gaps per building. Gaps never
        abort fusion.
    """
    opts = options or FusionOptions()
    hybrid = HybridGraph(options=opts)
    issues: list[dict[str, Any]] = []

    outdoor_with_geo: list[OutdoorNode] = []
    missing_geo = 0
    if outdoor is not None:
        for node in outdoor.nodes_by_id.values():
            hnode = OutdoorNode(id=outdoor_node_id(node.id), x=node.x, y=node.y, geo=node.geo, label=node.label)
            hybrid.add_node(hnode)
            if node.geo is not None:
                outdoor_with_geo.append(hnode)
            else:
                missing_geo += 1
        for src, edge in outdoor.iter_edges():
            a = outdoor.nodes_by_id[src]
            b = outdoor.nodes_by_id[edge.to]
            if a.geo is not None and b.geo is not None:
                weight = haversine_m(a.geo, b.geo)
            else:
                weight = edge.distance * opts.outdoor_meters_per_unit
            hybrid.add_edge(outdoor_node_id(src), outdoor_node_id(edge.to), weight)
    if missing_geo:
        issues.append(
            {
                "kind": "outdoor_missing_geo",
                "severity": "warning",
                "count": missing_geo,
                "message": f"{missing_geo} outdoor nodes have no GPS position and cannot join entrances",
            }
        )

    for building_id, indoor in indoor_graphs.items():
        hybrid.meters_per_unit[building_id] = indoor.meters_per_unit
        for node in indoor.nodes.values():
            hybrid.add_node(node)
        for a, b, weight in indoor.iter_edges():
            hybrid.add_edge(a, b, weight)

    entrances_by_building: dict[str, list[str]] = {}
    for entrance in entrances:
        portal_id = portal_node_id(entrance.entrance_id)
        if portal_id in hybrid.nodes:
            issues.append(
                {
                    "kind": "entrance_duplicate",
                    "severity": "warning",
                    "building_id": entrance.building_id,
                    "entrance_id": entrance.entrance_id,
                    "message": f"Entrance {entrance.entrance_id} defined more than once",
                }
            )
            continue

        portal = PortalNode(
            id=portal_id,
            entrance_id=entrance.entrance_id,
            building_id=entrance.building_id,
            floor_id=entrance.floor_id,
            geo=entrance.geo.normalized(),
            x=entrance.point.x,
            y=entrance.point.y,
            name=entrance.name,
            accessible=entrance.accessible,
        )
        hybrid.add_node(portal)
        entrances_by_building.setdefault(entrance.building_id, []).append(portal_id)

        outdoor_links = 0
        for onode in outdoor_with_geo:
            assert onode.geo is not None
            dist = haversine_m(portal.geo, onode.geo)
            if dist <= opts.entrance_geo_threshold_m:
                hybrid.add_edge(portal_id, onode.id, dist + opts.entrance_cost)
                outdoor_links += 1

        indoor_links = 0
        indoor = indoor_graphs.get(entrance.building_id)
        if indoor is None:
            issues.append(
                {
                    "kind": "entrance_unknown_building",
                    "severity": "warning",
                    "building_id": entrance.building_id,
                    "entrance_id": entrance.entrance_id,
                    "message": f"Entrance {entrance.entrance_id} references building "
                    f"{entrance.building_id} with no indoor graph",
                }
            )
        else:
            for inode in indoor.nodes.values():
                if not isinstance(inode, IndoorNode) or inode.floor_id != entrance.floor_id:
                    continue
                dist = portal.point.distance_to(inode.point)
                if dist <= opts.entrance_planar_threshold:
                    hybrid.add_edge(portal_id, inode.id, dist * indoor.meters_per_unit + opts.entrance_cost)
                    indoor_links += 1

        if outdoor_links == 0:
            issues.append(
                {
                    "kind": "portal_no_outdoor_link",
                    "severity": "warning",
                    "building_id": entrance.building_id,
                    "entrance_id": entrance.entrance_id,
                    "message": f"Entrance {entrance.entrance_id} has no outdoor node within "
                    f"{opts.entrance_geo_threshold_m:g} m",
                }
            )
        if indoor is not None and indoor_links == 0:
            issues.append(
                {
                    "kind": "portal_no_indoor_link",
                    "severity": "warning",
                    "building_id": entrance.building_id,
                    "entrance_id": entrance.entrance_id,
                    "message": f"Entrance {entrance.entrance_id} has no indoor node on floor "
                    f"{entrance.floor_id} within {opts.entrance_planar_threshold:g} units",
                }
            )
        logger.debug(
            "Entrance %s: %d outdoor links, %d indoor links", entrance.entrance_id, outdoor_links, indoor_links
        )

    for building_id in indoor_graphs:
        if building_id not in entrances_by_building:
            issues.append(
                {
                    "kind": "building_without_entrance",
                    "severity": "warning",
                    "building_id": building_id,
                    "message": f"Building {building_id} has no entrance; its indoor graph is unreachable",
                }
            )
        issues.extend({**issue, "building_id": building_id} for issue in indoor_graphs[building_id].issues)

    for issue in issues:
        logger.warning("Fusion gap: %s", issue["message"])

    hybrid.report = {
        "ok": True,
        "summary": {
            "nodes": len(hybrid.nodes),
            "edges": sum(len(e) for e in hybrid.adjacency.values()),
            "outdoor_nodes": sum(1 for n in hybrid.nodes.values() if n.kind is NodeKind.OUTDOOR),
            "indoor_nodes": sum(1 for n in hybrid.nodes.values() if n.kind is NodeKind.INDOOR),
            "portals": sum(1 for n in hybrid.nodes.values() if n.kind is NodeKind.ENTRANCE_PORTAL),
            "floor_transitions": sum(1 for n in hybrid.nodes.values() if n.kind is NodeKind.FLOOR_TRANSITION),
            "buildings": sorted(set(indoor_graphs) | set(entrances_by_building)),
            "warnings": len(issues),
        },
        "issues": issues,
    }
    return hybrid


def _nearest_geo(graph: HybridGraph, geo: GeoPoint, max_distance_m: float | None) -> str | None:
    geo = geo.normalized()
    best: str | None = None
    best_dist = float("inf")
    for node in graph.nodes.values():
        node_gps = node_geo(node)
        if node_gps is None:
            continue
        dist = haversine_m(geo, node_gps)
        if dist < best_dist:
            best, best_dist = node.id, dist
    if best is None or (max_distance_m is not None and best_dist > max_distance_m):
        return None
    return best


def _nearest_indoor(graph: HybridGraph, query: IndoorPoint, max_distance: float | None) -> str | None:
    best: str | None = None
    best_dist = float("inf")
    for node in graph.nodes.values():
        placement = node_placement(node)
        if placement is None or placement[0] != query.building_id or placement[1] != query.floor_id:
            continue
        dist = placement[2].distance_to(query.point)
        if dist < best_dist:
            best, best_dist = node.id, dist
    if best is None or (max_distance is not None and best_dist > max_distance):
        return None
    return best


def resolve_endpoint(
    graph: HybridGraph, endpoint: GeoPoint | IndoorPoint, max_distance: float | None = None
) -> str | None:
    """Nearest node for a GPS position or an indoor floor-plan position."""
    if isinstance(endpoint, GeoPoint):
        return _nearest_geo(graph, endpoint, max_distance)
    if isinstance(endpoint, IndoorPoint):
        return _nearest_indoor(graph, endpoint, max_distance)
    raise TypeError(f"Unsupported endpoint type {type(endpoint).__name__}")


def _blocks_step_free(node: HybridNode) -> bool:
    if isinstance(node, PortalNode):
        return not node.accessible
    if isinstance(node, FloorTransitionNode):
        return not node.connector_type.step_free
    if isinstance(node, (OutdoorNode, IndoorNode)):
        return False
    raise TypeError(f"Unknown hybrid node type {type(node).__name__}")


def _segment_key(node: HybridNode) -> tuple[NodeKind, str | None]:
    if isinstance(node, IndoorNode):
        return node.kind, node.floor_id
    return node.kind, None


def segment_path(graph: HybridGraph, node_ids: list[str]) -> list[RouteSegment]:
    """Split a node path wherever the node kind (or indoor floor) changes.

    The edge entering a segment's first node is counted in that segment.
    """
    segments: list[RouteSegment] = []
    current_key: tuple[NodeKind, str | None] | None = None
    previous: str | None = None

    for node_id in node_ids:
        node = graph.nodes[node_id]
        key = _segment_key(node)
        if key != current_key:
            placement = node_placement(node)
            segments.append(
                RouteSegment(
                    kind=node.kind,
                    building_id=placement[0] if placement else None,
                    floor_id=placement[1] if placement and node.kind is not NodeKind.FLOOR_TRANSITION else None,
                )
            )
            current_key = key
        segment = segments[-1]
        segment.node_ids.append(node_id)
        segment.points.append(node.to_dict())
        if isinstance(node, FloorTransitionNode):
            if segment.from_floor_id is None:
                segment.from_floor_id = node.floor_id
            segment.to_floor_id = node.floor_id
        if previous is not None:
            segment.distance += graph.edge_weight(previous, node_id)
        previous = node_id

    return segments


def find_hybrid_route(
    graph: HybridGraph,
    start: GeoPoint | IndoorPoint,
    end: GeoPoint | IndoorPoint,
    step_free: bool = False,
    max_snap_distance: float | None = None,
) -> HybridRoute | None:
    """Route across outdoor, portal and indoor nodes.

    Args:
        graph: Fused hybrid graph.
        start: GPS position or indoor floor-plan position.
        end: GPS position or indoor floor-plan position.
        step_free: Avoid inaccessible entrances and stair-type transitions.
        max_snap_distance: Optional cap on endpoint snapping distance.

    Returns:
        HybridRoute, or None when an endpoint cannot be resolved or no path exists.
    """
    start_id = resolve_endpoint(graph, start, max_snap_distance)
    end_id = resolve_endpoint(graph, end, max_snap_distance)
    if start_id is None or end_id is None:
        logger.info("Hybrid route endpoint unresolved (start=%s, end=%s)", start_id, end_id)
        return None

    goal = graph.nodes[end_id]

    def _neighbors(node_id: str) -> Iterable[tuple[str, float]]:
        for nbr, weight in graph.neighbors(node_id):
            if step_free and nbr != end_id and _blocks_step_free(graph.nodes[nbr]):
                continue
            yield nbr, weight

    def _heuristic(node_id: str) -> float:
        return graph.heuristic(graph.nodes[node_id], goal)

    path, cost = astar_search(start_id, end_id, _neighbors, _heuristic)
    if not path:
        logger.info("No hybrid route between %s and %s", start_id, end_id)
        return None

    segments = segment_path(graph, path)
    buildings: list[str] = []
    for node_id in path:
        placement = node_placement(graph.nodes[node_id])
        if placement is not None and placement[0] not in buildings:
            buildings.append(placement[0])

    logger.debug("Hybrid route %s -> %s: %d nodes, %d segments", start_id, end_id, len(path), len(segments))
    return HybridRoute(segments=segments, total_distance=cost, buildings_traversed=buildings, node_ids=path)
