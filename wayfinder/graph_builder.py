"""Build a walkable graph from traced walkway, door and room geometry.

Pipeline:
1. Flatten every primitive into ordered planar point runs.
2. Snap points into nodes (bucketed spatial hash, `snap_radius`).
3. Join consecutive points with bidirectional Euclidean edges.
4. Attach door nodes to their nearest walkway node within range.
5. Attach GPS coordinates when a calibration is available.
6. Run the non-fatal validation pass.

Usage example:
    >>> from wayfinder.geometry import TracedGeometry
    >>> from wayfinder.graph_builder import build_graph
    >>> geometry = TracedGeometry.from_dict({"paths": [{"kind": "line", "points": [[0, 0], [10, 0]]}]})
    >>> result = build_graph(geometry)
    >>> len(result.graph)
    2
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable

import numpy as np

from wayfinder.calibration import Calibration, CoordinateCalibrator, PlanarPoint
from wayfinder.config import WayfinderSettings
from wayfinder.geometry import TracedGeometry, door_midpoint, primitive_polylines, room_for_point
from wayfinder.graph import Edge, GraphNode, PredefinedRoute, WalkableGraph
from wayfinder.graph_validation import check_predefined_route, component_lookup, validate_graph
from wayfinder.spatial_index import pick_nearest, planar_distances

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BuildOptions:
    snap_radius: float = 2.0
    door_max_distance: float = 50.0
    flatten_step: float = 10.0
    room_match_distance: float = 10.0
    min_recommended_nodes: int = 500

    @classmethod
    def from_settings(cls, settings: WayfinderSettings) -> BuildOptions:
        return cls(
            snap_radius=settings.snap_radius,
            door_max_distance=settings.door_max_distance,
            flatten_step=settings.curve_flatten_step,
        )


@dataclass(slots=True)
class BuildResult:
    graph: WalkableGraph
    validation: dict[str, Any]
    skipped_primitives: int = 0
    isolated_doors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "nodes": len(self.graph),
            "edges": self.graph.edge_count(),
            "door_nodes": sum(1 for n in self.graph.nodes_by_id.values() if n.is_door),
            "skipped_primitives": self.skipped_primitives,
            "isolated_doors": list(self.isolated_doors),
            "warnings": list(self.warnings),
            "validation": self.validation,
        }


class _NodeSnapper:
    """Assigns planar points to nodes, reusing any node within the snap radius."""

    def __init__(self, snap_radius: float, prefix: str = "n") -> None:
        if snap_radius < 0:
            raise ValueError("snap_radius must be >= 0")
        self.snap_radius = snap_radius
        self.cell = snap_radius if snap_radius > 0 else 1.0
        self.prefix = prefix
        self.points: list[PlanarPoint] = []
        self.ids: list[str] = []
        self.labels: list[str | None] = []
        self._buckets: dict[tuple[int, int], list[int]] = {}

    def _key(self, point: PlanarPoint) -> tuple[int, int]:
        return math.floor(point.x / self.cell), math.floor(point.y / self.cell)

    def snap(self, point: PlanarPoint, label: str | None) -> str:
        kx, ky = self._key(point)
        best_idx: int | None = None
        best_dist = float("inf")
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                for idx in self._buckets.get((kx + dx, ky + dy), ()):
                    dist = self.points[idx].distance_to(point)
                    if dist <= self.snap_radius and (dist < best_dist or (dist == best_dist and idx < best_idx)):
                        best_idx, best_dist = idx, dist
        if best_idx is not None:
            if self.labels[best_idx] is None and label:
                self.labels[best_idx] = label
            return self.ids[best_idx]

        idx = len(self.points)
        node_id = f"{self.prefix}_{idx:05d}"
        self.points.append(point)
        self.ids.append(node_id)
        self.labels.append(label)
        self._buckets.setdefault((kx, ky), []).append(idx)
        return node_id


def _add_edge(adjacency: dict[str, dict[str, Edge]], a: str, b: str, distance: float, label: str | None) -> bool:
    if a == b or b in adjacency[a]:
        return False
    adjacency[a][b] = Edge(to=b, distance=distance, label=label, traced=True)
    adjacency[b][a] = Edge(to=a, distance=distance, label=label, traced=True)
    return True


def build_graph(
    geometry: TracedGeometry,
    calibration: Calibration | CoordinateCalibrator | None = None,
    options: BuildOptions | None = None,
    node_prefix: str = "n",
) -> BuildResult:
    """Build a walkable graph from traced geometry.

    Args:
        geometry: Parsed walkway/door/room layers.
        calibration: When given, every node gets a GPS position via `unproject`.
        options: Snap/door thresholds; defaults match the precinct survey.
        node_prefix: Prefix for generated walkway node ids.

    Returns:
        BuildResult with the graph, the validation report and build defects.
        Malformed primitives are skipped and counted, never raised.
    """
    opts = options or BuildOptions()
    snapper = _NodeSnapper(opts.snap_radius, prefix=node_prefix)
    skipped = geometry.skipped
    warnings: list[str] = []
    runs: list[tuple[list[str], str | None]] = []

    for primitive in geometry.paths:
        try:
            polylines = primitive_polylines(primitive, opts.flatten_step)
        except ValueError as exc:
            skipped += 1
            logger.warning("Skipping %s primitive %r: %s", primitive.kind, primitive.label, exc)
            continue
        for polyline in polylines:
            runs.append(([snapper.snap(p, primitive.label) for p in polyline], primitive.label))

    nodes: dict[str, GraphNode] = {}
    for node_id, point, label in zip(snapper.ids, snapper.points, snapper.labels):
        nodes[node_id] = GraphNode(id=node_id, x=point.x, y=point.y, label=label)

    adjacency: dict[str, dict[str, Edge]] = {node_id: {} for node_id in nodes}
    for node_ids, label in runs:
        for a, b in zip(node_ids, node_ids[1:]):
            distance = nodes[a].point.distance_to(nodes[b].point)
            _add_edge(adjacency, a, b, distance, label)

    path_ids = list(nodes)
    path_coords = np.array([[nodes[i].x, nodes[i].y] for i in path_ids], dtype=float).reshape(len(path_ids), 2)

    isolated_doors: list[str] = []
    for door in geometry.doors:
        node_id = f"door_{door.door_id}"
        if node_id in nodes:
            skipped += 1
            warnings.append(f"Duplicate door id {door.door_id!r} skipped")
            logger.warning("Duplicate door id %r skipped", door.door_id)
            continue

        midpoint = door_midpoint(door)
        room_id = door.room_id
        if room_id is None:
            room = room_for_point(geometry.rooms, midpoint, opts.room_match_distance)
            room_id = room.room_id if room is not None else door.door_id

        nodes[node_id] = GraphNode(
            id=node_id,
            x=midpoint.x,
            y=midpoint.y,
            label=f"{room_id} entrance",
            is_door=True,
            room_id=room_id,
        )
        adjacency[node_id] = {}

        best = pick_nearest(planar_distances(path_coords, midpoint), opts.door_max_distance)
        if best is None:
            isolated_doors.append(node_id)
            warnings.append(f"Door {door.door_id!r} has no walkway node within {opts.door_max_distance:g} units")
            logger.warning("Door %s left isolated: no walkway node within %.1f", door.door_id, opts.door_max_distance)
            continue
        target = path_ids[best]
        _add_edge(adjacency, node_id, target, float(midpoint.distance_to(nodes[target].point)), f"{room_id} entrance")

    if calibration is not None:
        nodes = {
            node_id: GraphNode(
                id=node.id,
                x=node.x,
                y=node.y,
                geo=calibration.unproject(node.point),
                label=node.label,
                is_door=node.is_door,
                room_id=node.room_id,
            )
            for node_id, node in nodes.items()
        }

    graph = WalkableGraph(
        nodes_by_id=nodes,
        adjacency={node_id: list(edges.values()) for node_id, edges in adjacency.items()},
        metadata={"source": "traced-geometry", "snap_radius": opts.snap_radius},
    )
    validation = validate_graph(graph, min_recommended_nodes=opts.min_recommended_nodes)
    if skipped:
        warnings.append(f"{skipped} malformed primitives skipped")
    logger.info(
        "Built graph: %d nodes, %d edges, %d skipped primitives, %d isolated doors",
        len(graph),
        graph.edge_count(),
        skipped,
        len(isolated_doors),
    )
    return BuildResult(
        graph=graph,
        validation=validation,
        skipped_primitives=skipped,
        isolated_doors=isolated_doors,
        warnings=warnings,
    )


def attach_predefined_routes(
    graph: WalkableGraph,
    routes: Iterable[PredefinedRoute],
    max_endpoint_distance: float = 25.0,
) -> tuple[WalkableGraph, list[dict[str, str]]]:
    """Return a copy of `graph` carrying only the predefined routes that resolve on it.

    A route is kept when it has at least two points and both ends snap to
    nodes of the same connected component. Rejected routes are returned
    with the reason so the offline build can report them.
    """
    lookup = component_lookup(graph)
    kept: list[PredefinedRoute] = []
    rejected: list[dict[str, str]] = []
    for route in routes:
        reason = check_predefined_route(graph, route, max_endpoint_distance, lookup)
        if reason:
            rejected.append({"route": f"{route.from_id}->{route.to_id}", "reason": reason})
            logger.warning("Rejected predefined route %s -> %s: %s", route.from_id, route.to_id, reason)
            continue
        kept.append(route)

    return (
        WalkableGraph(
            nodes_by_id=graph.nodes_by_id,
            adjacency=graph.adjacency,
            predefined_routes=kept,
            metadata=dict(graph.metadata),
        ),
        rejected,
    )
