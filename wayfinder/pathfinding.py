"""Shortest-path search over walkable graphs.

Purpose:
- Resolve query points to graph nodes (linear scan or spatial index).
- Compute routes with A*, falling back to BFS for plain connectivity.
- Prefer hand-authored predefined routes for known origin/destination pairs.

Usage example:
    >>> from wayfinder.calibration import PlanarPoint
    >>> from wayfinder.pathfinding import find_route
    >>> result = find_route(graph, PlanarPoint(10, 10), PlanarPoint(300, 420))
    >>> result.diagnostics.strategy
    <RouteStrategy.ASTAR: 'astar'>
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, Sequence, TypeVar

from wayfinder.calibration import PlanarPoint
from wayfinder.graph import GraphNode, PredefinedRoute, WalkableGraph, door_nodes_for_room
from wayfinder.spatial_index import pick_nearest, planar_distances

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE = 500.0
DEFAULT_SEARCH_RADII: tuple[float, ...] = (500.0, 1000.0, 2000.0)

NodeT = TypeVar("NodeT", bound=Hashable)


class RouteStrategy(str, Enum):
    PREDEFINED = "predefined"
    ASTAR = "astar"
    BFS = "bfs"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class NearestNode:
    node: GraphNode
    distance: float


@dataclass(slots=True)
class RouteDiagnostics:
    """Why a route looks the way it does (or why there is none)."""

    strategy: RouteStrategy
    start_node: str | None = None
    end_node: str | None = None
    start_distance: float | None = None
    end_distance: float | None = None
    search_radius: float | None = None
    total_distance: float = 0.0
    failure: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "start_node": self.start_node,
            "end_node": self.end_node,
            "start_distance": self.start_distance,
            "end_distance": self.end_distance,
            "search_radius": self.search_radius,
            "total_distance": float(self.total_distance),
            "failure": self.failure,
        }


@dataclass(slots=True)
class RouteResult:
    route: list[GraphNode] = field(default_factory=list)
    diagnostics: RouteDiagnostics = field(default_factory=lambda: RouteDiagnostics(strategy=RouteStrategy.FAILED))
    streets: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.diagnostics.strategy is not RouteStrategy.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "route": [node.to_dict() for node in self.route],
            "streets": list(self.streets),
            "diagnostics": self.diagnostics.to_dict(),
        }


def nearest_node_linear(
    graph: WalkableGraph, point: PlanarPoint, max_distance: float = DEFAULT_MAX_DISTANCE
) -> NearestNode | None:
    """O(n) reference nearest-node scan; ties resolve to the earliest inserted node."""
    ids, coords = graph.node_coords()
    best = pick_nearest(planar_distances(coords, point), max_distance)
    if best is None:
        return None
    node = graph.nodes_by_id[ids[best]]
    return NearestNode(node=node, distance=float(node.point.distance_to(point)))


def find_nearest_node(
    graph: WalkableGraph,
    point: PlanarPoint,
    max_distance: float = DEFAULT_MAX_DISTANCE,
    use_index: bool = True,
) -> NearestNode | None:
    """Closest node within `max_distance`, or None (never raises for "not found")."""
    if not use_index:
        return nearest_node_linear(graph, point, max_distance)
    hit = graph.spatial_index.nearest(point, max_distance)
    if hit is None:
        return None
    node = graph.nodes_by_id[hit[0]]
    return NearestNode(node=node, distance=float(node.point.distance_to(point)))


def find_navigation_node(
    graph: WalkableGraph,
    point: PlanarPoint,
    room_id: str | None = None,
    max_distance: float = DEFAULT_MAX_DISTANCE,
) -> GraphNode | None:
    """Door node of `room_id` when one exists, otherwise the nearest node."""
    if room_id:
        doors = door_nodes_for_room(graph, room_id)
        if doors:
            return min(doors, key=lambda node: node.point.distance_to(point))
    hit = find_nearest_node(graph, point, max_distance)
    return hit.node if hit else None


def astar_search(
    start: NodeT,
    goal: NodeT,
    neighbors: Callable[[NodeT], Iterable[tuple[NodeT, float]]],
    heuristic: Callable[[NodeT], float],
) -> tuple[list[NodeT], float]:
    """Generic A* returning `(path, cost)`; `([], inf)` when unreachable.

    Nodes are re-expanded whenever a cheaper `g` is found, so heuristics
    that are admissible but not consistent still yield shortest paths.
    """
    counter = itertools.count()
    open_heap: list[tuple[float, int, float, NodeT]] = [(heuristic(start), next(counter), 0.0, start)]
    came_from: dict[NodeT, NodeT] = {}
    g_score: dict[NodeT, float] = {start: 0.0}

    while open_heap:
        _, _, g, current = heapq.heappop(open_heap)
        if g > g_score.get(current, float("inf")):
            continue

        if current == goal:
            path = [current]
            while current in came_from:
                current = came_from[current]
                path.append(current)
            path.reverse()
            return path, g

        for neighbor, step_cost in neighbors(current):
            tentative_g = g + step_cost
            if tentative_g < g_score.get(neighbor, float("inf")):
                came_from[neighbor] = current
                g_score[neighbor] = tentative_g
                heapq.heappush(open_heap, (tentative_g + heuristic(neighbor), next(counter), tentative_g, neighbor))

    return [], float("inf")


def astar(graph: WalkableGraph, start_id: str, goal_id: str) -> list[str]:
    """A* with a straight-line heuristic over planar coordinates.

    Returns:
        Node ids from start to goal. Empty list if no path exists.

    Raises:
        ValueError: If either id is not in the graph.
    """
    if start_id not in graph.nodes_by_id:
        raise ValueError(f"Unknown start node {start_id!r}")
    if goal_id not in graph.nodes_by_id:
        raise ValueError(f"Unknown goal node {goal_id!r}")

    goal_point = graph.nodes_by_id[goal_id].point

    def _neighbors(node_id: str) -> Iterable[tuple[str, float]]:
        return ((edge.to, edge.distance) for edge in graph.neighbors(node_id))

    def _heuristic(node_id: str) -> float:
        return graph.nodes_by_id[node_id].point.distance_to(goal_point)

    path, _ = astar_search(start_id, goal_id, _neighbors, _heuristic)
    return path


def bfs_path(graph: WalkableGraph, start_id: str, goal_id: str) -> list[str]:
    """Fewest-hops path ignoring edge weights. Empty list if unreachable."""
    if start_id not in graph.nodes_by_id or goal_id not in graph.nodes_by_id:
        return []

    queue: deque[str] = deque([start_id])
    parent: dict[str, str | None] = {start_id: None}
    while queue:
        current = queue.popleft()
        if current == goal_id:
            path: list[str] = []
            node: str | None = current
            while node is not None:
                path.append(node)
                node = parent[node]
            path.reverse()
            return path
        for edge in graph.neighbors(current):
            if edge.to not in parent:
                parent[edge.to] = current
                queue.append(edge.to)
    return []


def route_distance(graph: WalkableGraph, node_ids: Sequence[str]) -> float:
    """Sum of edge weights along `node_ids` (straight-line where no edge exists)."""
    total = 0.0
    for a, b in zip(node_ids, node_ids[1:]):
        edge = graph.edge_between(a, b)
        if edge is not None:
            total += edge.distance
        else:
            total += graph.nodes_by_id[a].point.distance_to(graph.nodes_by_id[b].point)
    return total


def _predefined_result(route: PredefinedRoute, forward: bool, start: PlanarPoint, end: PlanarPoint) -> RouteResult:
    points = list(route.path) if forward else list(reversed(route.path))
    streets = list(route.streets) if forward else list(reversed(route.streets))
    nodes = [
        GraphNode(id=f"predefined_{route.from_id}_{route.to_id}_{i}", x=p.x, y=p.y) for i, p in enumerate(points)
    ]
    total = sum(a.distance_to(b) for a, b in zip(points, points[1:]))
    diagnostics = RouteDiagnostics(
        strategy=RouteStrategy.PREDEFINED,
        start_node=nodes[0].id,
        end_node=nodes[-1].id,
        start_distance=float(points[0].distance_to(start)),
        end_distance=float(points[-1].distance_to(end)),
        total_distance=float(total),
    )
    return RouteResult(route=nodes, diagnostics=diagnostics, streets=streets)


def _streets_along(graph: WalkableGraph, node_ids: Sequence[str]) -> list[str]:
    streets: list[str] = []
    for a, b in zip(node_ids, node_ids[1:]):
        edge = graph.edge_between(a, b)
        if edge is not None and edge.label and (not streets or streets[-1] != edge.label):
            streets.append(edge.label)
    return streets


def find_route(
    graph: WalkableGraph,
    start: PlanarPoint,
    end: PlanarPoint,
    start_id: str | None = None,
    end_id: str | None = None,
    radii: Sequence[float] = DEFAULT_SEARCH_RADII,
    use_index: bool = True,
) -> RouteResult:
    """Route between two planar points.

    Args:
        graph: Walkable graph to search.
        start: Query origin in planar coordinates.
        end: Query destination in planar coordinates.
        start_id: Optional semantic id of the origin (predefined-route lookup).
        end_id: Optional semantic id of the destination.
        radii: Escalating endpoint snap radii.
        use_index: Resolve endpoints through the spatial index.

    Returns:
        RouteResult; a failed search carries `strategy=failed` and the
        diagnostics explaining which stage gave up. Never raises for
        unreachable endpoints.
    """
    if start_id and end_id:
        for route in graph.predefined_routes:
            forward = route.matches(start_id, end_id)
            if forward is not None and len(route.path) >= 2:
                logger.debug("Using predefined route %s -> %s", route.from_id, route.to_id)
                return _predefined_result(route, forward, start, end)

    if not radii:
        raise ValueError("radii must contain at least one search radius")

    start_hit: NearestNode | None = None
    end_hit: NearestNode | None = None
    used_radius: float | None = None
    for radius in radii:
        start_hit = find_nearest_node(graph, start, radius, use_index=use_index)
        end_hit = find_nearest_node(graph, end, radius, use_index=use_index)
        used_radius = radius
        if start_hit is not None and end_hit is not None:
            break
        logger.debug("Endpoint snap failed at radius %.0f, escalating", radius)

    diagnostics = RouteDiagnostics(
        strategy=RouteStrategy.FAILED,
        start_node=start_hit.node.id if start_hit else None,
        end_node=end_hit.node.id if end_hit else None,
        start_distance=start_hit.distance if start_hit else None,
        end_distance=end_hit.distance if end_hit else None,
        search_radius=used_radius,
    )
    if start_hit is None or end_hit is None:
        diagnostics.failure = "start_unresolved" if start_hit is None else "end_unresolved"
        logger.info("Endpoint unresolved within %.0f units (%s)", used_radius or 0.0, diagnostics.failure)
        return RouteResult(diagnostics=diagnostics)

    path = astar(graph, start_hit.node.id, end_hit.node.id)
    strategy = RouteStrategy.ASTAR
    if len(path) < 2:
        logger.debug("A* found no route from %s to %s, trying BFS", start_hit.node.id, end_hit.node.id)
        path = bfs_path(graph, start_hit.node.id, end_hit.node.id)
        strategy = RouteStrategy.BFS

    if len(path) < 2:
        diagnostics.failure = "same_node" if start_hit.node.id == end_hit.node.id else "disconnected"
        logger.info(
            "No route between %s and %s (%s)", start_hit.node.id, end_hit.node.id, diagnostics.failure
        )
        return RouteResult(diagnostics=diagnostics)

    diagnostics.strategy = strategy
    diagnostics.total_distance = route_distance(graph, path)
    return RouteResult(
        route=[graph.nodes_by_id[node_id] for node_id in path],
        diagnostics=diagnostics,
        streets=_streets_along(graph, path),
    )
