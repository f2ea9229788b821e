"""Connectivity and quality checks for built walkable graphs."""

from __future__ import annotations

import logging
from statistics import median
from typing import Any

from wayfinder.graph import PredefinedRoute, WalkableGraph

logger = logging.getLogger(__name__)


def connected_components(graph: WalkableGraph) -> list[list[str]]:
    """Weakly connected components in node insertion order."""
    undirected: dict[str, set[str]] = {node_id: set() for node_id in graph.nodes_by_id}
    for node_id, edge in graph.iter_edges():
        if node_id in undirected and edge.to in undirected:
            undirected[node_id].add(edge.to)
            undirected[edge.to].add(node_id)

    seen: set[str] = set()
    components: list[list[str]] = []
    for root in graph.nodes_by_id:
        if root in seen:
            continue
        seen.add(root)
        stack = [root]
        component: list[str] = []
        while stack:
            current = stack.pop()
            component.append(current)
            for nbr in undirected[current]:
                if nbr not in seen:
                    seen.add(nbr)
                    stack.append(nbr)
        components.append(component)
    return components


def component_lookup(graph: WalkableGraph) -> dict[str, int]:
    lookup: dict[str, int] = {}
    for idx, component in enumerate(connected_components(graph)):
        for node_id in component:
            lookup[node_id] = idx
    return lookup


def check_predefined_route(
    graph: WalkableGraph,
    route: PredefinedRoute,
    max_endpoint_distance: float,
    components: dict[str, int] | None = None,
) -> str | None:
    """Return why a predefined route is unusable on `graph`, or None if it is valid."""
    if len(route.path) < 2:
        return "route path has fewer than 2 points"
    if route.from_id == route.to_id:
        return "route starts and ends at the same id"

    index = graph.spatial_index
    start = index.nearest(route.path[0], max_endpoint_distance)
    end = index.nearest(route.path[-1], max_endpoint_distance)
    if start is None or end is None:
        return f"route endpoint is more than {max_endpoint_distance:g} units from any graph node"

    lookup = components if components is not None else component_lookup(graph)
    if lookup.get(start[0]) != lookup.get(end[0]):
        return "route endpoints fall in disconnected graph components"
    return None


def validate_graph(
    graph: WalkableGraph,
    min_recommended_nodes: int = 500,
    max_plausible_edge: float = 2000.0,
    predefined_endpoint_distance: float = 25.0,
) -> dict[str, Any]:
    """Validate graph connectivity and edge plausibility.

    Args:
        graph: Built walkable graph.
        min_recommended_nodes: Node count under which sampling is flagged as sparse.
        max_plausible_edge: Longest edge (planar units) before it is treated as a bad join.
        predefined_endpoint_distance: Snap tolerance for predefined route endpoints.

    Returns:
        Report dict with `ok`, `summary`, `issues` and `isolated_node_ids`.
        `ok` is False only when an error-severity issue exists.
    """
    issues: list[dict[str, Any]] = []

    def _issue(kind: str, severity: str, message: str, **extra: Any) -> None:
        issues.append({"kind": kind, "severity": severity, "message": message, **extra})

    node_count = len(graph.nodes_by_id)
    edge_count = graph.edge_count()

    if node_count == 0:
        _issue("graph_empty", "error", "Graph is empty - no nodes found")
        return {
            "ok": False,
            "summary": {"nodes": 0, "edges": 0, "errors": 1, "warnings": 0},
            "issues": issues,
            "isolated_node_ids": [],
        }

    dangling = [(src, e.to) for src, e in graph.iter_edges() if e.to not in graph.nodes_by_id]
    for src, dst in dangling:
        _issue("dangling_edge", "error", f"Edge {src} -> {dst} references an unknown node", node_id=src)

    inbound: set[str] = {e.to for _, e in graph.iter_edges()}
    isolated = [nid for nid in graph.nodes_by_id if not graph.neighbors(nid) and nid not in inbound]
    isolated_pct = 100.0 * len(isolated) / node_count
    avg_degree = edge_count / node_count

    components = connected_components(graph)
    lookup = {nid: idx for idx, comp in enumerate(components) for nid in comp}

    distances = [e.distance for _, e in graph.iter_edges()]
    max_edge = max(distances) if distances else 0.0
    avg_edge = sum(distances) / len(distances) if distances else 0.0
    median_edge = float(median(distances)) if distances else 0.0

    if avg_degree < 1.5:
        _issue("low_connectivity", "error", f"Very low connectivity: {avg_degree:.2f} edges/node (minimum 1.5)")
    elif avg_degree < 2.5:
        _issue("low_connectivity", "warning", f"Low connectivity: {avg_degree:.2f} edges/node (recommended 3+)")

    if isolated_pct > 15.0:
        _issue("isolated_nodes", "error", f"Too many isolated nodes: {len(isolated)} ({isolated_pct:.1f}%)")
    elif isolated_pct > 5.0:
        _issue("isolated_nodes", "warning", f"Many isolated nodes: {len(isolated)} ({isolated_pct:.1f}%)")

    if len(components) > node_count * 0.1:
        _issue("fragmented", "error", f"Graph is too fragmented: {len(components)} separate components")
    elif len(components) > 1:
        _issue("fragmented", "warning", f"Graph has {len(components)} separate components")

    if max_edge > max_plausible_edge:
        _issue("long_edge", "error", f"Suspiciously long edge: {max_edge:.1f} units")

    if node_count < min_recommended_nodes:
        _issue("sparse_sampling", "warning", f"Low node count: {node_count}")

    for route in graph.predefined_routes:
        reason = check_predefined_route(graph, route, predefined_endpoint_distance, lookup)
        if reason:
            _issue(
                "predefined_route_invalid",
                "warning",
                f"Predefined route {route.from_id} -> {route.to_id}: {reason}",
                route=f"{route.from_id}->{route.to_id}",
            )

    if isolated:
        logger.warning("Graph has %d isolated nodes (%.1f%%)", len(isolated), isolated_pct)

    error_count = sum(1 for issue in issues if issue["severity"] == "error")
    warning_count = sum(1 for issue in issues if issue["severity"] == "warning")

    return {
        "ok": error_count == 0,
        "summary": {
            "nodes": node_count,
            "edges": edge_count,
            "avg_edges_per_node": round(avg_degree, 3),
            "isolated_nodes": len(isolated),
            "isolated_pct": round(isolated_pct, 2),
            "components": len(components),
            "largest_component": max(len(c) for c in components),
            "max_edge_distance": round(max_edge, 3),
            "avg_edge_distance": round(avg_edge, 3),
            "median_edge_distance": round(median_edge, 3),
            "errors": error_count,
            "warnings": warning_count,
        },
        "issues": issues,
        "isolated_node_ids": isolated,
    }
