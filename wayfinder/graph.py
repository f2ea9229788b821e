"""Walkable graph model, JSON persistence and build-time pruning.

Purpose:
- Hold the immutable nodes/edges produced by the graph builder.
- Own the lazily built spatial index used for nearest-node lookup.
- Save/load the offline graph artifact and prune it before shipping.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import numpy as np

from wayfinder.calibration import GeoPoint, PlanarPoint
from wayfinder.spatial_index import NodeSpatialIndex

logger = logging.getLogger(__name__)

GRAPH_FORMAT_VERSION = 1


@dataclass(slots=True, frozen=True)
class GraphNode:
    id: str
    x: float
    y: float
    geo: GeoPoint | None = None
    label: str | None = None
    is_door: bool = False
    room_id: str | None = None

    @property
    def point(self) -> PlanarPoint:
        return PlanarPoint(self.x, self.y)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "x": float(self.x), "y": float(self.y)}
        if self.geo is not None:
            payload["lat"] = float(self.geo.lat)
            payload["lng"] = float(self.geo.lng)
        if self.label:
            payload["label"] = self.label
        if self.is_door:
            payload["is_door"] = True
        if self.room_id:
            payload["room_id"] = self.room_id
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GraphNode:
        geo = None
        if raw.get("lat") is not None and raw.get("lng") is not None:
            geo = GeoPoint(float(raw["lat"]), float(raw["lng"]))
        return cls(
            id=str(raw["id"]),
            x=float(raw["x"]),
            y=float(raw["y"]),
            geo=geo,
            label=raw.get("label") or None,
            is_door=bool(raw.get("is_door", False)),
            room_id=raw.get("room_id") or None,
        )


@dataclass(slots=True, frozen=True)
class Edge:
    """Directed edge; `traced` marks edges the builder drew from walkway or door geometry."""

    to: str
    distance: float
    label: str | None = None
    traced: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"to": self.to, "distance": float(self.distance)}
        if self.label:
            payload["label"] = self.label
        if self.traced:
            payload["traced"] = True
        return payload


@dataclass(slots=True, frozen=True)
class PredefinedRoute:
    """Hand-authored canonical route between two semantic ids."""

    from_id: str
    to_id: str
    path: tuple[PlanarPoint, ...]
    streets: tuple[str, ...] = ()

    def matches(self, start_id: str, end_id: str) -> bool | None:
        """True if stored forwards, False if stored reversed, None if unrelated."""
        if self.from_id == start_id and self.to_id == end_id:
            return True
        if self.from_id == end_id and self.to_id == start_id:
            return False
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_id": self.from_id,
            "to_id": self.to_id,
            "path": [p.to_dict() for p in self.path],
            "streets": list(self.streets),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PredefinedRoute:
        path = tuple(PlanarPoint(float(p["x"]), float(p["y"])) for p in raw.get("path", []))
        return cls(
            from_id=str(raw["from_id"]),
            to_id=str(raw["to_id"]),
            path=path,
            streets=tuple(str(s) for s in raw.get("streets", [])),
        )


@dataclass
class WalkableGraph:
    """Nodes keyed by id plus directed adjacency lists.

    The graph is read-only once built. Its spatial index is built on first
    use and cached on the instance; call `invalidate_index()` if the node
    table is ever swapped in place.
    """

    nodes_by_id: dict[str, GraphNode] = field(default_factory=dict)
    adjacency: dict[str, list[Edge]] = field(default_factory=dict)
    predefined_routes: list[PredefinedRoute] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    _index: NodeSpatialIndex | None = field(default=None, init=False, repr=False, compare=False)
    _index_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.nodes_by_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes_by_id

    def neighbors(self, node_id: str) -> list[Edge]:
        return self.adjacency.get(node_id, [])

    def iter_edges(self) -> Iterator[tuple[str, Edge]]:
        for node_id, edges in self.adjacency.items():
            for edge in edges:
                yield node_id, edge

    def edge_count(self) -> int:
        return sum(len(edges) for edges in self.adjacency.values())

    def edge_between(self, a: str, b: str) -> Edge | None:
        for edge in self.adjacency.get(a, []):
            if edge.to == b:
                return edge
        return None

    def node_coords(self) -> tuple[list[str], np.ndarray]:
        ids = list(self.nodes_by_id)
        coords = np.array([[self.nodes_by_id[i].x, self.nodes_by_id[i].y] for i in ids], dtype=float)
        return ids, coords.reshape(len(ids), 2)

    @property
    def spatial_index(self) -> NodeSpatialIndex:
        with self._index_lock:
            if self._index is None:
                ids, coords = self.node_coords()
                self._index = NodeSpatialIndex(ids, coords)
                logger.debug("Built spatial index over %d nodes", len(ids))
            return self._index

    def invalidate_index(self) -> None:
        with self._index_lock:
            self._index = None

    def bounds(self) -> dict[str, float] | None:
        if not self.nodes_by_id:
            return None
        _, coords = self.node_coords()
        return {
            "min_x": float(coords[:, 0].min()),
            "min_y": float(coords[:, 1].min()),
            "max_x": float(coords[:, 0].max()),
            "max_y": float(coords[:, 1].max()),
        }

    def to_dict(self) -> dict[str, Any]:
        metadata = dict(self.metadata)
        metadata.update({"node_count": len(self.nodes_by_id), "edge_count": self.edge_count(), "bounds": self.bounds()})
        return {
            "version": GRAPH_FORMAT_VERSION,
            "metadata": metadata,
            "nodes": [node.to_dict() for node in self.nodes_by_id.values()],
            "adjacency": {node_id: [e.to_dict() for e in edges] for node_id, edges in self.adjacency.items()},
            "predefined_routes": [route.to_dict() for route in self.predefined_routes],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WalkableGraph:
        """Rebuild a graph from its JSON form, dropping dangling edges."""
        version = int(payload.get("version", GRAPH_FORMAT_VERSION))
        if version != GRAPH_FORMAT_VERSION:
            raise ValueError(f"Unsupported graph format version {version}")

        nodes: dict[str, GraphNode] = {}
        for raw in payload.get("nodes", []):
            node = GraphNode.from_dict(raw)
            nodes[node.id] = node

        adjacency: dict[str, list[Edge]] = {node_id: [] for node_id in nodes}
        dangling = 0
        for node_id, raw_edges in (payload.get("adjacency") or {}).items():
            if node_id not in nodes:
                dangling += len(raw_edges)
                continue
            for raw in raw_edges:
                target = str(raw["to"])
                distance = float(raw["distance"])
                if target not in nodes or distance < 0:
                    dangling += 1
                    continue
                adjacency[node_id].append(
                    Edge(
                        to=target,
                        distance=distance,
                        label=raw.get("label") or None,
                        traced=bool(raw.get("traced", False)),
                    )
                )
        if dangling:
            logger.warning("Dropped %d edges referencing unknown nodes or negative distances", dangling)

        routes = [PredefinedRoute.from_dict(raw) for raw in payload.get("predefined_routes", [])]
        metadata = dict(payload.get("metadata") or {})
        for key in ("node_count", "edge_count", "bounds"):
            metadata.pop(key, None)
        return cls(nodes_by_id=nodes, adjacency=adjacency, predefined_routes=routes, metadata=metadata)


def save_graph(graph: WalkableGraph, path: str | Path) -> Path:
    """Write a graph artifact as JSON."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    payload = graph.to_dict()
    payload["metadata"].setdefault("saved_at", datetime.now(timezone.utc).isoformat())
    out.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Saved graph with %d nodes to %s", len(graph), out)
    return out


def load_graph(path: str | Path) -> WalkableGraph:
    """Load a graph artifact written by `save_graph`."""
    src = Path(path)
    if not src.is_file():
        raise FileNotFoundError(f"Graph file not found: {src}")
    graph = WalkableGraph.from_dict(json.loads(src.read_text(encoding="utf-8")))
    logger.info("Loaded graph with %d nodes from %s", len(graph), src)
    return graph


def prune_graph(graph: WalkableGraph, max_edge_distance: float | None = None) -> tuple[WalkableGraph, dict[str, int]]:
    """Drop self-loops, duplicate edges and over-long straight edges.

    The length limit only applies to untraced edges. Traced walkway and door
    edges follow drawn geometry, so they are kept at any length.
    Duplicate edges keep the shortest distance. Returns a new graph plus
    removal counts; the input graph is left untouched.
    """
    if max_edge_distance is not None and max_edge_distance <= 0:
        raise ValueError("max_edge_distance must be > 0")

    stats = {"self_loops": 0, "duplicates": 0, "too_long": 0}
    adjacency: dict[str, list[Edge]] = {}
    for node_id, edges in graph.adjacency.items():
        kept: dict[str, Edge] = {}
        for edge in edges:
            if edge.to == node_id:
                stats["self_loops"] += 1
                continue
            if max_edge_distance is not None and not edge.traced and edge.distance > max_edge_distance:
                stats["too_long"] += 1
                continue
            prior = kept.get(edge.to)
            if prior is not None:
                stats["duplicates"] += 1
                if edge.distance >= prior.distance:
                    continue
            kept[edge.to] = edge
        adjacency[node_id] = list(kept.values())

    logger.info(
        "Pruned graph: %d self-loops, %d duplicates, %d over-long edges",
        stats["self_loops"],
        stats["duplicates"],
        stats["too_long"],
    )
    pruned = WalkableGraph(
        nodes_by_id=dict(graph.nodes_by_id),
        adjacency=adjacency,
        predefined_routes=list(graph.predefined_routes),
        metadata=dict(graph.metadata),
    )
    return pruned, stats


def door_nodes_for_room(graph: WalkableGraph, room_id: str) -> list[GraphNode]:
    """Door nodes attached to `room_id` (case-insensitive)."""
    wanted = room_id.strip().lower()
    return [
        node
        for node in graph.nodes_by_id.values()
        if node.is_door and node.room_id is not None and node.room_id.lower() == wanted
    ]
