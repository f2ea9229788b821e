"""KD-tree accelerated nearest-node lookup over planar node coordinates."""

from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.spatial import cKDTree

from wayfinder.calibration import PlanarPoint

# Ball queries are padded so boundary points are never lost to KD-tree rounding;
# the exact `<= max_distance` test is re-applied on the candidates.
_RADIUS_PAD = 1e-9


def planar_distances(coords: np.ndarray, point: PlanarPoint) -> np.ndarray:
    """Euclidean distances from `point` to each row of an (N, 2) array."""
    return np.hypot(coords[:, 0] - point.x, coords[:, 1] - point.y)


def pick_nearest(distances: np.ndarray, max_distance: float) -> int | None:
    """Index of the closest candidate within range; ties go to the lowest index."""
    if distances.size == 0:
        return None
    best = int(np.argmin(distances))
    if distances[best] > max_distance:
        return None
    return best


class NodeSpatialIndex:
    """Immutable KD-tree over node coordinates in graph insertion order."""

    def __init__(self, node_ids: Sequence[str], coords: np.ndarray) -> None:
        if coords.shape != (len(node_ids), 2):
            raise ValueError("coords must have shape (len(node_ids), 2)")
        self.node_ids = list(node_ids)
        self.coords = np.asarray(coords, dtype=float)
        self._tree = cKDTree(self.coords) if len(self.node_ids) else None

    def __len__(self) -> int:
        return len(self.node_ids)

    def nearest(self, point: PlanarPoint, max_distance: float) -> tuple[str, float] | None:
        """Closest node id and its distance, or None when nothing is in range."""
        if self._tree is None or max_distance < 0:
            return None
        radius = max_distance + _RADIUS_PAD * max(1.0, max_distance)
        candidates = self._tree.query_ball_point([point.x, point.y], r=radius)
        if not candidates:
            return None
        candidates = np.sort(np.asarray(candidates, dtype=int))
        distances = planar_distances(self.coords[candidates], point)
        best = pick_nearest(distances, max_distance)
        if best is None:
            return None
        return self.node_ids[int(candidates[best])], float(distances[best])

    def within(self, point: PlanarPoint, max_distance: float) -> list[tuple[str, float]]:
        """All nodes within `max_distance`, closest first (ties by insertion order)."""
        if self._tree is None:
            return []
        radius = max_distance + _RADIUS_PAD * max(1.0, max_distance)
        candidates = np.sort(np.asarray(self._tree.query_ball_point([point.x, point.y], r=radius), dtype=int))
        if candidates.size == 0:
            return []
        distances = planar_distances(self.coords[candidates], point)
        order = np.argsort(distances, kind="stable")
        return [
            (self.node_ids[int(candidates[i])], float(distances[i])) for i in order if distances[i] <= max_distance
        ]
