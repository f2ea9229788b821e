"""Runtime settings and precinct survey defaults.

Purpose:
- Hold the surveyed precinct constants (viewBox, control points, GPS corners).
- Load tunable engine thresholds from `WAYFINDER_*` environment variables.

Usage example:
    >>> from wayfinder.config import load_settings
    >>> settings = load_settings()
    >>> settings.snap_radius
    2.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from wayfinder.calibration import CalibrationPoint, GeoBBox, GeoCorners, GeoPoint, PlanarPoint, ViewBox

PRECINCT_VIEWBOX = ViewBox(min_x=0.0, min_y=0.0, width=726.77, height=1643.6)

PRECINCT_CONTROL_POINTS: tuple[CalibrationPoint, ...] = (
    CalibrationPoint(GeoPoint(-33.85972, 151.20472), PlanarPoint(262.96, 343.01), "observatory_building"),
    CalibrationPoint(GeoPoint(-33.8718, 151.2067), PlanarPoint(335.16, 943.02), "qvb_center"),
    CalibrationPoint(GeoPoint(-33.8757, 151.20172), PlanarPoint(134.21, 1137.16), "tumbalong_park_central_lawn"),
    CalibrationPoint(GeoPoint(-33.8797, 151.2067), PlanarPoint(328.31, 1337.15), "capitol_theatre_roof"),
    CalibrationPoint(
        GeoPoint(-33.87791401631311, 151.2022219730791), PlanarPoint(152.81, 1248.46), "the_exchange_darling_square"
    ),
    CalibrationPoint(GeoPoint(-33.85794, 151.21008), PlanarPoint(481.26, 251.31), "terminal_roof"),
)

# Padded ~100m on every side to absorb consumer GPS drift.
PRECINCT_GPS_CORNERS = GeoCorners(
    top_left=GeoPoint(-33.8560, 151.1995),
    top_right=GeoPoint(-33.8560, 151.2115),
    bottom_left=GeoPoint(-33.8845, 151.1995),
    bottom_right=GeoPoint(-33.8845, 151.2115),
)

PRECINCT_BBOX = GeoBBox(lat_min=-33.8850, lat_max=-33.8555, lng_min=151.1990, lng_max=151.2120)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_floats(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        values = tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a comma-separated list of numbers, got {raw!r}") from exc
    if not values:
        return default
    return values


@dataclass(slots=True, frozen=True)
class WayfinderSettings:
    """Engine thresholds shared by the builder, search and fusion stages."""

    snap_radius: float = 2.0
    door_max_distance: float = 50.0
    curve_flatten_step: float = 10.0
    search_radii: tuple[float, ...] = (500.0, 1000.0, 2000.0)
    predefined_endpoint_distance: float = 25.0
    max_edge_distance: float = 45.0
    entrance_geo_threshold_m: float = 50.0
    entrance_planar_threshold: float = 50.0
    entrance_cost: float = 10.0
    floor_change_cost: float = 50.0
    transition_connect_distance: float = 100.0
    mixed_space_heuristic: float = 10000.0
    map_offset_x: float = 0.0
    map_offset_y: float = 0.0
    worker_threads: int = 2
    graph_path: str = ""


def load_settings() -> WayfinderSettings:
    """Read settings from the environment, falling back to precinct defaults."""
    defaults = WayfinderSettings()
    threads = int(_env_float("WAYFINDER_WORKER_THREADS", float(defaults.worker_threads)))
    if threads < 1:
        raise ValueError("WAYFINDER_WORKER_THREADS must be >= 1")

    return WayfinderSettings(
        snap_radius=_env_float("WAYFINDER_SNAP_RADIUS", defaults.snap_radius),
        door_max_distance=_env_float("WAYFINDER_DOOR_MAX_DISTANCE", defaults.door_max_distance),
        curve_flatten_step=_env_float("WAYFINDER_CURVE_FLATTEN_STEP", defaults.curve_flatten_step),
        search_radii=_env_floats("WAYFINDER_SEARCH_RADII", defaults.search_radii),
        predefined_endpoint_distance=_env_float(
            "WAYFINDER_PREDEFINED_ENDPOINT_DISTANCE", defaults.predefined_endpoint_distance
        ),
        max_edge_distance=_env_float("WAYFINDER_MAX_EDGE_DISTANCE", defaults.max_edge_distance),
        entrance_geo_threshold_m=_env_float("WAYFINDER_ENTRANCE_GEO_THRESHOLD_M", defaults.entrance_geo_threshold_m),
        entrance_planar_threshold=_env_float(
            "WAYFINDER_ENTRANCE_PLANAR_THRESHOLD", defaults.entrance_planar_threshold
        ),
        entrance_cost=_env_float("WAYFINDER_ENTRANCE_COST", defaults.entrance_cost),
        floor_change_cost=_env_float("WAYFINDER_FLOOR_CHANGE_COST", defaults.floor_change_cost),
        transition_connect_distance=_env_float(
            "WAYFINDER_TRANSITION_CONNECT_DISTANCE", defaults.transition_connect_distance
        ),
        mixed_space_heuristic=_env_float("WAYFINDER_MIXED_SPACE_HEURISTIC", defaults.mixed_space_heuristic),
        map_offset_x=_env_float("WAYFINDER_MAP_OFFSET_X", defaults.map_offset_x),
        map_offset_y=_env_float("WAYFINDER_MAP_OFFSET_Y", defaults.map_offset_y),
        worker_threads=threads,
        graph_path=os.getenv("WAYFINDER_GRAPH_PATH", defaults.graph_path).strip(),
    )
