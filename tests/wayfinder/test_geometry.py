"""Unit tests for wayfinder.geometry."""

from __future__ import annotations

import math

import pytest

from wayfinder.calibration import PlanarPoint
from wayfinder.geometry import (
    DoorMarker,
    PathPrimitive,
    RoomBoundary,
    TracedGeometry,
    door_midpoint,
    parse_path_data,
    primitive_polylines,
    room_for_point,
)


def _xy(polyline: list[PlanarPoint]) -> list[tuple[float, float]]:
    return [(round(p.x, 6), round(p.y, 6)) for p in polyline]


def test_parse_straight_commands() -> None:
    """M/L/H/V keep their vertices unchanged."""
    runs = parse_path_data("M 0 0 L 10 0 H 20 V 5")
    assert _xy(runs[0]) == [(0, 0), (10, 0), (20, 0), (20, 5)]


def test_parse_relative_commands_and_close() -> None:
    """Relative commands accumulate and `z` closes back to the subpath start."""
    runs = parse_path_data("m 10 10 l 5 0 l 0 5 z")
    assert _xy(runs[0]) == [(10, 10), (15, 10), (15, 15), (10, 10)]


def test_parse_implicit_lineto_after_move() -> None:
    """Extra pairs after M are treated as line-to commands."""
    runs = parse_path_data("M0,0 10,0 10,10")
    assert _xy(runs[0]) == [(0, 0), (10, 0), (10, 10)]


def test_parse_splits_subpaths() -> None:
    """Each move-to starts a new polyline."""
    runs = parse_path_data("M0 0 L1 0 M5 5 L6 5")
    assert len(runs) == 2
    assert _xy(runs[1]) == [(5, 5), (6, 5)]


def test_parse_cubic_is_flattened_to_endpoint() -> None:
    """Cubic curves become several points ending exactly on the endpoint."""
    runs = parse_path_data("M 0 0 C 0 50 100 50 100 0", flatten_step=10.0)
    points = runs[0]

    assert len(points) > 5
    assert (points[-1].x, points[-1].y) == (100.0, 0.0)
    assert all(p.y >= 0 for p in points)


def test_parse_smooth_quadratic_reflects_control() -> None:
    """T reuses the reflected control point of the previous Q."""
    runs = parse_path_data("M 0 0 Q 10 10 20 0 T 40 0", flatten_step=2.0)
    points = runs[0]
    assert (points[-1].x, points[-1].y) == (40.0, 0.0)
    # Second half mirrors the first, so it dips below the axis.
    assert min(p.y for p in points) < 0
    assert max(p.y for p in points) > 0


def test_parse_arc_stays_on_circle() -> None:
    """A semicircular arc should keep every point on its radius."""
    runs = parse_path_data("M 0 0 A 10 10 0 0 1 20 0", flatten_step=2.0)
    points = runs[0]

    assert (points[-1].x, points[-1].y) == (20.0, 0.0)
    for p in points:
        assert math.hypot(p.x - 10.0, p.y) == pytest.approx(10.0, abs=1e-6)


def test_parse_truncated_arguments_raise() -> None:
    """A command without enough numbers is malformed."""
    with pytest.raises(ValueError, match="Truncated"):
        parse_path_data("M 0 0 L 10")


def test_parse_requires_leading_command() -> None:
    """Bare numbers are not path data."""
    with pytest.raises(ValueError, match="start with a command"):
        parse_path_data("10 10 20 20")


@pytest.mark.parametrize("d", ["M 0 0 L 10 0 L 10 10 Z 5 5", "M0 0 H10 V10 z 3"])
def test_parse_rejects_numbers_after_close_path(d: str) -> None:
    """Close-path takes no arguments, so trailing numbers are malformed."""
    with pytest.raises(ValueError, match="close-path"):
        parse_path_data(d)


def test_parse_allows_new_subpath_after_close_path() -> None:
    """A command after close-path starts a fresh subpath."""
    runs = parse_path_data("M 0 0 L 10 0 Z M 20 20 L 30 20")
    assert len(runs) == 2
    assert runs[1][0] == PlanarPoint(20.0, 20.0)


def test_primitive_polylines_for_path_kind() -> None:
    """Path primitives are flattened through the path parser."""
    primitive = PathPrimitive(kind="path", d="M0 0 H 30", label="Kent St")
    assert _xy(primitive_polylines(primitive)[0]) == [(0, 0), (30, 0)]


def test_from_dict_skips_malformed_entries() -> None:
    """Malformed primitives are counted instead of aborting the load."""
    geometry = TracedGeometry.from_dict(
        {
            "paths": [
                {"kind": "line", "points": [[0, 0], [10, 0]]},
                {"kind": "polyline", "points": [[0, 0]]},
                {"kind": "spline", "points": [[0, 0], [1, 1]]},
                {"kind": "path", "d": "M 0 0 L 5 5"},
                {"kind": "line", "x1": 0, "y1": 0, "x2": 3, "y2": 4},
            ],
            "doors": [{"id": "d1", "points": [[0, 0], [0, 2]]}, {"id": "d2", "points": [[0, 0]]}],
            "rooms": [{"id": "r1", "points": [[0, 0], [1, 0]]}],
        }
    )

    assert len(geometry.paths) == 3
    assert len(geometry.doors) == 1
    assert geometry.rooms == []
    assert geometry.skipped == 4


def test_door_midpoint_segment_and_polygon() -> None:
    """Segment doors use the midpoint, polygon doors the centroid."""
    segment = DoorMarker("a", [PlanarPoint(0, 0), PlanarPoint(10, 0)])
    square = DoorMarker("b", [PlanarPoint(0, 0), PlanarPoint(4, 0), PlanarPoint(4, 4), PlanarPoint(0, 4)])

    assert door_midpoint(segment) == PlanarPoint(5.0, 0.0)
    assert door_midpoint(square) == PlanarPoint(2.0, 2.0)


def test_room_for_point_prefers_containing_room() -> None:
    """A point inside a room beats a nearer boundary of another room."""
    lobby = RoomBoundary("lobby", [PlanarPoint(0, 0), PlanarPoint(10, 0), PlanarPoint(10, 10), PlanarPoint(0, 10)])
    shop = RoomBoundary("shop", [PlanarPoint(11, 0), PlanarPoint(20, 0), PlanarPoint(20, 10), PlanarPoint(11, 10)])

    assert room_for_point([shop, lobby], PlanarPoint(9.5, 5), 5.0) is lobby
    assert room_for_point([lobby, shop], PlanarPoint(25, 5), 10.0) is shop
    assert room_for_point([lobby, shop], PlanarPoint(50, 50), 10.0) is None
