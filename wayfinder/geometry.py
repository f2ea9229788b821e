"""Traced map geometry: primitives, SVG path data and door/room shapes.

Purpose:
- Model the traced walkway, door and room layers that feed the graph builder.
- Parse SVG path data (`M L H V C S Q T A Z`) and flatten curves into points.
- Load the JSON geometry export, skipping malformed primitives.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from shapely.geometry import LineString, Point, Polygon

from wayfinder.calibration import PlanarPoint

logger = logging.getLogger(__name__)

PRIMITIVE_KINDS = ("line", "polyline", "path")

_PATH_TOKEN_RE = re.compile(r"[MmLlHhVvCcSsQqTtAaZz]|[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_ARG_COUNTS = {"M": 2, "L": 2, "H": 1, "V": 1, "C": 6, "S": 4, "Q": 4, "T": 2, "A": 7, "Z": 0}

Polyline = list[PlanarPoint]


@dataclass(slots=True)
class PathPrimitive:
    """One traced walkway element.

    `line` and `polyline` carry explicit `points`; `path` carries SVG path
    data in `d` and is flattened on demand.
    """

    kind: str
    points: list[PlanarPoint] = field(default_factory=list)
    d: str = ""
    label: str | None = None


@dataclass(slots=True)
class DoorMarker:
    door_id: str
    points: list[PlanarPoint]
    room_id: str | None = None


@dataclass(slots=True)
class RoomBoundary:
    room_id: str
    points: list[PlanarPoint]
    name: str | None = None

    def polygon(self) -> Polygon:
        return Polygon([(p.x, p.y) for p in self.points])


@dataclass(slots=True)
class TracedGeometry:
    paths: list[PathPrimitive] = field(default_factory=list)
    doors: list[DoorMarker] = field(default_factory=list)
    rooms: list[RoomBoundary] = field(default_factory=list)
    skipped: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TracedGeometry:
        """Load the JSON geometry export; malformed entries are counted in `skipped`."""
        geometry = cls()
        for raw in payload.get("paths", []) or []:
            try:
                geometry.paths.append(_path_from_dict(raw))
            except (KeyError, TypeError, ValueError) as exc:
                geometry.skipped += 1
                logger.warning("Skipping malformed path primitive %r: %s", raw, exc)

        for raw in payload.get("doors", []) or []:
            try:
                points = _points_from_raw(raw["points"])
                if len(points) < 2:
                    raise ValueError("door needs at least 2 points")
                room_id = raw.get("room_id")
                geometry.doors.append(
                    DoorMarker(door_id=str(raw["id"]), points=points, room_id=str(room_id) if room_id else None)
                )
            except (KeyError, TypeError, ValueError) as exc:
                geometry.skipped += 1
                logger.warning("Skipping malformed door marker %r: %s", raw, exc)

        for raw in payload.get("rooms", []) or []:
            try:
                points = _points_from_raw(raw["points"])
                if len(points) < 3:
                    raise ValueError("room boundary needs at least 3 points")
                name = raw.get("name")
                geometry.rooms.append(
                    RoomBoundary(room_id=str(raw["id"]), points=points, name=str(name) if name else None)
                )
            except (KeyError, TypeError, ValueError) as exc:
                geometry.skipped += 1
                logger.warning("Skipping malformed room boundary %r: %s", raw, exc)

        return geometry


def _point_from_raw(raw: Any) -> PlanarPoint:
    if isinstance(raw, dict):
        x, y = float(raw["x"]), float(raw["y"])
    else:
        x, y = float(raw[0]), float(raw[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise ValueError("point coordinates must be finite")
    return PlanarPoint(x, y)


def _points_from_raw(raw: Any) -> list[PlanarPoint]:
    if not isinstance(raw, (list, tuple)):
        raise TypeError("points must be a list")
    return [_point_from_raw(item) for item in raw]


def _path_from_dict(raw: dict[str, Any]) -> PathPrimitive:
    kind = str(raw.get("kind", "polyline")).lower()
    if kind not in PRIMITIVE_KINDS:
        raise ValueError(f"unknown primitive kind {kind!r}")
    label = raw.get("label")
    label = str(label) if label else None

    if kind == "path":
        d = str(raw["d"]).strip()
        if not d:
            raise ValueError("path data is empty")
        return PathPrimitive(kind="path", d=d, label=label)

    if kind == "line" and "points" not in raw:
        points = [_point_from_raw((raw["x1"], raw["y1"])), _point_from_raw((raw["x2"], raw["y2"]))]
    else:
        points = _points_from_raw(raw["points"])
    if len(points) < 2:
        raise ValueError(f"{kind} needs at least 2 points")
    return PathPrimitive(kind=kind, points=points, label=label)


def _segments_for(length: float, flatten_step: float) -> int:
    if flatten_step <= 0:
        raise ValueError("flatten_step must be > 0")
    return max(2, int(math.ceil(length / flatten_step)))


def _cubic(p0: PlanarPoint, p1: PlanarPoint, p2: PlanarPoint, p3: PlanarPoint, step: float) -> list[PlanarPoint]:
    hull = p0.distance_to(p1) + p1.distance_to(p2) + p2.distance_to(p3)
    n = _segments_for(hull, step)
    out: list[PlanarPoint] = []
    for i in range(1, n + 1):
        t = i / n
        mt = 1.0 - t
        x = mt**3 * p0.x + 3 * mt**2 * t * p1.x + 3 * mt * t**2 * p2.x + t**3 * p3.x
        y = mt**3 * p0.y + 3 * mt**2 * t * p1.y + 3 * mt * t**2 * p2.y + t**3 * p3.y
        out.append(PlanarPoint(x, y))
    return out


def _quadratic(p0: PlanarPoint, p1: PlanarPoint, p2: PlanarPoint, step: float) -> list[PlanarPoint]:
    hull = p0.distance_to(p1) + p1.distance_to(p2)
    n = _segments_for(hull, step)
    out: list[PlanarPoint] = []
    for i in range(1, n + 1):
        t = i / n
        mt = 1.0 - t
        x = mt * mt * p0.x + 2 * mt * t * p1.x + t * t * p2.x
        y = mt * mt * p0.y + 2 * mt * t * p1.y + t * t * p2.y
        out.append(PlanarPoint(x, y))
    return out


def _arc(
    p0: PlanarPoint,
    rx: float,
    ry: float,
    rotation_deg: float,
    large_arc: bool,
    sweep: bool,
    p1: PlanarPoint,
    step: float,
) -> list[PlanarPoint]:
    """Flatten an SVG elliptical arc using the endpoint-to-centre conversion."""
    rx, ry = abs(rx), abs(ry)
    if rx == 0 or ry == 0 or (p0.x == p1.x and p0.y == p1.y):
        return [p1]

    phi = math.radians(rotation_deg % 360.0)
    cos_phi, sin_phi = math.cos(phi), math.sin(phi)
    dx2, dy2 = (p0.x - p1.x) / 2.0, (p0.y - p1.y) / 2.0
    x1p = cos_phi * dx2 + sin_phi * dy2
    y1p = -sin_phi * dx2 + cos_phi * dy2

    lam = (x1p * x1p) / (rx * rx) + (y1p * y1p) / (ry * ry)
    if lam > 1.0:
        scale = math.sqrt(lam)
        rx, ry = rx * scale, ry * scale

    num = rx * rx * ry * ry - rx * rx * y1p * y1p - ry * ry * x1p * x1p
    den = rx * rx * y1p * y1p + ry * ry * x1p * x1p
    coef = math.sqrt(max(0.0, num / den)) if den else 0.0
    if large_arc == sweep:
        coef = -coef
    cxp = coef * rx * y1p / ry
    cyp = -coef * ry * x1p / rx
    cx = cos_phi * cxp - sin_phi * cyp + (p0.x + p1.x) / 2.0
    cy = sin_phi * cxp + cos_phi * cyp + (p0.y + p1.y) / 2.0

    def _angle(ux: float, uy: float, vx: float, vy: float) -> float:
        return math.atan2(ux * vy - uy * vx, ux * vx + uy * vy)

    theta1 = _angle(1.0, 0.0, (x1p - cxp) / rx, (y1p - cyp) / ry)
    delta = _angle((x1p - cxp) / rx, (y1p - cyp) / ry, (-x1p - cxp) / rx, (-y1p - cyp) / ry)
    if not sweep and delta > 0:
        delta -= 2 * math.pi
    elif sweep and delta < 0:
        delta += 2 * math.pi

    n = _segments_for(abs(delta) * max(rx, ry), step)
    out: list[PlanarPoint] = []
    for i in range(1, n + 1):
        theta = theta1 + delta * i / n
        ex, ey = rx * math.cos(theta), ry * math.sin(theta)
        out.append(PlanarPoint(cos_phi * ex - sin_phi * ey + cx, sin_phi * ex + cos_phi * ey + cy))
    # Land exactly on the declared endpoint.
    out[-1] = p1
    return out


def parse_path_data(d: str, flatten_step: float = 10.0) -> list[Polyline]:
    """Parse SVG path data into one polyline per subpath.

    Straight commands keep their vertices unchanged; curves are flattened
    into points roughly `flatten_step` apart.

    Raises:
        ValueError: On unknown commands, a truncated argument list or
            numbers following a close-path.
    """
    tokens = _PATH_TOKEN_RE.findall(d)
    subpaths: list[Polyline] = []
    current: Polyline = []
    pos = PlanarPoint(0.0, 0.0)
    start = pos
    last_control: PlanarPoint | None = None
    last_cmd = ""
    cmd = ""
    i = 0

    def _flush() -> None:
        nonlocal current
        if len(current) >= 2:
            subpaths.append(current)
        current = []

    while i < len(tokens):
        token = tokens[i]
        if token.isalpha():
            cmd = token
            i += 1
            if cmd in "Zz":
                if current and (current[-1].x != start.x or current[-1].y != start.y):
                    current.append(start)
                pos = start
                _flush()
                last_control = None
                last_cmd = cmd
                continue
        elif not cmd:
            raise ValueError("Path data must start with a command")
        elif cmd in "Zz":
            # Close-path takes no arguments, so a bare number here can never be consumed.
            raise ValueError(f"Unexpected number {token!r} after close-path")

        upper = cmd.upper()
        count = _ARG_COUNTS[upper]
        if i + count > len(tokens) or any(t.isalpha() for t in tokens[i : i + count]):
            raise ValueError(f"Truncated arguments for path command {cmd!r}")
        args = [float(t) for t in tokens[i : i + count]]
        i += count
        relative = cmd.islower()
        ox, oy = (pos.x, pos.y) if relative else (0.0, 0.0)
        if upper != "M" and not current:
            current = [pos]

        if upper == "M":
            _flush()
            pos = PlanarPoint(args[0] + ox, args[1] + oy)
            start = pos
            current = [pos]
            # Subsequent coordinate pairs are implicit line-tos.
            cmd = "l" if relative else "L"
            last_control = None
        elif upper == "L":
            pos = PlanarPoint(args[0] + ox, args[1] + oy)
            current.append(pos)
            last_control = None
        elif upper == "H":
            pos = PlanarPoint(args[0] + ox, pos.y)
            current.append(pos)
            last_control = None
        elif upper == "V":
            pos = PlanarPoint(pos.x, args[0] + oy)
            current.append(pos)
            last_control = None
        elif upper in "CS":
            if upper == "C":
                c1 = PlanarPoint(args[0] + ox, args[1] + oy)
                c2 = PlanarPoint(args[2] + ox, args[3] + oy)
                end = PlanarPoint(args[4] + ox, args[5] + oy)
            else:
                if last_control is not None and last_cmd.upper() in "CS":
                    c1 = PlanarPoint(2 * pos.x - last_control.x, 2 * pos.y - last_control.y)
                else:
                    c1 = pos
                c2 = PlanarPoint(args[0] + ox, args[1] + oy)
                end = PlanarPoint(args[2] + ox, args[3] + oy)
            current.extend(_cubic(pos, c1, c2, end, flatten_step))
            last_control = c2
            pos = end
        elif upper in "QT":
            if upper == "Q":
                ctrl = PlanarPoint(args[0] + ox, args[1] + oy)
                end = PlanarPoint(args[2] + ox, args[3] + oy)
            else:
                if last_control is not None and last_cmd.upper() in "QT":
                    ctrl = PlanarPoint(2 * pos.x - last_control.x, 2 * pos.y - last_control.y)
                else:
                    ctrl = pos
                end = PlanarPoint(args[0] + ox, args[1] + oy)
            current.extend(_quadratic(pos, ctrl, end, flatten_step))
            last_control = ctrl
            pos = end
        elif upper == "A":
            end = PlanarPoint(args[5] + ox, args[6] + oy)
            current.extend(_arc(pos, args[0], args[1], args[2], bool(args[3]), bool(args[4]), end, flatten_step))
            last_control = None
            pos = end

        last_cmd = cmd

    _flush()
    return subpaths


def primitive_polylines(primitive: PathPrimitive, flatten_step: float = 10.0) -> list[Polyline]:
    """Return the ordered planar point runs described by a primitive."""
    if primitive.kind == "path":
        return parse_path_data(primitive.d, flatten_step)
    if len(primitive.points) < 2:
        raise ValueError(f"{primitive.kind} needs at least 2 points")
    return [list(primitive.points)]


def door_midpoint(door: DoorMarker) -> PlanarPoint:
    """Centre of a door marker (segment midpoint or polygon centroid)."""
    coords = [(p.x, p.y) for p in door.points]
    if len(coords) >= 3:
        polygon = Polygon(coords)
        if polygon.is_valid and polygon.area > 0:
            c = polygon.centroid
            return PlanarPoint(float(c.x), float(c.y))
    c = LineString(coords).centroid
    return PlanarPoint(float(c.x), float(c.y))


def room_for_point(rooms: list[RoomBoundary], point: PlanarPoint, max_distance: float) -> RoomBoundary | None:
    """Room containing `point`, else the closest room boundary within `max_distance`."""
    probe = Point(point.x, point.y)
    best: RoomBoundary | None = None
    best_dist = float("inf")
    for room in rooms:
        polygon = room.polygon()
        if not polygon.is_valid:
            continue
        if polygon.contains(probe):
            return room
        dist = float(polygon.exterior.distance(probe))
        if dist <= max_distance and dist < best_dist:
            best, best_dist = room, dist
    return best
