"""Turn-by-turn walking directions for computed routes."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

from wayfinder.calibration import CoordinateCalibrator, GeoPoint, haversine_m
from wayfinder.graph import GraphNode, WalkableGraph

WALKING_SPEED_MPS = 1.4
STRAIGHT_THRESHOLD_DEG = 25.0
_CARDINALS = ("north", "northeast", "east", "southeast", "south", "southwest", "west", "northwest")


@dataclass(slots=True)
class DirectionStep:
    instruction: str
    turn: str
    distance_m: float
    street: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "instruction": self.instruction,
            "turn": self.turn,
            "distance_m": round(float(self.distance_m), 1),
            "distance_text": format_distance(self.distance_m),
            "street": self.street,
        }


def bearing_degrees(a: GeoPoint, b: GeoPoint) -> float:
    """Initial great-circle bearing from `a` to `b` in [0, 360)."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlng = math.radians(b.lng - a.lng)
    y = math.sin(dlng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def cardinal_from_bearing(bearing: float) -> str:
    return _CARDINALS[int(round(bearing / 45.0)) % 8]


def turn_direction(a: GeoPoint, b: GeoPoint, c: GeoPoint) -> str:
    """`left`, `right` or `straight` for the turn made at `b`."""
    v1x, v1y = b.lng - a.lng, b.lat - a.lat
    v2x, v2y = c.lng - b.lng, c.lat - b.lat
    mag1, mag2 = math.hypot(v1x, v1y), math.hypot(v2x, v2y)
    if mag1 == 0 or mag2 == 0:
        return "straight"
    cos = max(-1.0, min(1.0, (v1x * v2x + v1y * v2y) / (mag1 * mag2)))
    if math.degrees(math.acos(cos)) < STRAIGHT_THRESHOLD_DEG:
        return "straight"
    return "left" if v1x * v2y - v1y * v2x > 0 else "right"


def format_distance(meters: float) -> str:
    """`"50m"` under a kilometre, `"1.2km"` above."""
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"


def estimate_eta(meters: float, speed_mps: float = WALKING_SPEED_MPS) -> str:
    """Walking time as `"Just now"`, `"5 min"` or `"1h 5m"`."""
    if speed_mps <= 0:
        raise ValueError("speed_mps must be > 0")
    minutes = round(meters / speed_mps / 60.0)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h" if rest == 0 else f"{hours}h {rest}m"


def build_directions(
    points: Sequence[GeoPoint],
    streets: Sequence[str | None],
    start_landmark: str | None = None,
    end_landmark: str | None = None,
) -> list[DirectionStep]:
    """Collapse a GPS polyline into maneuvers.

    Args:
        points: Route positions in travel order.
        streets: Label of each leg (`len(points) - 1` entries).
        start_landmark: Name of the place the walk starts from.
        end_landmark: Name of the destination.
    """
    if len(points) < 2:
        return []
    if len(streets) != len(points) - 1:
        raise ValueError("streets must have one entry per route leg")

    legs = [haversine_m(a, b) for a, b in zip(points, points[1:])]
    heading = cardinal_from_bearing(bearing_degrees(points[0], points[1]))
    first_street = streets[0]
    if start_landmark:
        text = f"Exit {start_landmark} and head {heading}"
    else:
        text = f"Head {heading}"
    if first_street:
        text += f" on {first_street}"
    steps = [DirectionStep(instruction=text, turn="start", distance_m=legs[0], street=first_street)]

    current_street = first_street
    for i in range(1, len(points) - 1):
        next_street = streets[i]
        turn = turn_direction(points[i - 1], points[i], points[i + 1])
        street_changed = bool(next_street) and next_street != current_street
        if turn != "straight":
            text = f"Turn {turn} onto {next_street}" if next_street else f"Turn {turn}"
            steps.append(DirectionStep(instruction=text, turn=turn, distance_m=legs[i], street=next_street))
        elif street_changed:
            text = f"Continue onto {next_street}"
            steps.append(DirectionStep(instruction=text, turn="straight", distance_m=legs[i], street=next_street))
        else:
            steps[-1].distance_m += legs[i]
        if next_street:
            current_street = next_street

    arrive = f"Arrive at {end_landmark}" if end_landmark else "Arrive at destination"
    steps.append(DirectionStep(instruction=arrive, turn="arrive", distance_m=0.0))
    return steps


def _landmark(node: GraphNode) -> str | None:
    if node.is_door and node.label:
        return node.label.removesuffix(" entrance")
    return None


def directions_for_route(
    graph: WalkableGraph,
    route: Sequence[GraphNode],
    calibrator: CoordinateCalibrator | None = None,
) -> list[DirectionStep]:
    """Directions for a walkable-graph route.

    Nodes without a stored GPS position are unprojected through `calibrator`;
    without one such routes yield no directions.
    """
    points: list[GeoPoint] = []
    for node in route:
        if node.geo is not None:
            points.append(node.geo)
        elif calibrator is not None:
            points.append(calibrator.unproject(node.point))
        else:
            return []

    streets: list[str | None] = []
    for a, b in zip(route, route[1:]):
        edge = graph.edge_between(a.id, b.id)
        streets.append(edge.label if edge is not None else None)

    if not route:
        return []
    return build_directions(points, streets, _landmark(route[0]), _landmark(route[-1]))
