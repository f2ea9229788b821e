"""Offline graph build: traced SVG map -> pruned, validated graph JSON.

Example:
    python -m wayfinder.export_graph --svg map.svg --out graph.json \
        --control-points control_points.json --routes routes.json
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Sequence

from wayfinder.calibration import CalibrationPoint, CoordinateCalibrator, GeoPoint, PlanarPoint
from wayfinder.config import PRECINCT_CONTROL_POINTS, load_settings
from wayfinder.graph import PredefinedRoute, prune_graph, save_graph
from wayfinder.graph_builder import BuildOptions, attach_predefined_routes, build_graph
from wayfinder.graph_validation import validate_graph
from wayfinder.svg_import import load_svg_geometry, parse_viewbox

logger = logging.getLogger(__name__)


def _load_control_points(path: Path) -> list[CalibrationPoint]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    try:
        return [
            CalibrationPoint(
                geo=GeoPoint(float(p["lat"]), float(p["lng"])),
                planar=PlanarPoint(float(p["x"]), float(p["y"])),
                name=str(p.get("name", "")),
            )
            for p in raw
        ]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed control point in {path}: {exc}") from exc


def _load_routes(path: Path) -> list[PredefinedRoute]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    try:
        return [PredefinedRoute.from_dict(item) for item in raw]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed predefined route in {path}: {exc}") from exc


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """CLI args."""
    parser = argparse.ArgumentParser(description="Build a walkable graph JSON from a traced SVG map")
    parser.add_argument("--svg", type=str, required=True, help="Traced SVG map with walkway/door/room layers")
    parser.add_argument("--out", type=str, required=True, help="Output graph JSON path")
    parser.add_argument("--control-points", type=str, default=None, help="JSON list of {lat,lng,x,y,name}")
    parser.add_argument("--routes", type=str, default=None, help="JSON list of predefined routes")
    parser.add_argument("--max-edge-distance", type=float, default=None, help="Drop untraced edges longer than this")
    parser.add_argument("--path-layer", type=str, default="Roads")
    parser.add_argument("--door-layer", type=str, default="Doors")
    parser.add_argument("--room-layer", type=str, default="Rooms")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero when validation reports errors")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the offline build and write the graph artifact."""
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    settings = load_settings()

    svg_path = Path(args.svg)
    if not svg_path.exists():
        raise FileNotFoundError(f"SVG map not found: {svg_path}")
    svg_text = svg_path.read_text(encoding="utf-8")

    geometry = load_svg_geometry(
        svg_text,
        path_layer=args.path_layer,
        door_layer=args.door_layer,
        room_layer=args.room_layer,
        flatten_step=settings.curve_flatten_step,
    )

    calibrator = CoordinateCalibrator(offset=PlanarPoint(settings.map_offset_x, settings.map_offset_y))
    points = _load_control_points(Path(args.control_points)) if args.control_points else list(PRECINCT_CONTROL_POINTS)
    outcome = calibrator.calibrate(points)
    if not outcome.accepted:
        raise ValueError(f"Calibration rejected: {outcome.reason}")

    result = build_graph(geometry, calibration=calibrator, options=BuildOptions.from_settings(settings))
    graph = result.graph

    max_edge = args.max_edge_distance if args.max_edge_distance is not None else settings.max_edge_distance
    graph, prune_stats = prune_graph(graph, max_edge)

    rejected: list[dict[str, str]] = []
    if args.routes:
        graph, rejected = attach_predefined_routes(
            graph, _load_routes(Path(args.routes)), settings.predefined_endpoint_distance
        )

    viewbox = parse_viewbox(svg_text)
    graph.metadata.update(
        {
            "source": svg_path.name,
            "viewbox": [viewbox.min_x, viewbox.min_y, viewbox.width, viewbox.height],
            "calibration": calibrator.status(),
        }
    )

    report = validate_graph(graph, predefined_endpoint_distance=settings.predefined_endpoint_distance)
    out = save_graph(graph, args.out)

    print(
        "export_done "
        f"nodes={len(graph)} edges={graph.edge_count()} "
        f"pruned_too_long={prune_stats['too_long']} "
        f"routes_kept={len(graph.predefined_routes)} routes_rejected={len(rejected)} "
        f"ok={report['ok']} out={out}"
    )
    for issue in report["issues"]:
        logger.log(logging.ERROR if issue["severity"] == "error" else logging.WARNING, issue["message"])

    if args.strict and not report["ok"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
