"""Read traced map layers out of an SVG export.

Purpose:
- Walk the SVG tree (honouring `transform` attributes) and collect the
  walkway, door and room layers as `TracedGeometry`.
- Read floor connector anchors (`Stair.1.floor2`, `Elev.3.L1`) from a
  `Portals` layer for indoor floor plans.

Layers are `<g>` groups whose `id` (or `inkscape:label`) names the layer.
Walkway labels come from `data-street` or `data-label` on the element or
its nearest labelled ancestor.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET

import numpy as np

from wayfinder.calibration import PlanarPoint, ViewBox
from wayfinder.geometry import DoorMarker, PathPrimitive, RoomBoundary, TracedGeometry, parse_path_data
from wayfinder.indoor import FloorConnector, connector_base_id, connector_type_for

logger = logging.getLogger(__name__)

_INKSCAPE_LABEL = "{http://www.inkscape.org/namespaces/inkscape}label"
_TRANSFORM_RE = re.compile(r"(matrix|translate|scale|rotate)\s*\(([^)]*)\)")


def _tag_name(elem: ET.Element) -> str:
    """Return local tag name without namespace."""
    tag = elem.tag
    if "}" in tag:
        return tag.split("}", 1)[1]
    return tag


def _layer_name(elem: ET.Element) -> str:
    return (elem.attrib.get(_INKSCAPE_LABEL) or elem.attrib.get("id") or "").strip()


def _parse_transform(transform: str | None) -> np.ndarray:
    """Parse SVG transform lists into a 3x3 affine matrix."""
    m = np.eye(3, dtype=np.float64)
    if not transform:
        return m

    for name, raw_args in _TRANSFORM_RE.findall(transform):
        vals = [float(v) for v in raw_args.replace(",", " ").split()]
        if name == "matrix" and len(vals) == 6:
            a, b, c, d, e, f = vals
            tm = np.array([[a, c, e], [b, d, f], [0.0, 0.0, 1.0]], dtype=np.float64)
        elif name == "translate":
            tx = vals[0] if vals else 0.0
            ty = vals[1] if len(vals) > 1 else 0.0
            tm = np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]], dtype=np.float64)
        elif name == "scale":
            sx = vals[0] if vals else 1.0
            sy = vals[1] if len(vals) > 1 else sx
            tm = np.array([[sx, 0.0, 0.0], [0.0, sy, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)
        elif name == "rotate" and vals:
            theta = np.radians(vals[0])
            cos_t, sin_t = float(np.cos(theta)), float(np.sin(theta))
            tm = np.array([[cos_t, -sin_t, 0.0], [sin_t, cos_t, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)
            if len(vals) == 3:
                cx, cy = vals[1], vals[2]
                pre = np.array([[1.0, 0.0, cx], [0.0, 1.0, cy], [0.0, 0.0, 1.0]])
                post = np.array([[1.0, 0.0, -cx], [0.0, 1.0, -cy], [0.0, 0.0, 1.0]])
                tm = pre @ tm @ post
        else:
            logger.debug("Ignoring unsupported transform %s(%s)", name, raw_args)
            continue
        m = m @ tm

    return m


def _parse_points(points_text: str) -> list[tuple[float, float]]:
    """Parse an SVG `points` attribute into coordinate pairs."""
    vals = points_text.replace(",", " ").split()
    if len(vals) < 4 or len(vals) % 2 != 0:
        return []
    nums = [float(v) for v in vals]
    return list(zip(nums[0::2], nums[1::2]))


def _apply_affine(points: list[PlanarPoint], mat: np.ndarray) -> list[PlanarPoint]:
    """Apply a 3x3 affine transform to planar points."""
    if not points or np.array_equal(mat, np.eye(3)):
        return points
    homog = np.array([[p.x, p.y, 1.0] for p in points], dtype=np.float64)
    out = homog @ mat.T
    return [PlanarPoint(float(x), float(y)) for x, y in out[:, :2]]


def _shape_runs(elem: ET.Element, flatten_step: float) -> list[list[PlanarPoint]]:
    """Point runs for a drawable element, before transforms."""
    tag = _tag_name(elem)
    attrs = elem.attrib
    if tag == "line":
        return [[
            PlanarPoint(float(attrs.get("x1", 0)), float(attrs.get("y1", 0))),
            PlanarPoint(float(attrs.get("x2", 0)), float(attrs.get("y2", 0))),
        ]]
    if tag in ("polyline", "polygon"):
        pts = [PlanarPoint(x, y) for x, y in _parse_points(attrs.get("points", ""))]
        if tag == "polygon" and pts:
            pts.append(pts[0])
        return [pts] if len(pts) >= 2 else []
    if tag == "rect":
        x, y = float(attrs.get("x", 0)), float(attrs.get("y", 0))
        w, h = float(attrs.get("width", 0)), float(attrs.get("height", 0))
        return [[PlanarPoint(x, y), PlanarPoint(x + w, y), PlanarPoint(x + w, y + h), PlanarPoint(x, y + h)]]
    if tag == "path":
        return parse_path_data(attrs.get("d", ""), flatten_step)
    return []


def _element_label(elem: ET.Element, inherited: str | None) -> str | None:
    return elem.attrib.get("data-street") or elem.attrib.get("data-label") or inherited


def load_svg_geometry(
    svg_text: str,
    path_layer: str = "Roads",
    door_layer: str = "Doors",
    room_layer: str = "Rooms",
    flatten_step: float = 10.0,
) -> TracedGeometry:
    """Parse walkway/door/room layers from SVG markup.

    Raises:
        ValueError: If the markup is not well-formed XML.
    """
    try:
        root = ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid SVG: {exc}") from exc

    geometry = TracedGeometry()
    layers = {path_layer.lower(): "path", door_layer.lower(): "door", room_layer.lower(): "room"}

    def _walk(elem: ET.Element, mat: np.ndarray, layer: str | None, label: str | None) -> None:
        local = mat @ _parse_transform(elem.attrib.get("transform"))
        tag = _tag_name(elem)
        if tag == "g":
            layer = layers.get(_layer_name(elem).lower(), layer)
        label = _element_label(elem, label)

        if layer is not None and tag != "g":
            try:
                runs = [_apply_affine(run, local) for run in _shape_runs(elem, flatten_step)]
            except ValueError as exc:
                geometry.skipped += 1
                logger.warning("Skipping malformed <%s> in %s layer: %s", tag, layer, exc)
                runs = []
            elem_id = elem.attrib.get("id") or f"{layer}_{len(geometry.doors) + len(geometry.rooms)}"
            for run in runs:
                if layer == "path":
                    kind = "line" if len(run) == 2 else "polyline"
                    geometry.paths.append(PathPrimitive(kind=kind, points=run, label=label))
                elif layer == "door":
                    room_id = elem.attrib.get("data-room")
                    geometry.doors.append(DoorMarker(door_id=elem_id, points=run, room_id=room_id))
                elif len(run) >= 3:
                    name = elem.attrib.get("data-name")
                    geometry.rooms.append(RoomBoundary(room_id=elem_id, points=run, name=name))

        for child in list(elem):
            _walk(child, local, layer, label)

    _walk(root, np.eye(3, dtype=np.float64), None, None)
    logger.info(
        "Loaded SVG geometry: %d walkway runs, %d doors, %d rooms",
        len(geometry.paths),
        len(geometry.doors),
        len(geometry.rooms),
    )
    return geometry


def parse_viewbox(svg_text: str) -> ViewBox:
    """Read the root viewBox (falls back to width/height)."""
    try:
        root = ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid SVG: {exc}") from exc

    vb = root.attrib.get("viewBox", "").strip()
    if vb:
        parts = vb.replace(",", " ").split()
        if len(parts) == 4:
            min_x, min_y, width, height = (float(p) for p in parts)
            return ViewBox(min_x=min_x, min_y=min_y, width=width, height=height)

    width = float(re.sub(r"[^0-9.]", "", root.attrib.get("width", "")) or 0)
    height = float(re.sub(r"[^0-9.]", "", root.attrib.get("height", "")) or 0)
    if width <= 0 or height <= 0:
        raise ValueError("SVG missing valid viewBox/width/height")
    return ViewBox(min_x=0.0, min_y=0.0, width=width, height=height)


def load_floor_connectors(svg_text: str, floor_id: str, portal_layer: str = "Portals") -> list[FloorConnector]:
    """Read connector anchors from a floor plan's portal layer.

    Each element's `id` is reduced to its connector base id and its centre
    becomes the anchor point.
    """
    try:
        root = ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid SVG: {exc}") from exc

    connectors: list[FloorConnector] = []

    def _walk(elem: ET.Element, mat: np.ndarray, inside: bool) -> None:
        local = mat @ _parse_transform(elem.attrib.get("transform"))
        tag = _tag_name(elem)
        if tag == "g" and _layer_name(elem).lower() == portal_layer.lower():
            inside = True
        elif inside and tag != "g" and elem.attrib.get("id"):
            pts = [p for run in _shape_runs(elem, 10.0) for p in _apply_affine(run, local)]
            if tag == "circle":
                pts = _apply_affine(
                    [PlanarPoint(float(elem.attrib.get("cx", 0)), float(elem.attrib.get("cy", 0)))], local
                )
            if pts:
                cx = sum(p.x for p in pts) / len(pts)
                cy = sum(p.y for p in pts) / len(pts)
                base = connector_base_id(elem.attrib["id"])
                connectors.append(
                    FloorConnector(
                        connector_id=base,
                        floor_id=floor_id,
                        point=PlanarPoint(cx, cy),
                        connector_type=connector_type_for(base),
                    )
                )
        for child in list(elem):
            _walk(child, local, inside)

    _walk(root, np.eye(3, dtype=np.float64), False)
    return connectors
