"""GPS <-> planar calibration for the precinct render space.

Purpose:
- Fit a least-squares affine transform from surveyed control points.
- Provide explicit fallback strategies (4-corner, Mercator bbox, identity).
- Normalise raw device coordinates before they reach any transform.

Usage example:
    >>> from wayfinder.calibration import CoordinateCalibrator, GeoPoint
    >>> from wayfinder.config import PRECINCT_CONTROL_POINTS
    >>> calibrator = CoordinateCalibrator()
    >>> calibrator.calibrate(PRECINCT_CONTROL_POINTS).accepted
    True
    >>> calibrator.project(GeoPoint(-33.8718, 151.2067))
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

import numpy as np

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
MAX_LAT_ABS = 90.0
MAX_LNG_ABS = 180.0
# Web Mercator diverges at the poles; latitudes are clamped just inside them.
MERCATOR_LAT_LIMIT = 89.999
HUGE_COORD_THRESHOLD_MULTIPLIER = 1000.0
MAX_COORD_DIVIDE_ITERATIONS = 20
PIVOT_EPSILON = 1e-12


class CalibrationError(ValueError):
    """Raised when control points cannot produce a calibration."""


class SingularMatrixError(ValueError):
    """Raised when a linear system has no unique solution."""


class CalibrationStrategy(str, Enum):
    AFFINE = "affine"
    CORNERS = "corners"
    MERCATOR = "mercator"
    IDENTITY = "identity"


def _coerce_coordinate(value: float | str) -> float:
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as exc:
            raise ValueError(f"Coordinate is not numeric: {value!r}") from exc
    return float(value)


def _normalize_coordinate(value: float | str, limit: float, wrap: bool) -> float:
    normalized = _coerce_coordinate(value)
    if not math.isfinite(normalized):
        raise ValueError(f"Coordinate must be finite, got {value!r}")

    if abs(normalized) > limit:
        if abs(normalized) > limit * HUGE_COORD_THRESHOLD_MULTIPLIER:
            # Values from feeds that drop the decimal point (e.g. -338718000).
            iterations = 0
            while abs(normalized) > limit and iterations < MAX_COORD_DIVIDE_ITERATIONS:
                normalized /= 10.0
                iterations += 1
        elif wrap:
            full = limit * 2.0
            normalized = ((normalized + limit) % full + full) % full - limit
        else:
            normalized = max(-limit, min(limit, normalized))

        if abs(normalized) > limit:
            normalized = max(-limit, min(limit, normalized))

    return normalized


def normalize_latitude(lat: float | str) -> float:
    """Clamp latitude into [-90, 90], repairing decimal-shifted input."""
    return _normalize_coordinate(lat, MAX_LAT_ABS, wrap=False)


def normalize_longitude(lng: float | str) -> float:
    """Wrap longitude into (-180, 180], repairing decimal-shifted input."""
    normalized = _normalize_coordinate(lng, MAX_LNG_ABS, wrap=True)
    if normalized == -MAX_LNG_ABS:
        return MAX_LNG_ABS
    return normalized


@dataclass(slots=True, frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def normalized(self) -> GeoPoint:
        return GeoPoint(normalize_latitude(self.lat), normalize_longitude(self.lng))

    def to_dict(self) -> dict[str, float]:
        return {"lat": float(self.lat), "lng": float(self.lng)}


@dataclass(slots=True, frozen=True)
class PlanarPoint:
    x: float
    y: float

    def distance_to(self, other: PlanarPoint) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict[str, float]:
        return {"x": float(self.x), "y": float(self.y)}


@dataclass(slots=True, frozen=True)
class ViewBox:
    min_x: float
    min_y: float
    width: float
    height: float

    @property
    def center(self) -> PlanarPoint:
        return PlanarPoint(self.min_x + self.width / 2.0, self.min_y + self.height / 2.0)

    def contains(self, point: PlanarPoint) -> bool:
        return (
            self.min_x <= point.x <= self.min_x + self.width and self.min_y <= point.y <= self.min_y + self.height
        )


@dataclass(slots=True, frozen=True)
class CalibrationPoint:
    geo: GeoPoint
    planar: PlanarPoint
    name: str = ""


@dataclass(slots=True, frozen=True)
class GeoCorners:
    top_left: GeoPoint
    top_right: GeoPoint
    bottom_left: GeoPoint
    bottom_right: GeoPoint

    @property
    def center(self) -> GeoPoint:
        lats = (self.top_left.lat, self.top_right.lat, self.bottom_left.lat, self.bottom_right.lat)
        lngs = (self.top_left.lng, self.top_right.lng, self.bottom_left.lng, self.bottom_right.lng)
        return GeoPoint(sum(lats) / 4.0, sum(lngs) / 4.0)


@dataclass(slots=True, frozen=True)
class GeoBBox:
    lat_min: float
    lat_max: float
    lng_min: float
    lng_max: float


@dataclass(slots=True, frozen=True)
class CalibrationResidual:
    name: str
    expected: PlanarPoint
    projected: PlanarPoint

    @property
    def error(self) -> float:
        return self.expected.distance_to(self.projected)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "expected": self.expected.to_dict(),
            "projected": self.projected.to_dict(),
            "error": float(self.error),
        }


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in meters."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2.0) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def solve_3x3(matrix: Sequence[Sequence[float]] | np.ndarray, vector: Sequence[float] | np.ndarray) -> np.ndarray:
    """Solve a 3x3 linear system by Gaussian elimination with partial pivoting.

    Args:
        matrix: Coefficient matrix, shape (3, 3).
        vector: Right-hand side, shape (3,).

    Returns:
        Solution vector of shape (3,).

    Raises:
        ValueError: If the inputs are not 3x3 / length 3.
        SingularMatrixError: If a pivot vanishes.
    """
    a = np.array(matrix, dtype=float)
    b = np.array(vector, dtype=float).reshape(-1)
    if a.shape != (3, 3):
        raise ValueError(f"matrix must be 3x3, got shape {a.shape}")
    if b.shape != (3,):
        raise ValueError(f"vector must have length 3, got shape {b.shape}")

    scale = max(1.0, float(np.max(np.abs(a))))
    for col in range(3):
        pivot_row = col + int(np.argmax(np.abs(a[col:, col])))
        if abs(a[pivot_row, col]) <= PIVOT_EPSILON * scale:
            raise SingularMatrixError("Matrix is singular or nearly singular")
        if pivot_row != col:
            a[[col, pivot_row]] = a[[pivot_row, col]]
            b[[col, pivot_row]] = b[[pivot_row, col]]

        for row in range(col + 1, 3):
            factor = a[row, col] / a[col, col]
            a[row, col:] -= factor * a[col, col:]
            b[row] -= factor * b[col]

    x = np.zeros(3, dtype=float)
    for row in range(2, -1, -1):
        x[row] = (b[row] - float(np.dot(a[row, row + 1 :], x[row + 1 :]))) / a[row, row]
    return x


def _invert_3x3(matrix: np.ndarray) -> np.ndarray:
    """Invert a 3x3 matrix column by column with `solve_3x3`."""
    identity = np.eye(3)
    columns = [solve_3x3(matrix, identity[:, i]) for i in range(3)]
    return np.column_stack(columns)


def _mercator_lat(lat_deg: float) -> float:
    lat = math.radians(max(-MERCATOR_LAT_LIMIT, min(MERCATOR_LAT_LIMIT, lat_deg)))
    return math.log(math.tan(math.pi / 4.0 + lat / 2.0))


def _inverse_mercator_lat(value: float) -> float:
    return math.degrees(2.0 * math.atan(math.exp(value)) - math.pi / 2.0)


@dataclass(frozen=True, eq=False)
class Calibration:
    """Immutable GPS <-> planar transform.

    Affine-family strategies keep a homogeneous 3x3 matrix mapping
    `(lng, lat, 1)` to `(x, y, 1)` together with its inverse. The Mercator
    strategy keeps its bbox and viewBox and maps latitude non-linearly.
    """

    strategy: CalibrationStrategy
    forward: np.ndarray = field(default_factory=lambda: np.eye(3))
    inverse: np.ndarray = field(default_factory=lambda: np.eye(3))
    degenerate: bool = False
    bbox: GeoBBox | None = None
    viewbox: ViewBox | None = None

    @classmethod
    def identity(cls, degenerate: bool = False) -> Calibration:
        return cls(strategy=CalibrationStrategy.IDENTITY, degenerate=degenerate)

    @classmethod
    def from_corners(cls, corners: GeoCorners, viewbox: ViewBox) -> Calibration:
        """Per-axis linear interpolation between surveyed corners.

        Exact at the corners and the centre; less accurate than an affine
        fit away from the axes because rotation and shear are ignored.
        """
        lng_span = corners.top_right.lng - corners.top_left.lng
        lat_span = corners.top_left.lat - corners.bottom_left.lat
        if lng_span == 0 or lat_span == 0:
            raise CalibrationError("GPS corners must span a non-empty area")

        sx = viewbox.width / lng_span
        sy = -viewbox.height / lat_span
        forward = np.array(
            [
                [sx, 0.0, viewbox.min_x - sx * corners.top_left.lng],
                [0.0, sy, viewbox.min_y - sy * corners.top_left.lat],
                [0.0, 0.0, 1.0],
            ]
        )
        return cls(strategy=CalibrationStrategy.CORNERS, forward=forward, inverse=_invert_3x3(forward), viewbox=viewbox)

    @classmethod
    def from_mercator_bbox(cls, bbox: GeoBBox, viewbox: ViewBox) -> Calibration:
        if bbox.lng_max == bbox.lng_min or bbox.lat_max == bbox.lat_min:
            raise CalibrationError("Bounding box must span a non-empty area")
        return cls(strategy=CalibrationStrategy.MERCATOR, bbox=bbox, viewbox=viewbox)

    def project(self, geo: GeoPoint) -> PlanarPoint:
        """Map a GPS position into planar render coordinates."""
        geo = geo.normalized()
        if self.strategy is CalibrationStrategy.MERCATOR:
            return self._project_mercator(geo)
        x, y, _ = self.forward @ np.array([geo.lng, geo.lat, 1.0])
        return PlanarPoint(float(x), float(y))

    def unproject(self, point: PlanarPoint) -> GeoPoint:
        """Map planar render coordinates back to a GPS position."""
        if self.strategy is CalibrationStrategy.MERCATOR:
            return self._unproject_mercator(point)
        lng, lat, _ = self.inverse @ np.array([point.x, point.y, 1.0])
        return GeoPoint(float(lat), float(lng))

    def _project_mercator(self, geo: GeoPoint) -> PlanarPoint:
        assert self.bbox is not None and self.viewbox is not None
        bbox, vb = self.bbox, self.viewbox
        x = (geo.lng - bbox.lng_min) / (bbox.lng_max - bbox.lng_min) * vb.width + vb.min_x
        m_min = _mercator_lat(bbox.lat_min)
        m_max = _mercator_lat(bbox.lat_max)
        y = (m_max - _mercator_lat(geo.lat)) / (m_max - m_min) * vb.height + vb.min_y
        return PlanarPoint(x, y)

    def _unproject_mercator(self, point: PlanarPoint) -> GeoPoint:
        assert self.bbox is not None and self.viewbox is not None
        bbox, vb = self.bbox, self.viewbox
        lng = (point.x - vb.min_x) / vb.width * (bbox.lng_max - bbox.lng_min) + bbox.lng_min
        m_min = _mercator_lat(bbox.lat_min)
        m_max = _mercator_lat(bbox.lat_max)
        m = m_max - (point.y - vb.min_y) / vb.height * (m_max - m_min)
        return GeoPoint(_inverse_mercator_lat(m), lng)

    def residuals(self, points: Iterable[CalibrationPoint]) -> list[CalibrationResidual]:
        return [
            CalibrationResidual(name=p.name, expected=p.planar, projected=self.project(p.geo)) for p in points
        ]

    def coefficients(self) -> dict[str, float] | None:
        """Return affine coefficients `a..f` (x = a*lng + b*lat + c, y = d*lng + e*lat + f)."""
        if self.strategy is CalibrationStrategy.MERCATOR:
            return None
        m = self.forward
        return {
            "a": float(m[0, 0]),
            "b": float(m[0, 1]),
            "c": float(m[0, 2]),
            "d": float(m[1, 0]),
            "e": float(m[1, 1]),
            "f": float(m[1, 2]),
        }


def fit_affine(points: Sequence[CalibrationPoint]) -> Calibration:
    """Least-squares affine fit from GPS to planar coordinates.

    Args:
        points: Surveyed control points (at least 3, not collinear).

    Returns:
        An affine `Calibration`, or an identity calibration flagged
        `degenerate=True` when the normal equations are singular.

    Raises:
        CalibrationError: If fewer than 3 control points are given.
    """
    if len(points) < 3:
        raise CalibrationError(f"Affine calibration needs at least 3 control points, got {len(points)}")

    geo = [p.geo.normalized() for p in points]
    # Centre on the survey mean so the normal matrix stays well conditioned.
    lng0 = sum(g.lng for g in geo) / len(geo)
    lat0 = sum(g.lat for g in geo) / len(geo)
    design = np.array([[g.lng - lng0, g.lat - lat0, 1.0] for g in geo], dtype=float)
    xs = np.array([p.planar.x for p in points], dtype=float)
    ys = np.array([p.planar.y for p in points], dtype=float)

    normal = design.T @ design
    try:
        a, b, c = solve_3x3(normal, design.T @ xs)
        d, e, f = solve_3x3(normal, design.T @ ys)
        forward = np.array(
            [
                [a, b, c - a * lng0 - b * lat0],
                [d, e, f - d * lng0 - e * lat0],
                [0.0, 0.0, 1.0],
            ]
        )
        inverse = _invert_3x3(forward)
    except SingularMatrixError:
        logger.warning("Affine fit is singular for %d control points; falling back to identity", len(points))
        return Calibration.identity(degenerate=True)

    return Calibration(strategy=CalibrationStrategy.AFFINE, forward=forward, inverse=inverse)


@dataclass(slots=True, frozen=True)
class CalibrationOutcome:
    accepted: bool
    strategy: CalibrationStrategy
    reason: str = ""
    max_residual: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "accepted": self.accepted,
            "strategy": self.strategy.value,
            "reason": self.reason,
            "max_residual": self.max_residual,
        }


class CoordinateCalibrator:
    """Holds the active calibration and the control points it derives from.

    The derived transform is cached and recomputed lazily after
    `recalibrate()`. Rejected calibrations leave the active one untouched.
    """

    def __init__(
        self,
        fallback: Calibration | None = None,
        offset: PlanarPoint = PlanarPoint(0.0, 0.0),
    ) -> None:
        self._fallback = fallback or Calibration.identity()
        self._offset = offset
        self._control_points: tuple[CalibrationPoint, ...] = ()
        self._cached: Calibration | None = None
        self.last_rejection: CalibrationOutcome | None = None

    @property
    def control_points(self) -> tuple[CalibrationPoint, ...]:
        return self._control_points

    @property
    def calibration(self) -> Calibration:
        if self._cached is None:
            if len(self._control_points) >= 3:
                self._cached = fit_affine(self._control_points)
            else:
                self._cached = self._fallback
        return self._cached

    @property
    def strategy(self) -> CalibrationStrategy:
        return self.calibration.strategy

    def calibrate(self, points: Iterable[CalibrationPoint]) -> CalibrationOutcome:
        """Install a new affine calibration from control points."""
        candidate_points = tuple(points)
        try:
            candidate = fit_affine(candidate_points)
        except CalibrationError as exc:
            return self._reject(str(exc))

        if candidate.degenerate:
            return self._reject("Control points are collinear or duplicated; affine fit is singular")

        residuals = candidate.residuals(candidate_points)
        max_residual = max(r.error for r in residuals)
        self._control_points = candidate_points
        self._cached = candidate
        self.last_rejection = None
        logger.info(
            "Calibrated from %d control points (max residual %.3f units)", len(candidate_points), max_residual
        )
        return CalibrationOutcome(accepted=True, strategy=candidate.strategy, max_residual=float(max_residual))

    def _reject(self, reason: str) -> CalibrationOutcome:
        outcome = CalibrationOutcome(accepted=False, strategy=self.strategy, reason=reason)
        self.last_rejection = outcome
        logger.error("Calibration rejected, keeping %s calibration: %s", self.strategy.value, reason)
        return outcome

    def use_corners(self, corners: GeoCorners, viewbox: ViewBox) -> CalibrationOutcome:
        """Drop control points and switch to 4-corner interpolation."""
        self._fallback = Calibration.from_corners(corners, viewbox)
        self._control_points = ()
        self._cached = None
        return CalibrationOutcome(accepted=True, strategy=CalibrationStrategy.CORNERS)

    def use_mercator_bbox(self, bbox: GeoBBox, viewbox: ViewBox) -> CalibrationOutcome:
        """Drop control points and switch to Mercator-corrected bbox mapping."""
        self._fallback = Calibration.from_mercator_bbox(bbox, viewbox)
        self._control_points = ()
        self._cached = None
        return CalibrationOutcome(accepted=True, strategy=CalibrationStrategy.MERCATOR)

    def recalibrate(self) -> None:
        """Invalidate the derived transform; it is rebuilt on next use."""
        self._cached = None

    def project(self, geo: GeoPoint) -> PlanarPoint:
        point = self.calibration.project(geo)
        return PlanarPoint(point.x + self._offset.x, point.y + self._offset.y)

    def unproject(self, point: PlanarPoint) -> GeoPoint:
        shifted = PlanarPoint(point.x - self._offset.x, point.y - self._offset.y)
        return self.calibration.unproject(shifted)

    def residuals(self) -> list[CalibrationResidual]:
        if not self._control_points:
            return []
        return self.calibration.residuals(self._control_points)

    def status(self) -> dict[str, object]:
        calibration = self.calibration
        return {
            "strategy": calibration.strategy.value,
            "degenerate": calibration.degenerate,
            "control_points": len(self._control_points),
            "coefficients": calibration.coefficients(),
            "residuals": [r.to_dict() for r in self.residuals()],
            "last_rejection": self.last_rejection.to_dict() if self.last_rejection else None,
        }
