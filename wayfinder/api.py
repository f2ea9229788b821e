"""FastAPI routes for calibration, graph building and wayfinding.

This module exposes three groups of endpoints:
- Calibration (`/calibration`, `/project`, `/unproject`)
- Outdoor walkable graph (`/graph/build`, `/graph/build-svg`, `/graph`, `/route`)
- Hybrid outdoor/indoor routing (`/hybrid/build`, `/hybrid/route`)
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, model_validator

from wayfinder.calibration import (
    Calibration,
    CalibrationPoint,
    CoordinateCalibrator,
    GeoCorners,
    GeoPoint,
    PlanarPoint,
)
from wayfinder.config import (
    PRECINCT_BBOX,
    PRECINCT_CONTROL_POINTS,
    PRECINCT_GPS_CORNERS,
    PRECINCT_VIEWBOX,
    WayfinderSettings,
    load_settings,
)
from wayfinder.directions import directions_for_route, estimate_eta, format_distance
from wayfinder.geometry import TracedGeometry
from wayfinder.graph import PredefinedRoute, WalkableGraph, load_graph, prune_graph
from wayfinder.graph_builder import BuildOptions, attach_predefined_routes, build_graph
from wayfinder.graph_validation import validate_graph
from wayfinder.hybrid import (
    BuildingEntrance,
    FusionOptions,
    HybridGraph,
    IndoorPoint,
    build_hybrid_graph,
    find_hybrid_route,
)
from wayfinder.indoor import FloorConnector, IndoorBuilding, IndoorGraph, build_indoor_graph, connector_type_for
from wayfinder.nodes import ConnectorType
from wayfinder.pathfinding import RouteResult, find_route
from wayfinder.svg_import import load_svg_geometry
from wayfinder.worker import RouteWorker

logger = logging.getLogger(__name__)


@dataclass
class WayfinderState:
    """In-memory state for the active calibration and graphs."""

    settings: WayfinderSettings = field(default_factory=WayfinderSettings)
    calibrator: CoordinateCalibrator | None = None
    graph: WalkableGraph | None = None
    build_summary: dict[str, Any] | None = None
    indoor_graphs: dict[str, IndoorGraph] = field(default_factory=dict)
    hybrid: HybridGraph | None = None
    worker: RouteWorker | None = None


STATE = WayfinderState()


class GeoPointModel(BaseModel):
    lat: float
    lng: float


class PlanarPointModel(BaseModel):
    x: float
    y: float


class ControlPointModel(BaseModel):
    lat: float
    lng: float
    x: float
    y: float
    name: str = ""


class CornersModel(BaseModel):
    top_left: GeoPointModel
    top_right: GeoPointModel
    bottom_left: GeoPointModel
    bottom_right: GeoPointModel


class CalibrationRequest(BaseModel):
    """Request payload for installing a calibration.

    `affine` needs at least three control points; `corners` uses the given
    corners (or the precinct survey); `mercator` uses the precinct bbox.
    """

    mode: Literal["affine", "corners", "mercator"] = "affine"
    control_points: list[ControlPointModel] = Field(default_factory=list)
    corners: CornersModel | None = None


class RouteEndpoint(BaseModel):
    """Route endpoint given as planar `x`/`y` or GPS `lat`/`lng`."""

    x: float | None = None
    y: float | None = None
    lat: float | None = None
    lng: float | None = None
    place_id: str | None = None

    @model_validator(mode="after")
    def validate_inputs(self) -> "RouteEndpoint":
        """Ensure caller provides planar or GPS coordinates."""
        has_planar = self.x is not None and self.y is not None
        has_geo = self.lat is not None and self.lng is not None
        if not (has_planar or has_geo):
            raise ValueError("Provide either x/y planar coordinates or lat/lng")
        return self


class RouteRequest(BaseModel):
    start: RouteEndpoint
    end: RouteEndpoint
    channel: str = "default"
    use_index: bool = True


class GeometryPayload(BaseModel):
    paths: list[dict[str, Any]] = Field(default_factory=list)
    doors: list[dict[str, Any]] = Field(default_factory=list)
    rooms: list[dict[str, Any]] = Field(default_factory=list)


class GraphBuildRequest(GeometryPayload):
    predefined_routes: list[dict[str, Any]] = Field(default_factory=list)
    attach_geo: bool = True
    max_edge_distance: float | None = Field(default=None, gt=0)


class ConnectorModel(BaseModel):
    connector_id: str
    x: float
    y: float
    connector_type: ConnectorType | None = None


class FloorModel(GeometryPayload):
    floor_id: str
    connectors: list[ConnectorModel] = Field(default_factory=list)


class BuildingModel(BaseModel):
    building_id: str
    meters_per_unit: float = Field(default=1.0, gt=0)
    floors: list[FloorModel] = Field(default_factory=list)


class EntranceModel(BaseModel):
    entrance_id: str
    building_id: str
    floor_id: str
    lat: float
    lng: float
    x: float
    y: float
    name: str | None = None
    accessible: bool = True


class HybridBuildRequest(BaseModel):
    buildings: list[BuildingModel] = Field(default_factory=list)
    entrances: list[EntranceModel] = Field(default_factory=list)


class HybridEndpoint(BaseModel):
    """GPS position (`lat`/`lng`) or indoor position (`building_id`, `floor_id`, `x`, `y`)."""

    lat: float | None = None
    lng: float | None = None
    building_id: str | None = None
    floor_id: str | None = None
    x: float | None = None
    y: float | None = None

    @model_validator(mode="after")
    def validate_inputs(self) -> "HybridEndpoint":
        has_geo = self.lat is not None and self.lng is not None
        has_indoor = bool(self.building_id and self.floor_id) and self.x is not None and self.y is not None
        if not (has_geo or has_indoor):
            raise ValueError("Provide either lat/lng or building_id/floor_id/x/y")
        return self

    def to_endpoint(self) -> GeoPoint | IndoorPoint:
        if self.building_id and self.floor_id and self.x is not None and self.y is not None:
            return IndoorPoint(self.building_id, self.floor_id, PlanarPoint(self.x, self.y))
        assert self.lat is not None and self.lng is not None
        return GeoPoint(self.lat, self.lng)


class HybridRouteRequest(BaseModel):
    start: HybridEndpoint
    end: HybridEndpoint
    step_free: bool = False


def _default_calibrator(settings: WayfinderSettings) -> CoordinateCalibrator:
    """Precinct calibrator: surveyed affine fit over a 4-corner fallback."""
    calibrator = CoordinateCalibrator(
        fallback=Calibration.from_corners(PRECINCT_GPS_CORNERS, PRECINCT_VIEWBOX),
        offset=PlanarPoint(settings.map_offset_x, settings.map_offset_y),
    )
    calibrator.calibrate(PRECINCT_CONTROL_POINTS)
    return calibrator


def _calibrator() -> CoordinateCalibrator:
    if STATE.calibrator is None:
        STATE.calibrator = _default_calibrator(STATE.settings)
    return STATE.calibrator


def _worker() -> RouteWorker:
    if STATE.worker is None:
        STATE.worker = RouteWorker(max_workers=STATE.settings.worker_threads)
    return STATE.worker


def _latest_graph_or_400() -> WalkableGraph:
    """Get the active walkable graph or raise 400."""
    if STATE.graph is None:
        raise HTTPException(status_code=400, detail="No walkable graph available yet")
    return STATE.graph


def _latest_hybrid_or_400() -> HybridGraph:
    if STATE.hybrid is None:
        raise HTTPException(status_code=400, detail="No hybrid graph available yet")
    return STATE.hybrid


def _endpoint_to_planar(endpoint: RouteEndpoint) -> PlanarPoint:
    if endpoint.x is not None and endpoint.y is not None:
        return PlanarPoint(endpoint.x, endpoint.y)
    assert endpoint.lat is not None and endpoint.lng is not None
    return _calibrator().project(GeoPoint(endpoint.lat, endpoint.lng))


def _install_graph(graph: WalkableGraph, summary: dict[str, Any]) -> None:
    """Swap in a new graph; the previous graph and its spatial index are dropped."""
    STATE.graph = graph
    STATE.build_summary = summary
    # The hybrid graph embeds the outdoor nodes and must be fused again.
    STATE.hybrid = None


def _build_and_install(geometry: TracedGeometry, request: GraphBuildRequest) -> dict[str, Any]:
    settings = STATE.settings
    calibration = _calibrator() if request.attach_geo else None
    result = build_graph(geometry, calibration=calibration, options=BuildOptions.from_settings(settings))
    graph = result.graph
    summary = result.summary()

    if request.max_edge_distance is not None:
        graph, prune_stats = prune_graph(graph, request.max_edge_distance)
        summary["pruned"] = prune_stats
        summary["edges"] = graph.edge_count()

    try:
        routes = [PredefinedRoute.from_dict(raw) for raw in request.predefined_routes]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed predefined route: {exc}") from exc
    if routes:
        graph, rejected = attach_predefined_routes(graph, routes, settings.predefined_endpoint_distance)
        summary["predefined_routes"] = {"kept": len(graph.predefined_routes), "rejected": rejected}

    if request.max_edge_distance is not None or routes:
        summary["validation"] = validate_graph(
            graph,
            min_recommended_nodes=BuildOptions().min_recommended_nodes,
            predefined_endpoint_distance=settings.predefined_endpoint_distance,
        )
    _install_graph(graph, summary)
    return summary


def _route_payload(graph: WalkableGraph, result: RouteResult) -> dict[str, Any]:
    calibrator = _calibrator()
    payload = result.to_dict()
    geo_route = []
    for node in result.route:
        geo = node.geo or calibrator.unproject(node.point)
        geo_route.append(geo.to_dict())
    payload["geo_route"] = geo_route
    steps = directions_for_route(graph, result.route, calibrator)
    payload["directions"] = [step.to_dict() for step in steps]
    walked_m = sum(step.distance_m for step in steps)
    payload["distance_text"] = format_distance(walked_m)
    payload["eta"] = estimate_eta(walked_m)
    return payload


def _indoor_building(model: BuildingModel) -> IndoorBuilding:
    floors: dict[str, TracedGeometry] = {}
    connectors: list[FloorConnector] = []
    for floor in model.floors:
        if floor.floor_id in floors:
            raise ValueError(f"Building {model.building_id} lists floor {floor.floor_id} twice")
        floors[floor.floor_id] = TracedGeometry.from_dict(floor.model_dump())
        for conn in floor.connectors:
            connectors.append(
                FloorConnector(
                    connector_id=conn.connector_id,
                    floor_id=floor.floor_id,
                    point=PlanarPoint(conn.x, conn.y),
                    connector_type=conn.connector_type or connector_type_for(conn.connector_id),
                )
            )
    return IndoorBuilding(
        building_id=model.building_id,
        floors=floors,
        connectors=connectors,
        meters_per_unit=model.meters_per_unit,
    )


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    worker, STATE.worker = STATE.worker, None
    if worker is not None:
        logger.info("Stopping route worker")
        worker.shutdown(wait=False)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    STATE.settings = load_settings()

    app = FastAPI(title="Wayfinder API", version="1.0.0", lifespan=_lifespan)

    raw_origins = os.getenv("WAYFINDER_CORS_ORIGINS", "*").strip()
    if raw_origins == "*":
        cors_origins = ["*"]
        allow_credentials = False
    else:
        cors_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        allow_credentials = True

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    graph_path = STATE.settings.graph_path
    if graph_path and STATE.graph is None:
        if Path(graph_path).is_file():
            graph = load_graph(graph_path)
            _install_graph(graph, {"source": graph_path, "validation": validate_graph(graph)})
        else:
            logger.warning("WAYFINDER_GRAPH_PATH %s does not exist; starting without a graph", graph_path)

    @app.get("/health")
    def health() -> dict[str, Any]:
        """Health endpoint with loaded-graph metadata."""
        return {
            "status": "ok",
            "version": app.version,
            "calibration": _calibrator().strategy.value,
            "graph_loaded": STATE.graph is not None,
            "graph_nodes": len(STATE.graph) if STATE.graph is not None else 0,
            "hybrid_loaded": STATE.hybrid is not None,
        }

    @app.get("/calibration")
    def get_calibration() -> dict[str, Any]:
        """Return the active calibration strategy, coefficients and residuals."""
        return _calibrator().status()

    @app.post("/calibration")
    def set_calibration(payload: CalibrationRequest) -> dict[str, Any]:
        """Install a new calibration; rejected fits keep the previous one."""
        calibrator = _calibrator()
        try:
            if payload.mode == "corners":
                corners = PRECINCT_GPS_CORNERS
                if payload.corners is not None:
                    c = payload.corners
                    corners = GeoCorners(
                        top_left=GeoPoint(c.top_left.lat, c.top_left.lng),
                        top_right=GeoPoint(c.top_right.lat, c.top_right.lng),
                        bottom_left=GeoPoint(c.bottom_left.lat, c.bottom_left.lng),
                        bottom_right=GeoPoint(c.bottom_right.lat, c.bottom_right.lng),
                    )
                outcome = calibrator.use_corners(corners, PRECINCT_VIEWBOX)
            elif payload.mode == "mercator":
                outcome = calibrator.use_mercator_bbox(PRECINCT_BBOX, PRECINCT_VIEWBOX)
            else:
                points = [
                    CalibrationPoint(GeoPoint(p.lat, p.lng), PlanarPoint(p.x, p.y), p.name)
                    for p in payload.control_points
                ]
                outcome = calibrator.calibrate(points)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Calibration failed: {exc}") from exc

        if not outcome.accepted:
            raise HTTPException(
                status_code=422,
                detail={"message": f"Calibration rejected: {outcome.reason}", "active": calibrator.status()},
            )
        return {"outcome": outcome.to_dict(), "calibration": calibrator.status()}

    @app.post("/project")
    def project(payload: GeoPointModel) -> dict[str, float]:
        """Map a GPS position to planar map coordinates."""
        try:
            return _calibrator().project(GeoPoint(payload.lat, payload.lng)).to_dict()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid coordinate: {exc}") from exc

    @app.post("/unproject")
    def unproject(payload: PlanarPointModel) -> dict[str, float]:
        """Map planar map coordinates to a GPS position."""
        return _calibrator().unproject(PlanarPoint(payload.x, payload.y)).to_dict()

    @app.post("/graph/build")
    async def build_graph_from_json(payload: GraphBuildRequest) -> dict[str, Any]:
        """Build and activate a walkable graph from traced geometry JSON."""
        try:
            geometry = TracedGeometry.from_dict(payload.model_dump())
            summary = await run_in_threadpool(_build_and_install, geometry, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Graph build failed: {exc}") from exc
        except HTTPException:
            raise
        except Exception as exc:  # pragma: no cover - safety net
            raise HTTPException(status_code=500, detail=f"Unexpected graph build error: {exc}") from exc
        return {"message": "Graph built successfully", **summary}

    @app.post("/graph/build-svg")
    async def build_graph_from_svg(
        file: UploadFile = File(...),
        path_layer: str = Form("Roads"),
        door_layer: str = Form("Doors"),
        room_layer: str = Form("Rooms"),
        attach_geo: bool = Form(True),
    ) -> dict[str, Any]:
        """Build and activate a walkable graph from an uploaded SVG map."""
        if not file.filename:
            raise HTTPException(status_code=400, detail="No file name provided")

        try:
            raw = await file.read()
            if not raw:
                raise ValueError("Uploaded file is empty")
            geometry = load_svg_geometry(
                raw.decode("utf-8"),
                path_layer=path_layer,
                door_layer=door_layer,
                room_layer=room_layer,
                flatten_step=STATE.settings.curve_flatten_step,
            )
            request = GraphBuildRequest(attach_geo=attach_geo)
            summary = await run_in_threadpool(_build_and_install, geometry, request)
        except (ValueError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail=f"SVG graph build failed: {exc}") from exc
        except HTTPException:
            raise
        except Exception as exc:  # pragma: no cover - safety net
            raise HTTPException(status_code=500, detail=f"Unexpected graph build error: {exc}") from exc
        return {"message": "Graph built successfully", **summary}

    @app.get("/graph")
    def get_graph() -> dict[str, Any]:
        """Return the active graph in its persisted JSON form."""
        return _latest_graph_or_400().to_dict()

    @app.get("/graph/validation")
    def get_graph_validation() -> dict[str, Any]:
        """Re-run validation on the active graph."""
        graph = _latest_graph_or_400()
        return validate_graph(graph, predefined_endpoint_distance=STATE.settings.predefined_endpoint_distance)

    @app.post("/route")
    async def route(payload: RouteRequest) -> dict[str, Any]:
        """Compute a walking route on the active graph."""
        graph = _latest_graph_or_400()
        try:
            start = _endpoint_to_planar(payload.start)
            end = _endpoint_to_planar(payload.end)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid route query: {exc}") from exc

        worker = _worker()
        ticket = worker.submit(
            payload.channel,
            find_route,
            graph,
            start,
            end,
            start_id=payload.start.place_id,
            end_id=payload.end.place_id,
            radii=STATE.settings.search_radii,
            use_index=payload.use_index,
        )
        try:
            result = await run_in_threadpool(worker.result, ticket)
        except TimeoutError as exc:
            raise HTTPException(status_code=504, detail=str(exc)) from exc
        except Exception as exc:  # pragma: no cover - safety net
            raise HTTPException(status_code=500, detail=f"Unexpected pathfinding error: {exc}") from exc

        if result is None:
            raise HTTPException(status_code=409, detail="Route request superseded by a newer request")
        if not result.found:
            raise HTTPException(
                status_code=404,
                detail={"message": "No navigable route found", "diagnostics": result.diagnostics.to_dict()},
            )
        return _route_payload(graph, result)

    @app.post("/hybrid/build")
    async def build_hybrid(payload: HybridBuildRequest) -> dict[str, Any]:
        """Build indoor graphs and fuse them with the active outdoor graph."""
        settings = STATE.settings
        try:
            indoor_graphs: dict[str, IndoorGraph] = {}
            for model in payload.buildings:
                if model.building_id in indoor_graphs:
                    raise ValueError(f"Building {model.building_id} listed twice")
                indoor_graphs[model.building_id] = await run_in_threadpool(
                    build_indoor_graph,
                    _indoor_building(model),
                    BuildOptions(
                        snap_radius=settings.snap_radius,
                        door_max_distance=settings.door_max_distance,
                        flatten_step=settings.curve_flatten_step,
                        min_recommended_nodes=0,
                    ),
                    settings.floor_change_cost,
                    settings.transition_connect_distance,
                )

            entrances = [
                BuildingEntrance(
                    entrance_id=e.entrance_id,
                    building_id=e.building_id,
                    floor_id=e.floor_id,
                    geo=GeoPoint(e.lat, e.lng),
                    point=PlanarPoint(e.x, e.y),
                    name=e.name,
                    accessible=e.accessible,
                )
                for e in payload.entrances
            ]
            options = FusionOptions(
                entrance_geo_threshold_m=settings.entrance_geo_threshold_m,
                entrance_planar_threshold=settings.entrance_planar_threshold,
                entrance_cost=settings.entrance_cost,
                mixed_space_heuristic=settings.mixed_space_heuristic,
            )
            hybrid = await run_in_threadpool(build_hybrid_graph, STATE.graph, entrances, indoor_graphs, options)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Hybrid build failed: {exc}") from exc
        except Exception as exc:  # pragma: no cover - safety net
            raise HTTPException(status_code=500, detail=f"Unexpected hybrid build error: {exc}") from exc

        STATE.indoor_graphs = indoor_graphs
        STATE.hybrid = hybrid
        return {
            "message": "Hybrid graph built successfully",
            "buildings": [g.summary() for g in indoor_graphs.values()],
            "report": hybrid.report,
        }

    @app.post("/hybrid/route")
    async def hybrid_route(payload: HybridRouteRequest) -> dict[str, Any]:
        """Compute a segmented route across outdoor and indoor spaces."""
        hybrid = _latest_hybrid_or_400()
        try:
            result = await run_in_threadpool(
                find_hybrid_route,
                hybrid,
                payload.start.to_endpoint(),
                payload.end.to_endpoint(),
                payload.step_free,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid hybrid route query: {exc}") from exc
        except Exception as exc:  # pragma: no cover - safety net
            raise HTTPException(status_code=500, detail=f"Unexpected hybrid routing error: {exc}") from exc

        if result is None:
            raise HTTPException(status_code=404, detail="No hybrid route found")
        payload_out = result.to_dict()
        payload_out["eta"] = estimate_eta(result.total_distance)
        return payload_out

    return app
