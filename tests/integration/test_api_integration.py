"""Integration tests for graph building and routing endpoints."""

from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

from wayfinder.api import create_app

PRECINCT_SVG = b"""<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 726.77 1643.6">
  <g id="Roads">
    <polyline points="100,100 100,300 100,500" data-street="George St"/>
    <path d="M 100 300 H 400 V 600" data-street="Market St"/>
  </g>
  <g id="Doors">
    <line id="library-door" data-room="library" x1="395" y1="610" x2="405" y2="610"/>
  </g>
</svg>
"""


def _client_with_graph(payload: dict[str, Any]) -> TestClient:
    client = TestClient(create_app())
    res = client.post("/graph/build", json=payload)
    assert res.status_code == 200
    return client


def test_build_graph_returns_summary(street_payload: dict[str, Any]) -> None:
    """POST /graph/build should report node counts, doors and validation."""
    client = TestClient(create_app())
    res = client.post("/graph/build", json=street_payload)

    assert res.status_code == 200
    body = res.json()
    assert body["message"] == "Graph built successfully"
    assert body["nodes"] == 9
    assert body["door_nodes"] == 2
    assert body["isolated_doors"] == []
    assert body["validation"]["summary"]["components"] == 2

    health = client.get("/health").json()
    assert health["graph_loaded"] is True
    assert health["graph_nodes"] == 9


def test_route_by_planar_coordinates(street_payload: dict[str, Any]) -> None:
    """POST /route returns nodes, GPS polyline, streets and directions."""
    client = _client_with_graph(street_payload)
    res = client.post("/route", json={"start": {"x": 92, "y": 100}, "end": {"x": 400, "y": 612}})

    assert res.status_code == 200
    body = res.json()
    assert body["found"] is True
    assert body["diagnostics"]["strategy"] == "astar"
    assert body["diagnostics"]["total_distance"] == 820.0
    assert body["streets"] == ["cafe entrance", "George St", "Market St", "Bathurst St", "library entrance"]
    assert len(body["geo_route"]) == len(body["route"])
    assert body["directions"][0]["instruction"].startswith("Exit cafe")
    assert body["directions"][-1]["instruction"] == "Arrive at library"
    assert body["distance_text"]
    assert body["eta"]


def test_route_by_gps_coordinates(street_payload: dict[str, Any]) -> None:
    """GPS endpoints are projected onto the map before routing."""
    client = _client_with_graph(street_payload)
    nodes = {node["id"]: node for node in client.get("/graph").json()["nodes"]}
    start, end = nodes["n_00000"], nodes["door_library-door"]

    res = client.post(
        "/route",
        json={
            "start": {"lat": start["lat"], "lng": start["lng"]},
            "end": {"lat": end["lat"], "lng": end["lng"]},
        },
    )

    assert res.status_code == 200
    route_ids = [node["id"] for node in res.json()["route"]]
    assert route_ids[0] == "n_00000"
    assert route_ids[-1] == "door_library-door"


def test_route_between_components_returns_404(street_payload: dict[str, Any]) -> None:
    """Endpoints in disconnected components yield 404 with diagnostics."""
    client = _client_with_graph(street_payload)
    res = client.post("/route", json={"start": {"x": 100, "y": 100}, "end": {"x": 600, "y": 1000}})

    assert res.status_code == 404
    detail = res.json()["detail"]
    assert detail["message"] == "No navigable route found"
    assert detail["diagnostics"]["failure"] == "disconnected"


def test_predefined_routes_are_validated_and_preferred(street_payload: dict[str, Any]) -> None:
    """Resolvable predefined routes are kept and win for matching place ids."""
    payload = {
        **street_payload,
        "predefined_routes": [
            {
                "from_id": "town_hall",
                "to_id": "library",
                "path": [{"x": 100, "y": 100}, {"x": 100, "y": 300}, {"x": 400, "y": 300}, {"x": 400, "y": 600}],
                "streets": ["George St", "Market St", "Bathurst St"],
            },
            {
                "from_id": "town_hall",
                "to_id": "pier",
                "path": [{"x": 100, "y": 100}, {"x": 600, "y": 1000}],
            },
        ],
    }
    client = TestClient(create_app())
    build = client.post("/graph/build", json=payload).json()

    assert build["predefined_routes"]["kept"] == 1
    assert [r["route"] for r in build["predefined_routes"]["rejected"]] == ["town_hall->pier"]

    res = client.post(
        "/route",
        json={
            "start": {"x": 400, "y": 600, "place_id": "library"},
            "end": {"x": 100, "y": 100, "place_id": "town_hall"},
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["diagnostics"]["strategy"] == "predefined"
    assert body["streets"] == ["Bathurst St", "Market St", "George St"]
    assert body["route"][0]["x"] == 400.0
    assert len(body["geo_route"]) == 4


def test_build_with_edge_limit_keeps_traced_streets(street_payload: dict[str, Any]) -> None:
    """Traced street edges longer than `max_edge_distance` stay routable."""
    client = TestClient(create_app())
    body = client.post("/graph/build", json={**street_payload, "max_edge_distance": 250}).json()

    assert body["pruned"]["too_long"] == 0
    assert body["edges"] == 14

    res = client.post("/route", json={"start": {"x": 100, "y": 100}, "end": {"x": 400, "y": 600}})
    assert res.status_code == 200
    assert res.json()["found"] is True


def test_graph_and_validation_endpoints(street_payload: dict[str, Any]) -> None:
    """The active graph can be fetched and re-validated."""
    client = _client_with_graph(street_payload)

    graph = client.get("/graph").json()
    assert len(graph["nodes"]) == 9
    assert all("lat" in node for node in graph["nodes"])

    report = client.get("/graph/validation").json()
    assert report["ok"] is False
    assert any(issue["kind"] == "fragmented" for issue in report["issues"])


def test_build_graph_from_svg_upload() -> None:
    """POST /graph/build-svg traces the uploaded map's layers."""
    client = TestClient(create_app())
    files = {"file": ("precinct.svg", PRECINCT_SVG, "image/svg+xml")}
    res = client.post("/graph/build-svg", files=files)

    assert res.status_code == 200
    body = res.json()
    assert body["nodes"] == 6
    assert body["door_nodes"] == 1

    route = client.post("/route", json={"start": {"x": 100, "y": 500}, "end": {"x": 400, "y": 612}})
    assert route.status_code == 200
    assert route.json()["route"][-1]["id"] == "door_library-door"


def test_build_graph_from_invalid_svg_returns_400() -> None:
    """Malformed or empty uploads are rejected."""
    client = TestClient(create_app())

    bad = client.post("/graph/build-svg", files={"file": ("bad.svg", b"<svg><g></svg>", "image/svg+xml")})
    assert bad.status_code == 400
    assert "SVG graph build failed" in bad.json()["detail"]

    empty = client.post("/graph/build-svg", files={"file": ("empty.svg", b"", "image/svg+xml")})
    assert empty.status_code == 400


def test_rebuilding_graph_drops_hybrid_graph(street_payload: dict[str, Any]) -> None:
    """Installing a new outdoor graph invalidates the fused graph."""
    client = _client_with_graph(street_payload)
    assert client.post("/hybrid/build", json={"buildings": [], "entrances": []}).status_code == 200
    assert client.get("/health").json()["hybrid_loaded"] is True

    client.post("/graph/build", json=street_payload)
    assert client.get("/health").json()["hybrid_loaded"] is False
