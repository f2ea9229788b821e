"""Pytest global fixtures and test isolation hooks."""

from __future__ import annotations

from typing import Any

import pytest

from wayfinder.api import STATE
from wayfinder.config import WayfinderSettings


@pytest.fixture(autouse=True)
def reset_wayfinder_state() -> None:
    """Reset in-memory API state before each test."""
    if STATE.worker is not None:
        STATE.worker.shutdown(wait=False)
    STATE.settings = WayfinderSettings()
    STATE.calibrator = None
    STATE.graph = None
    STATE.build_summary = None
    STATE.indoor_graphs = {}
    STATE.hybrid = None
    STATE.worker = None


@pytest.fixture()
def street_payload() -> dict[str, Any]:
    """Small traced precinct: three joined streets, two doors and a detached pier.

    Planar layout (y grows downwards):
        George St   (100,100) -> (100,300) -> (100,500)
        Market St   (100,300) -> (400,300)
        Bathurst St (400,300) -> (400,600)
        Pier        (600,1000) -> (650,1000), not connected
    """
    return {
        "paths": [
            {"kind": "polyline", "points": [[100, 100], [100, 300], [100, 500]], "label": "George St"},
            {"kind": "line", "points": [[100, 300], [400, 300]], "label": "Market St"},
            {"kind": "polyline", "points": [{"x": 400, "y": 300}, {"x": 400, "y": 600}], "label": "Bathurst St"},
            {"kind": "line", "x1": 600, "y1": 1000, "x2": 650, "y2": 1000, "label": "Pier"},
        ],
        "doors": [
            {"id": "library-door", "room_id": "library", "points": [[395, 610], [405, 610]]},
            {"id": "cafe-door", "points": [[90, 95], [90, 105]]},
        ],
        "rooms": [
            {"id": "cafe", "name": "Corner Cafe", "points": [[60, 80], [90, 80], [90, 120], [60, 120]]},
        ],
    }
