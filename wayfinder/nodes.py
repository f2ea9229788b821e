"""Node kinds of the fused outdoor/indoor routing graph.

Each kind is its own frozen dataclass carrying only the fields that are
meaningful for it; `HybridNode` is the union of the four.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from wayfinder.calibration import GeoPoint, PlanarPoint


class NodeKind(str, Enum):
    OUTDOOR = "outdoor"
    INDOOR = "indoor"
    ENTRANCE_PORTAL = "entrance-portal"
    FLOOR_TRANSITION = "floor-transition"


class ConnectorType(str, Enum):
    STAIRS = "stairs"
    ELEVATOR = "elevator"
    ESCALATOR = "escalator"
    RAMP = "ramp"

    @property
    def step_free(self) -> bool:
        return self in (ConnectorType.ELEVATOR, ConnectorType.RAMP)


@dataclass(slots=True, frozen=True)
class OutdoorNode:
    kind: ClassVar[NodeKind] = NodeKind.OUTDOOR

    id: str
    x: float
    y: float
    geo: GeoPoint | None = None
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "kind": self.kind.value, "x": self.x, "y": self.y}
        if self.geo is not None:
            payload.update(self.geo.to_dict())
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass(slots=True, frozen=True)
class IndoorNode:
    kind: ClassVar[NodeKind] = NodeKind.INDOOR

    id: str
    building_id: str
    floor_id: str
    x: float
    y: float
    label: str | None = None
    room_id: str | None = None

    @property
    def point(self) -> PlanarPoint:
        return PlanarPoint(self.x, self.y)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "building_id": self.building_id,
            "floor_id": self.floor_id,
            "x": self.x,
            "y": self.y,
        }
        if self.label:
            payload["label"] = self.label
        if self.room_id:
            payload["room_id"] = self.room_id
        return payload


@dataclass(slots=True, frozen=True)
class FloorTransitionNode:
    kind: ClassVar[NodeKind] = NodeKind.FLOOR_TRANSITION

    id: str
    building_id: str
    floor_id: str
    x: float
    y: float
    connector_id: str
    connector_type: ConnectorType = ConnectorType.STAIRS

    @property
    def point(self) -> PlanarPoint:
        return PlanarPoint(self.x, self.y)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "building_id": self.building_id,
            "floor_id": self.floor_id,
            "x": self.x,
            "y": self.y,
            "connector_id": self.connector_id,
            "connector_type": self.connector_type.value,
        }


@dataclass(slots=True, frozen=True)
class PortalNode:
    kind: ClassVar[NodeKind] = NodeKind.ENTRANCE_PORTAL

    id: str
    entrance_id: str
    building_id: str
    floor_id: str
    geo: GeoPoint
    x: float
    y: float
    name: str | None = None
    accessible: bool = True

    @property
    def point(self) -> PlanarPoint:
        return PlanarPoint(self.x, self.y)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "entrance_id": self.entrance_id,
            "building_id": self.building_id,
            "floor_id": self.floor_id,
            "x": self.x,
            "y": self.y,
            "accessible": self.accessible,
            **self.geo.to_dict(),
        }
        if self.name:
            payload["name"] = self.name
        return payload


HybridNode = Union[OutdoorNode, IndoorNode, FloorTransitionNode, PortalNode]


def node_geo(node: HybridNode) -> GeoPoint | None:
    """GPS position of a node, if its kind has one."""
    if isinstance(node, (OutdoorNode, PortalNode)):
        return node.geo
    if isinstance(node, (IndoorNode, FloorTransitionNode)):
        return None
    raise TypeError(f"Unknown hybrid node type {type(node).__name__}")


def node_placement(node: HybridNode) -> tuple[str, str, PlanarPoint] | None:
    """`(building_id, floor_id, point)` for nodes placed on a building floor plan."""
    if isinstance(node, (IndoorNode, FloorTransitionNode, PortalNode)):
        return node.building_id, node.floor_id, node.point
    if isinstance(node, OutdoorNode):
        return None
    raise TypeError(f"Unknown hybrid node type {type(node).__name__}")
