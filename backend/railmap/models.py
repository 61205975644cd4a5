from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .block_pos import BlockPosition, extract_block_position
from .payload import (
    PLATFORM_IDS_ALIASES,
    POS_1_ALIASES,
    POS_2_ALIASES,
    ROUTE_IDS_ALIASES,
    STATION_BOUND_ALIASES,
    STATION_ID_ALIASES,
    TRANSPORT_MODE_ALIASES,
    first_present,
    normalize_id,
    normalize_id_list,
    read_string,
    to_number,
)

ScopeStatus = Literal["RUNNING", "SUCCEEDED", "FAILED"]
SnapshotStatus = Literal["READY", "FAILED"]
GeometrySource = Literal["graph", "fallback"]
ScopeOutcomeName = Literal[
    "SKIPPED_UNCHANGED",
    "SKIPPED_RUNNING",
    "SKIPPED_LOCKED",
    "SUCCEEDED",
    "FAILED",
]


def _alias_value(data: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for key in aliases:
        if key in data and data[key] is not None:
            return data[key]
    return None


class RouteRecord(BaseModel):
    """Normalized route payload. Platform ids keep their route order."""

    id: str
    name: str | None = None
    color: float | None = None
    transport_mode: str | None = None
    platform_ids: list[str] = Field(default_factory=list)
    custom_destinations: list[Any] | None = None
    route_type: str | None = None
    circular_state: str | None = None
    light_rail_route_number: str | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_payload_aliases(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        data["id"] = normalize_id(data.get("id"))
        data["name"] = read_string(data.get("name"))
        data["color"] = to_number(data.get("color"))
        data["transport_mode"] = read_string(first_present(data, TRANSPORT_MODE_ALIASES))
        data["platform_ids"] = normalize_id_list(_alias_value(data, PLATFORM_IDS_ALIASES))
        custom = data.get("custom_destinations")
        data["custom_destinations"] = custom if isinstance(custom, list) else None
        for key in ("route_type", "circular_state", "light_rail_route_number"):
            data[key] = read_string(data.get(key))
        return data


class PlatformRecord(BaseModel):
    id: str
    name: str | None = None
    color: float | None = None
    transport_mode: str | None = None
    station_id: str | None = None
    pos_1: BlockPosition | None = None
    pos_2: BlockPosition | None = None
    dwell_time: float | None = None
    route_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_payload_aliases(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        data["id"] = normalize_id(data.get("id"))
        data["name"] = read_string(data.get("name"))
        data["color"] = to_number(data.get("color"))
        data["transport_mode"] = read_string(first_present(data, TRANSPORT_MODE_ALIASES))
        data["station_id"] = normalize_id(_alias_value(data, STATION_ID_ALIASES))
        data["pos_1"] = extract_block_position(_alias_value(data, POS_1_ALIASES))
        data["pos_2"] = extract_block_position(_alias_value(data, POS_2_ALIASES))
        data["dwell_time"] = to_number(data.get("dwell_time"))
        data["route_ids"] = normalize_id_list(_alias_value(data, ROUTE_IDS_ALIASES))
        return data


class StationRecord(BaseModel):
    id: str
    name: str | None = None
    color: float | None = None
    transport_mode: str | None = None
    x_min: float | None = None
    x_max: float | None = None
    z_min: float | None = None
    z_max: float | None = None
    zone: float | None = None

    @model_validator(mode="before")
    @classmethod
    def accept_payload_aliases(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        data = dict(value)
        data["id"] = normalize_id(data.get("id"))
        data["name"] = read_string(data.get("name"))
        data["color"] = to_number(data.get("color"))
        data["transport_mode"] = read_string(first_present(data, TRANSPORT_MODE_ALIASES))
        for field, aliases in STATION_BOUND_ALIASES.items():
            data[field] = to_number(_alias_value(data, aliases))
        data["zone"] = to_number(data.get("zone"))
        return data

    @property
    def has_bounds(self) -> bool:
        return None not in (self.x_min, self.x_max, self.z_min, self.z_max)


class Point2D(BaseModel):
    x: float
    z: float


class Bounds(BaseModel):
    x_min: float
    x_max: float
    z_min: float
    z_max: float

    def center(self) -> tuple[float, float]:
        return (self.x_min + self.x_max) / 2.0, (self.z_min + self.z_max) / 2.0


class StopMarker(BaseModel):
    station_id: str | None = None
    x: float
    z: float
    label: str


class RouteGeometryValue(BaseModel):
    """Computed geometry for one route, before it is staged as a snapshot row."""

    source: GeometrySource
    paths: list[list[Point2D]] = Field(default_factory=list)
    bounds: Bounds | None = None
    stops: list[StopMarker] = Field(default_factory=list)
    path_nodes3d: list[dict[str, int]] | None = None
    path_edges: list[dict[str, Any]] | None = None

    @property
    def point_count(self) -> int:
        return sum(len(path) for path in self.paths)


class RouteGeometrySnapshot(BaseModel):
    server_id: str
    network_variant: str
    dimension_context: str
    route_id: str
    status: SnapshotStatus
    error_message: str | None = None
    source: GeometrySource | None = None
    paths: list[list[Point2D]] = Field(default_factory=list)
    bounds: Bounds | None = None
    stops: list[StopMarker] = Field(default_factory=list)
    path_nodes3d: list[dict[str, int]] | None = None
    path_edges: list[dict[str, Any]] | None = None
    source_fingerprint: str
    generated_at: datetime

    def summary(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "error_message": self.error_message,
            "generated_at": self.generated_at.isoformat(),
            "source_fingerprint": self.source_fingerprint,
            "geometry_path_count": len(self.paths),
            "geometry_point_count": sum(len(path) for path in self.paths),
            "stop_count": len(self.stops),
            "path_node_count": len(self.path_nodes3d or []),
            "path_edge_count": len(self.path_edges or []),
            "bounds": self.bounds.model_dump() if self.bounds else None,
        }


class StationRouteGroup(BaseModel):
    key: str
    display_name: str
    color: float | None = None
    route_ids: list[str] = Field(default_factory=list)
    paths: list[list[Point2D]] = Field(default_factory=list)
    bounds: Bounds | None = None
    stops: list[StopMarker] = Field(default_factory=list)


class StationMapPayload(BaseModel):
    station_id: str
    server_id: str
    network_variant: str
    dimension: str | None = None
    generated_at: int
    groups: list[StationRouteGroup] = Field(default_factory=list)


class StationMapSnapshot(BaseModel):
    server_id: str
    network_variant: str
    dimension_context: str
    station_id: str
    source_fingerprint: str
    payload: StationMapPayload
    generated_at: datetime


class ComputeScopeRow(BaseModel):
    server_id: str
    network_variant: str
    dimension_context: str
    fingerprint: str
    status: ScopeStatus
    message: str | None = None
    computed_at: datetime | None = None
    updated_at: datetime | None = None


class RouteCalculateRow(BaseModel):
    """Persisted diagnostics for a route whose geometry came from the fallback path."""

    server_id: str
    network_variant: str
    dimension_context: str
    dimension: str | None = None
    route_id: str
    status: SnapshotStatus
    error_message: str | None = None
    source_fingerprint: str
    path_source: GeometrySource = "fallback"
    persisted_snapshot: bool = True
    report: dict[str, Any] = Field(default_factory=dict)
    snapshot: dict[str, Any] = Field(default_factory=dict)
    dataset: dict[str, int] = Field(default_factory=dict)
    fallback_diagnostics: dict[str, Any] = Field(default_factory=dict)
    curve_diagnostics: dict[str, int] = Field(default_factory=dict)
