from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from .models import PlatformRecord, RouteRecord, StationRecord
from .payload import as_json_record, normalize_id, normalize_id_list, read_string, to_number

if TYPE_CHECKING:
    from .stores import SourceStore

SourceKind = Literal["routes", "platforms", "stations", "rails"]
SOURCE_KINDS: tuple[SourceKind, ...] = ("routes", "platforms", "stations", "rails")

# network variant -> dimension context prefix
DIMENSION_PREFIXES: dict[str, str] = {
    "MTR": "mtr",
}


@dataclass(frozen=True)
class ScopeKey:
    server_id: str
    network_variant: str
    dimension_context: str

    def as_key(self) -> str:
        return f"{self.server_id}|{self.network_variant}|{self.dimension_context}"


@dataclass(frozen=True)
class SourceRow:
    """One raw entity row as synced from the game server."""

    entity_id: str
    payload: Any
    dimension_context: str = ""
    name: str | None = None
    color: float | None = None
    transport_mode: str | None = None
    updated_at: datetime | None = None


# Track rows carry no denormalized display columns.
RailRow = SourceRow


@dataclass
class ScopeDataset:
    route_records: list[RouteRecord] = field(default_factory=list)
    route_rows_by_id: dict[str, SourceRow] = field(default_factory=dict)
    platform_records: list[PlatformRecord] = field(default_factory=list)
    platform_map: dict[str, PlatformRecord] = field(default_factory=dict)
    platform_route_ids: dict[str, list[str]] = field(default_factory=dict)
    station_records: list[StationRecord] = field(default_factory=list)
    station_map: dict[str, StationRecord] = field(default_factory=dict)
    rails: list[RailRow] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "route_count": len(self.route_records),
            "platform_count": len(self.platform_records),
            "station_count": len(self.station_records),
            "rail_count": len(self.rails),
        }


def extract_dimension_from_context(dimension_context: str | None) -> str | None:
    """``mtr/minecraft/overworld`` -> ``minecraft:overworld``."""
    segments = [part for part in (dimension_context or "").split("/") if part]
    if len(segments) < 2:
        return None
    return f"{segments[-2]}:{segments[-1]}"


def build_dimension_context(dimension: str | None, network_variant: str) -> str | None:
    if not dimension:
        return None
    namespace, _, value = dimension.partition(":")
    if not namespace or not value:
        return None
    prefix = DIMENSION_PREFIXES.get(network_variant.upper(), network_variant.lower())
    return f"{prefix}/{namespace}/{value}"


def build_route_record(row: SourceRow) -> RouteRecord | None:
    payload = as_json_record(row.payload)
    if payload is None:
        return None
    data = dict(payload)
    data["id"] = normalize_id(payload.get("id")) or row.entity_id
    data["name"] = read_string(payload.get("name")) or row.name
    color = to_number(payload.get("color"))
    data["color"] = color if color is not None else row.color
    return RouteRecord.model_validate(data)


def build_platform_record(row: SourceRow) -> PlatformRecord | None:
    payload = as_json_record(row.payload)
    if payload is None:
        return None
    data = dict(payload)
    data["id"] = normalize_id(payload.get("id")) or row.entity_id
    data["name"] = read_string(payload.get("name")) or row.name
    if read_string(payload.get("transport_mode")) is None and read_string(payload.get("transportMode")) is None:
        data["transport_mode"] = row.transport_mode
    return PlatformRecord.model_validate(data)


def build_station_record(row: SourceRow) -> StationRecord | None:
    payload = as_json_record(row.payload)
    if payload is None:
        return None
    data = dict(payload)
    data["id"] = normalize_id(payload.get("id")) or row.entity_id
    data["name"] = read_string(payload.get("name")) or row.name
    return StationRecord.model_validate(data)


def build_platform_route_ids(
    platform_records: list[PlatformRecord],
    route_records: list[RouteRecord],
) -> dict[str, list[str]]:
    """Platform id -> serving route ids.

    Declared platform route lists win; when any platform declares none, every
    route's platform list is cross-indexed into the mapping as well.
    """
    mapping: dict[str, dict[str, None]] = {}
    for platform in platform_records:
        route_ids = normalize_id_list(platform.route_ids)
        if route_ids:
            mapping[platform.id] = dict.fromkeys(route_ids)
    needs_fallback = any(not mapping.get(platform.id) for platform in platform_records)
    if needs_fallback:
        for route in route_records:
            for platform_id in route.platform_ids:
                mapping.setdefault(platform_id, {})[route.id] = None
    return {platform_id: list(route_ids) for platform_id, route_ids in mapping.items()}


async def load_scope_dataset(source: SourceStore, scope: ScopeKey) -> ScopeDataset:
    route_rows = await source.fetch_rows(scope, "routes")
    platform_rows = await source.fetch_rows(scope, "platforms")
    station_rows = await source.fetch_rows(scope, "stations")
    rail_rows = await source.fetch_rows(scope, "rails")

    dataset = ScopeDataset(rails=list(rail_rows))
    for row in station_rows:
        station = build_station_record(row)
        if station is None:
            continue
        dataset.station_records.append(station)
        dataset.station_map.setdefault(station.id, station)

    for row in platform_rows:
        platform = build_platform_record(row)
        if platform is None:
            continue
        dataset.platform_records.append(platform)
        dataset.platform_map[platform.id] = platform

    for row in route_rows:
        route = build_route_record(row)
        if route is None:
            continue
        dataset.route_records.append(route)
        dataset.route_rows_by_id[route.id] = row

    dataset.platform_route_ids = build_platform_route_ids(
        dataset.platform_records,
        dataset.route_records,
    )
    return dataset
