from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from .block_pos import round_half_up
from .concurrency import run_with_concurrency
from .dataset import ScopeDataset, ScopeKey, extract_dimension_from_context
from .logging_utils import log_event
from .models import (
    Bounds,
    PlatformRecord,
    Point2D,
    RouteGeometryValue,
    StationMapPayload,
    StationMapSnapshot,
    StationRecord,
    StationRouteGroup,
    StopMarker,
)
from .payload import as_json_record, read_string, to_number
from .settings import settings

if TYPE_CHECKING:
    from .stores import SnapshotStore


def extract_route_group_key(name: str | None) -> str | None:
    """``"Line 1||East|Express"`` -> ``"Line 1"``."""
    if not name:
        return None
    first = name.split("||")[0].split("|")[0].strip()
    return first or None


def merge_bounds(a: Bounds | None, b: Bounds | None) -> Bounds | None:
    if a is None:
        return b
    if b is None:
        return a
    return Bounds(
        x_min=min(a.x_min, b.x_min),
        x_max=max(a.x_max, b.x_max),
        z_min=min(a.z_min, b.z_min),
        z_max=max(a.z_max, b.z_max),
    )


def _stop_key(stop: StopMarker) -> str:
    if stop.station_id:
        return f"id:{stop.station_id}"
    return f"p:{stop.x},{stop.z}:{stop.label}"


def merge_stop_markers(existing: list[StopMarker], incoming: Sequence[StopMarker]) -> list[StopMarker]:
    seen = {_stop_key(stop) for stop in existing}
    for stop in incoming:
        key = _stop_key(stop)
        if key in seen:
            continue
        seen.add(key)
        existing.append(stop)
    return existing


def _platform_points(platform: PlatformRecord) -> list[tuple[float, float]]:
    points: list[tuple[float, float]] = []
    if platform.pos_1 is not None:
        points.append((platform.pos_1.x, platform.pos_1.z))
    if platform.pos_2 is not None:
        points.append((platform.pos_2.x, platform.pos_2.z))
    if platform.pos_1 is not None and platform.pos_2 is not None:
        points.append(
            (
                round_half_up((platform.pos_1.x + platform.pos_2.x) / 2),
                round_half_up((platform.pos_1.z + platform.pos_2.z) / 2),
            )
        )
    return points


def platforms_for_station(station: StationRecord, platforms: Sequence[PlatformRecord]) -> list[PlatformRecord]:
    """Platforms linked by station id, or lying inside the station's bounding box."""
    out: list[PlatformRecord] = []
    for platform in platforms:
        if platform.station_id == station.id:
            out.append(platform)
            continue
        if not station.has_bounds:
            continue
        min_x = min(station.x_min, station.x_max)  # type: ignore[type-var]
        max_x = max(station.x_min, station.x_max)  # type: ignore[type-var]
        min_z = min(station.z_min, station.z_max)  # type: ignore[type-var]
        max_z = max(station.z_min, station.z_max)  # type: ignore[type-var]
        if any(min_x <= x <= max_x and min_z <= z <= max_z for x, z in _platform_points(platform)):
            out.append(platform)
    return out


@dataclass
class _GroupBucket:
    key: str
    display_name: str
    color: float | None = None
    route_ids: dict[str, None] = field(default_factory=dict)
    paths: list[list[Point2D]] = field(default_factory=list)
    bounds: Bounds | None = None
    stops: list[StopMarker] = field(default_factory=list)

    def to_group(self) -> StationRouteGroup:
        return StationRouteGroup(
            key=self.key,
            display_name=self.display_name,
            color=self.color,
            route_ids=list(self.route_ids),
            paths=self.paths,
            bounds=self.bounds,
            stops=self.stops,
        )


def _select_or_create_bucket(
    group_key: str,
    buckets: list[_GroupBucket],
    route_bounds: Bounds | None,
    max_distance: float,
) -> _GroupBucket:
    if route_bounds is not None:
        rx, rz = route_bounds.center()
        max_distance_sq = max_distance * max_distance
        for bucket in buckets:
            if bucket.bounds is None:
                continue
            bx, bz = bucket.bounds.center()
            if (bx - rx) ** 2 + (bz - rz) ** 2 <= max_distance_sq:
                return bucket
    suffix = f"#{len(buckets) + 1}" if buckets else ""
    bucket = _GroupBucket(key=f"{group_key}{suffix}", display_name=group_key)
    buckets.append(bucket)
    return bucket


def route_display_index(dataset: ScopeDataset) -> tuple[dict[str, str | None], dict[str, float | None]]:
    """Route id -> (name, color), payload values first, then the row's display columns."""
    names: dict[str, str | None] = {}
    colors: dict[str, float | None] = {}
    for route_id, row in dataset.route_rows_by_id.items():
        payload = as_json_record(row.payload) or {}
        names[route_id] = read_string(payload.get("name")) or row.name
        color = to_number(payload.get("color"))
        colors[route_id] = color if color else row.color
    return names, colors


def build_station_map(
    station: StationRecord,
    *,
    scope: ScopeKey,
    dataset: ScopeDataset,
    route_geometry_by_id: dict[str, RouteGeometryValue],
    route_names: dict[str, str | None],
    route_colors: dict[str, float | None],
    max_distance: float | None = None,
) -> StationMapPayload | None:
    """Line summaries for one station, or None when no route with geometry serves it."""
    merge_distance = settings.station_merge_max_distance if max_distance is None else float(max_distance)
    station_platforms = platforms_for_station(station, dataset.platform_records)
    if not station_platforms:
        return None
    route_ids: dict[str, None] = {}
    for platform in station_platforms:
        for route_id in dataset.platform_route_ids.get(platform.id, []):
            if route_id:
                route_ids[route_id] = None
    if not route_ids:
        return None

    group_map: dict[str, list[_GroupBucket]] = {}
    for route_id in route_ids:
        group_key = extract_route_group_key(route_names.get(route_id))
        if group_key is None:
            continue
        geometry = route_geometry_by_id.get(route_id)
        if geometry is None or not geometry.paths:
            continue
        buckets = group_map.setdefault(group_key, [])
        bucket = _select_or_create_bucket(group_key, buckets, geometry.bounds, merge_distance)
        if bucket.color is None:
            bucket.color = route_colors.get(route_id)
        bucket.route_ids[route_id] = None
        bucket.paths.extend(geometry.paths)
        merge_stop_markers(bucket.stops, geometry.stops)
        bucket.bounds = merge_bounds(bucket.bounds, geometry.bounds)

    groups = [bucket.to_group() for buckets in group_map.values() for bucket in buckets]
    groups.sort(key=lambda group: group.display_name)
    return StationMapPayload(
        station_id=station.id,
        server_id=scope.server_id,
        network_variant=scope.network_variant,
        dimension=extract_dimension_from_context(scope.dimension_context),
        generated_at=int(time.time() * 1000),
        groups=groups,
    )


async def compute_station_map_snapshots(
    store: SnapshotStore,
    *,
    scope: ScopeKey,
    dataset: ScopeDataset,
    route_geometry_by_id: dict[str, RouteGeometryValue],
    fingerprint: str,
    concurrency: int | None = None,
) -> list[str]:
    """Persist one station map per served station; returns the station ids written."""
    route_names, route_colors = route_display_index(dataset)
    written: list[str] = []

    async def handle(station: StationRecord) -> None:
        try:
            payload = build_station_map(
                station,
                scope=scope,
                dataset=dataset,
                route_geometry_by_id=route_geometry_by_id,
                route_names=route_names,
                route_colors=route_colors,
            )
            if payload is None:
                return
            await store.upsert_station_map(
                StationMapSnapshot(
                    server_id=scope.server_id,
                    network_variant=scope.network_variant,
                    dimension_context=scope.dimension_context,
                    station_id=station.id,
                    source_fingerprint=fingerprint,
                    payload=payload,
                    generated_at=datetime.now(UTC),
                )
            )
            written.append(station.id)
        except Exception as e:
            log_event(
                "station_map_failed",
                level=logging.WARNING,
                scope=scope.as_key(),
                station_id=station.id,
                error=str(e),
            )

    await run_with_concurrency(
        dataset.station_records,
        concurrency if concurrency is not None else settings.snapshot_station_concurrency,
        handle,
    )
    return written
