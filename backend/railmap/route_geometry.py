from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .block_pos import round_half_up
from .concurrency import run_with_concurrency
from .dataset import ScopeDataset, ScopeKey
from .logging_utils import log_event
from .models import (
    Bounds,
    GeometrySource,
    PlatformRecord,
    Point2D,
    RouteGeometrySnapshot,
    RouteGeometryValue,
    RouteRecord,
    StationRecord,
    StopMarker,
)
from .platform_snap import extract_platform_nodes, include_platform_segments, snap_platform_nodes
from .rail_graph import RailGraph
from .route_finder import RouteFinder
from .settings import settings

if TYPE_CHECKING:
    from .stores import SnapshotStore


def compute_bounds(paths: Iterable[Iterable[Point2D]]) -> Bounds | None:
    xs: list[float] = []
    zs: list[float] = []
    for path in paths:
        for point in path:
            if not (math.isfinite(point.x) and math.isfinite(point.z)):
                continue
            xs.append(point.x)
            zs.append(point.z)
    if not xs:
        return None
    return Bounds(x_min=min(xs), x_max=max(xs), z_min=min(zs), z_max=max(zs))


def platform_center(platform: PlatformRecord) -> Point2D | None:
    if platform.pos_1 is None or platform.pos_2 is None:
        return None
    return Point2D(
        x=round_half_up((platform.pos_1.x + platform.pos_2.x) / 2),
        z=round_half_up((platform.pos_1.z + platform.pos_2.z) / 2),
    )


def station_center(station: StationRecord) -> Point2D | None:
    if not station.has_bounds:
        return None
    return Point2D(
        x=round_half_up((station.x_min + station.x_max) / 2),  # type: ignore[operator]
        z=round_half_up((station.z_min + station.z_max) / 2),  # type: ignore[operator]
    )


def resolve_route_platforms(route: RouteRecord, platform_map: dict[str, PlatformRecord]) -> list[PlatformRecord]:
    return [platform_map[pid] for pid in route.platform_ids if pid in platform_map]


def build_route_stops(
    route: RouteRecord,
    platform_map: dict[str, PlatformRecord],
    station_map: dict[str, StationRecord],
) -> list[StopMarker]:
    stops: list[StopMarker] = []
    for platform_id in route.platform_ids:
        platform = platform_map.get(platform_id)
        if platform is None:
            continue
        station = station_map.get(platform.station_id) if platform.station_id else None
        position = platform_center(platform) or (station_center(station) if station else None)
        if position is None:
            continue
        label = ((station.name if station else None) or platform.name or platform_id or "").split("|")[0].strip()
        if not label:
            continue
        stops.append(
            StopMarker(
                station_id=station.id if station else None,
                x=position.x,
                z=position.z,
                label=label,
            )
        )
    return stops


def build_fallback_geometry(
    platforms: Sequence[PlatformRecord],
    station_map: dict[str, StationRecord],
    stations: Sequence[StationRecord],
) -> list[Point2D]:
    """Platform centers, else station centers; every station center when nothing resolves."""
    points: list[Point2D] = []
    for platform in platforms:
        center = platform_center(platform)
        if center is not None:
            points.append(center)
            continue
        station = station_map.get(platform.station_id) if platform.station_id else None
        if station is not None:
            fallback = station_center(station)
            if fallback is not None:
                points.append(fallback)
    if not points:
        for station in stations:
            center = station_center(station)
            if center is not None:
                points.append(center)
    return points


@dataclass
class GraphGeometry:
    points: list[Point2D]
    path_nodes3d: list[dict[str, int]]
    path_edges: list[dict[str, Any]] | None


def build_geometry_from_graph(
    graph: RailGraph,
    platforms: Sequence[PlatformRecord],
    finder: RouteFinder | None = None,
) -> GraphGeometry | None:
    raw_nodes = extract_platform_nodes(platforms)
    if not raw_nodes or not graph.node_count:
        return None
    snapped = snap_platform_nodes(raw_nodes, graph)
    if not snapped.nodes:
        return None
    finder = finder or RouteFinder(graph)
    result = finder.find_route(snapped.nodes)
    if result is None or not result.points:
        return None
    segments = include_platform_segments(result.segments, platforms)
    return GraphGeometry(
        points=[Point2D(x=p.x, z=p.z) for p in result.points],
        path_nodes3d=[p.as_dict() for p in result.points],
        path_edges=[segment.as_dict() for segment in segments] or None,
    )


def compute_route_geometry(
    route: RouteRecord,
    *,
    graph: RailGraph | None,
    dataset: ScopeDataset,
    finder: RouteFinder | None = None,
) -> RouteGeometryValue | None:
    """Geometry for one route, or None when none of its platforms resolve."""
    platforms = resolve_route_platforms(route, dataset.platform_map)
    if not platforms:
        return None

    source: GeometrySource = "fallback"
    points: list[Point2D] = []
    path_nodes3d: list[dict[str, int]] | None = None
    path_edges: list[dict[str, Any]] | None = None
    if graph is not None:
        from_graph = build_geometry_from_graph(graph, platforms, finder)
        if from_graph is not None and len(from_graph.points) >= 2:
            source = "graph"
            points = from_graph.points
            path_nodes3d = from_graph.path_nodes3d
            path_edges = from_graph.path_edges
    if source == "fallback":
        points = build_fallback_geometry(platforms, dataset.station_map, dataset.station_records)

    paths = [points] if points else []
    return RouteGeometryValue(
        source=source,
        paths=paths,
        bounds=compute_bounds(paths),
        stops=build_route_stops(route, dataset.platform_map, dataset.station_map),
        path_nodes3d=path_nodes3d,
        path_edges=path_edges,
    )


def stage_route_snapshot(
    scope: ScopeKey,
    route_id: str,
    fingerprint: str,
    value: RouteGeometryValue | None = None,
    *,
    error_message: str | None = None,
) -> RouteGeometrySnapshot:
    base: dict[str, Any] = {
        "server_id": scope.server_id,
        "network_variant": scope.network_variant,
        "dimension_context": scope.dimension_context,
        "route_id": route_id,
        "source_fingerprint": fingerprint,
        "generated_at": datetime.now(UTC),
    }
    if value is None:
        return RouteGeometrySnapshot(status="FAILED", error_message=error_message, **base)
    return RouteGeometrySnapshot(
        status="READY",
        source=value.source,
        paths=value.paths,
        bounds=value.bounds,
        stops=value.stops,
        path_nodes3d=value.path_nodes3d,
        path_edges=value.path_edges,
        **base,
    )


@dataclass
class RouteGeometryBatch:
    route_geometry_by_id: dict[str, RouteGeometryValue] = field(default_factory=dict)
    fallback_route_ids: list[str] = field(default_factory=list)
    failed_route_ids: list[str] = field(default_factory=list)


async def _commit_failed(
    store: SnapshotStore,
    scope: ScopeKey,
    route_id: str,
    fingerprint: str,
    error: Exception,
) -> None:
    log_event(
        "route_geometry_failed",
        level=logging.WARNING,
        scope=scope.as_key(),
        route_id=route_id,
        error=str(error),
    )
    try:
        await store.upsert_route_geometry(stage_route_snapshot(scope, route_id, fingerprint, error_message=str(error)))
    except Exception as persist_error:
        log_event(
            "route_geometry_failed",
            level=logging.ERROR,
            scope=scope.as_key(),
            route_id=route_id,
            error=str(persist_error),
            stage="persist_failed_row",
        )


async def compute_route_geometry_snapshots(
    store: SnapshotStore,
    *,
    scope: ScopeKey,
    graph: RailGraph | None,
    dataset: ScopeDataset,
    fingerprint: str,
    concurrency: int | None = None,
) -> RouteGeometryBatch:
    batch = RouteGeometryBatch()
    # one finder per scope so the reuse bonus carries across routes
    finder = RouteFinder(graph) if graph is not None else None

    async def handle(route: RouteRecord) -> None:
        try:
            value = compute_route_geometry(route, graph=graph, dataset=dataset, finder=finder)
            if value is None:
                return
            await store.upsert_route_geometry(stage_route_snapshot(scope, route.id, fingerprint, value))
        except Exception as e:
            batch.failed_route_ids.append(route.id)
            await _commit_failed(store, scope, route.id, fingerprint, e)
            return
        batch.route_geometry_by_id[route.id] = value
        if value.source == "fallback":
            batch.fallback_route_ids.append(route.id)

    await run_with_concurrency(
        dataset.route_records,
        concurrency if concurrency is not None else settings.snapshot_route_concurrency,
        handle,
    )
    return batch


@dataclass
class RouteComputeReport:
    route_id: str
    status: str
    error_message: str | None = None
    source: GeometrySource | None = None
    persisted: bool = False
    point_count: int = 0
    path_node_count: int = 0
    path_edge_count: int = 0
    stop_count: int = 0
    bounds: Bounds | None = None


async def compute_route_geometry_snapshot_for_route(
    store: SnapshotStore,
    *,
    scope: ScopeKey,
    graph: RailGraph | None,
    dataset: ScopeDataset,
    fingerprint: str,
    route: RouteRecord,
) -> RouteComputeReport:
    try:
        value = compute_route_geometry(route, graph=graph, dataset=dataset)
    except Exception as e:
        await _commit_failed(store, scope, route.id, fingerprint, e)
        return RouteComputeReport(route_id=route.id, status="FAILED", error_message=str(e), persisted=True)
    if value is None:
        return RouteComputeReport(
            route_id=route.id,
            status="SKIPPED",
            error_message="route has no resolvable platforms",
        )
    snapshot = stage_route_snapshot(scope, route.id, fingerprint, value)
    try:
        await store.upsert_route_geometry(snapshot)
        persisted = True
    except Exception as e:
        log_event(
            "route_geometry_failed",
            level=logging.ERROR,
            scope=scope.as_key(),
            route_id=route.id,
            error=str(e),
            stage="persist",
        )
        persisted = False
    return RouteComputeReport(
        route_id=route.id,
        status=snapshot.status,
        source=value.source,
        persisted=persisted,
        point_count=value.point_count,
        path_node_count=len(value.path_nodes3d or []),
        path_edge_count=len(value.path_edges or []),
        stop_count=len(value.stops),
        bounds=value.bounds,
    )
