from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from .compute_errors import ComputeError, ScopeClaimConflict
from .dataset import (
    ScopeDataset,
    ScopeKey,
    build_dimension_context,
    extract_dimension_from_context,
    load_scope_dataset,
)
from .diagnostics import (
    RailDiagnosticsCache,
    RailDiagnosticsEntry,
    build_curve_diagnostics,
    build_fallback_diagnostics,
    build_rail_diagnostics,
    paginate_rail_diagnostics,
)
from .fingerprint import compute_scope_fingerprint
from .logging_utils import log_event
from .models import RouteCalculateRow, RouteGeometrySnapshot, ScopeOutcomeName
from .rail_graph import RailGraph, build_rail_graph
from .route_geometry import compute_route_geometry_snapshot_for_route, compute_route_geometry_snapshots
from .settings import settings
from .station_map import compute_station_map_snapshots
from .stores import SnapshotStore, SourceStore


@dataclass(frozen=True)
class ScopeOutcome:
    outcome: ScopeOutcomeName
    dimension_context: str
    fingerprint: str
    message: str | None = None


def normalize_network_variant(value: str | None) -> str:
    return str(value or "").strip().upper() or "MTR"


def _summary_key(outcome: ScopeOutcomeName) -> str:
    return outcome.lower()


class RailwaySnapshotService:
    """Incremental per-scope snapshot computation plus the single-route debug path."""

    def __init__(
        self,
        source: SourceStore,
        store: SnapshotStore,
        *,
        cache: RailDiagnosticsCache | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.cache = cache if cache is not None else RailDiagnosticsCache()

    async def list_dimension_contexts(self, server_id: str, network_variant: str) -> list[str]:
        contexts = await self.source.list_dimension_contexts(server_id, network_variant)
        if contexts:
            return contexts
        return await self.source.list_rail_contexts(server_id, network_variant)

    async def compute_all_for_server(self, server_id: str, network_variant: str) -> dict[str, Any]:
        network_variant = normalize_network_variant(network_variant)
        contexts = await self.list_dimension_contexts(server_id, network_variant)
        summary: dict[str, Any] = {
            "server_id": server_id,
            "network_variant": network_variant,
            "total": len(contexts),
            "succeeded": 0,
            "failed": 0,
            "skipped_unchanged": 0,
            "skipped_running": 0,
            "skipped_locked": 0,
        }
        log_event("server_compute_started", server_id=server_id, network_variant=network_variant, scopes=len(contexts))
        # scopes run one at a time
        for dimension_context in contexts:
            result = await self.compute_scope(ScopeKey(server_id, network_variant, dimension_context))
            summary[_summary_key(result.outcome)] += 1
        log_event("server_compute_finished", **summary)
        return summary

    async def compute_scope(self, scope: ScopeKey) -> ScopeOutcome:
        fingerprint = await compute_scope_fingerprint(self.source, scope)
        existing = await self.store.get_scope(scope)

        if existing is not None and existing.fingerprint == fingerprint and existing.status == "SUCCEEDED":
            log_event("scope_fingerprint_unchanged", scope=scope.as_key(), fingerprint=fingerprint)
            return ScopeOutcome("SKIPPED_UNCHANGED", scope.dimension_context, fingerprint)

        if existing is not None and existing.status == "RUNNING":
            log_event("scope_compute_skipped", scope=scope.as_key(), outcome="SKIPPED_RUNNING")
            return ScopeOutcome("SKIPPED_RUNNING", scope.dimension_context, fingerprint)

        claimed = await self.store.claim_scope(scope, fingerprint)
        if claimed == 0:
            if existing is not None:
                log_event("scope_compute_skipped", scope=scope.as_key(), outcome="SKIPPED_LOCKED")
                return ScopeOutcome("SKIPPED_LOCKED", scope.dimension_context, fingerprint)
            try:
                await self.store.insert_scope(scope, fingerprint)
            except ScopeClaimConflict:
                log_event("scope_compute_skipped", scope=scope.as_key(), outcome="SKIPPED_LOCKED")
                return ScopeOutcome("SKIPPED_LOCKED", scope.dimension_context, fingerprint)

        log_event("scope_compute_started", scope=scope.as_key(), fingerprint=fingerprint)
        started = time.perf_counter()
        try:
            dataset = await load_scope_dataset(self.source, scope)
            graph = build_rail_graph(dataset.rails)
            batch = await compute_route_geometry_snapshots(
                self.store,
                scope=scope,
                graph=graph,
                dataset=dataset,
                fingerprint=fingerprint,
                concurrency=settings.snapshot_route_concurrency,
            )
            await compute_station_map_snapshots(
                self.store,
                scope=scope,
                dataset=dataset,
                route_geometry_by_id=batch.route_geometry_by_id,
                fingerprint=fingerprint,
                concurrency=settings.snapshot_station_concurrency,
            )
            await self._persist_fallback_route_calculates(
                scope=scope,
                dataset=dataset,
                graph=graph,
                fingerprint=fingerprint,
                fallback_route_ids=batch.fallback_route_ids,
            )
            await self.store.finish_scope(scope, "SUCCEEDED")
        except Exception as e:
            message = str(e) or type(e).__name__
            await self.store.finish_scope(scope, "FAILED", message)
            log_event("scope_compute_failed", level=logging.ERROR, scope=scope.as_key(), error=message)
            return ScopeOutcome("FAILED", scope.dimension_context, fingerprint, message)

        log_event(
            "scope_compute_succeeded",
            scope=scope.as_key(),
            fingerprint=fingerprint,
            route_count=len(dataset.route_records),
            fallback_route_count=len(batch.fallback_route_ids),
            failed_route_count=len(batch.failed_route_ids),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return ScopeOutcome("SUCCEEDED", scope.dimension_context, fingerprint)

    async def _resolve_dimension(self, scope: ScopeKey) -> str | None:
        return await self.source.resolve_dimension(scope) or extract_dimension_from_context(scope.dimension_context)

    async def _persist_fallback_route_calculates(
        self,
        *,
        scope: ScopeKey,
        dataset: ScopeDataset,
        graph: RailGraph | None,
        fingerprint: str,
        fallback_route_ids: list[str],
    ) -> None:
        if not fallback_route_ids:
            await self.store.delete_route_calculates(scope)
            return

        dimension = await self._resolve_dimension(scope)
        route_by_id = {route.id: route for route in dataset.route_records}
        wanted = set(fallback_route_ids)
        snapshots = {
            snapshot.route_id: snapshot
            for snapshot in await self.store.list_route_geometries(scope)
            if snapshot.route_id in wanted
        }

        rows: list[RouteCalculateRow] = []
        for route_id in fallback_route_ids:
            route = route_by_id.get(route_id)
            snapshot = snapshots.get(route_id)
            if route is None or snapshot is None:
                continue
            curve_diagnostics, _ = build_curve_diagnostics(snapshot.path_edges)
            summary = snapshot.summary()
            rows.append(
                RouteCalculateRow(
                    server_id=scope.server_id,
                    network_variant=scope.network_variant,
                    dimension_context=scope.dimension_context,
                    dimension=dimension,
                    route_id=route_id,
                    status=snapshot.status,
                    error_message=snapshot.error_message,
                    source_fingerprint=snapshot.source_fingerprint,
                    persisted_snapshot=snapshot.source_fingerprint == fingerprint,
                    report={
                        "point_count": summary["geometry_point_count"],
                        "path_node_count": summary["path_node_count"],
                        "path_edge_count": summary["path_edge_count"],
                        "stop_count": summary["stop_count"],
                        "bounds": summary["bounds"],
                    },
                    snapshot=summary,
                    dataset=dataset.counts(),
                    fallback_diagnostics=build_fallback_diagnostics(
                        graph=graph,
                        dataset=dataset,
                        route_platform_ids=route.platform_ids,
                        path_edges=snapshot.path_edges,
                        source="fallback",
                    ),
                    curve_diagnostics=curve_diagnostics,
                )
            )

        batch_size = settings.fallback_calculate_batch_size
        for i in range(0, len(rows), batch_size):
            await asyncio.gather(*(self.store.upsert_route_calculate(row) for row in rows[i : i + batch_size]))
        await self.store.delete_route_calculates(scope, keep_route_ids=fallback_route_ids)

    async def compute_route(
        self,
        server_id: str,
        network_variant: str,
        route_id: str | None,
        *,
        dimension: str | None = None,
    ) -> dict[str, Any]:
        """Recompute one route regardless of the scope fingerprint and return a full debug report."""
        network_variant = normalize_network_variant(network_variant)
        log_event(
            "route_geometry_manual_compute",
            server_id=server_id,
            network_variant=network_variant,
            route_id=route_id,
            dimension=dimension,
        )
        route_id = (route_id or "").strip()
        if not route_id:
            raise ComputeError(reason_code="route_id_required", message="route id is required")
        server = await self.source.get_server(server_id)
        if server is None:
            raise ComputeError(reason_code="server_not_found", message="server not found")
        if normalize_network_variant(server.network_variant) != network_variant:
            raise ComputeError(
                reason_code="network_variant_mismatch",
                message="network variant does not match server configuration",
                details={"server_network_variant": server.network_variant, "requested": network_variant},
            )

        explicit_context = build_dimension_context(dimension, network_variant)
        route_row = await self.source.find_route_row(server_id, network_variant, route_id, explicit_context)
        if route_row is None:
            raise ComputeError(reason_code="route_not_found", message="route not found")
        dimension_context = explicit_context or route_row.dimension_context
        if not dimension_context:
            raise ComputeError(reason_code="dimension_context_missing", message="missing dimension context")

        scope = ScopeKey(server_id, network_variant, dimension_context)
        fingerprint = await compute_scope_fingerprint(self.source, scope)
        dataset = await load_scope_dataset(self.source, scope)
        graph = build_rail_graph(dataset.rails)

        route = next((record for record in dataset.route_records if record.id == route_row.entity_id), None)
        if route is None:
            raise ComputeError(reason_code="route_dataset_not_found", message="route dataset not found")

        resolved_platform_ids = [pid for pid in route.platform_ids if pid in dataset.platform_map]
        missing_platform_ids = [pid for pid in route.platform_ids if pid not in dataset.platform_map]
        platform_diagnostics = [
            {
                "platform_id": pid,
                "name": dataset.platform_map[pid].name,
                "station_id": dataset.platform_map[pid].station_id,
                "transport_mode": dataset.platform_map[pid].transport_mode,
                "has_pos_1": dataset.platform_map[pid].pos_1 is not None,
                "has_pos_2": dataset.platform_map[pid].pos_2 is not None,
                "route_ids": list(dataset.platform_map[pid].route_ids),
            }
            for pid in resolved_platform_ids
        ]

        report = await compute_route_geometry_snapshot_for_route(
            self.store,
            scope=scope,
            graph=graph,
            dataset=dataset,
            fingerprint=fingerprint,
            route=route,
        )
        snapshot: RouteGeometrySnapshot | None = await self.store.get_route_geometry(scope, report.route_id)
        path_edges = snapshot.path_edges if snapshot is not None else None
        curve_diagnostics, missing_curve_segments = build_curve_diagnostics(path_edges)

        job_id = str(uuid.uuid4())
        self.cache.store(
            RailDiagnosticsEntry(
                job_id=job_id,
                server_id=server_id,
                route_id=report.route_id,
                network_variant=network_variant,
                dimension_context=dimension_context,
                created_at=time.time(),
                rails=build_rail_diagnostics(dataset=dataset, graph=graph, path_edges=path_edges),
            )
        )

        return {
            "job_id": job_id,
            "status": report.status,
            "error_message": report.error_message,
            "route_id": report.route_id,
            "server_id": server_id,
            "network_variant": network_variant,
            "dimension": dimension,
            "dimension_context": dimension_context,
            "fingerprint": fingerprint,
            "source": report.source,
            "persisted": report.persisted,
            "report": {
                "point_count": report.point_count,
                "path_node_count": report.path_node_count,
                "path_edge_count": report.path_edge_count,
                "stop_count": report.stop_count,
                "bounds": report.bounds.model_dump() if report.bounds else None,
            },
            "snapshot": snapshot.summary() if snapshot is not None else None,
            "dataset": dataset.counts(),
            "curve_diagnostics": curve_diagnostics,
            "missing_curve_segments": missing_curve_segments,
            "route_diagnostics": {
                "route_id": route.id,
                "name": route.name,
                "color": route.color,
                "transport_mode": route.transport_mode,
                "platform_ids": list(route.platform_ids),
                "resolved_platform_ids": resolved_platform_ids,
                "missing_platform_ids": missing_platform_ids,
            },
            "platform_diagnostics": platform_diagnostics,
            "route_ids": [record.id for record in dataset.route_records],
            "platform_ids": [record.id for record in dataset.platform_records],
            "rail_ids": [row.entity_id for row in dataset.rails],
            "fallback_diagnostics": build_fallback_diagnostics(
                graph=graph,
                dataset=dataset,
                route_platform_ids=route.platform_ids,
                path_edges=path_edges,
                source=report.source,
            ),
        }

    def rail_diagnostics_page(
        self,
        job_id: str,
        *,
        page: int | None = None,
        page_size: int | None = None,
        search: str | None = None,
        only_errors: bool = False,
    ) -> dict[str, Any]:
        entry = self.cache.get(job_id)
        if entry is None:
            raise ComputeError(
                reason_code="rail_diagnostics_not_found",
                message="rail diagnostics cache not found",
                details={"job_id": job_id},
            )
        return paginate_rail_diagnostics(
            entry,
            page=page,
            page_size=page_size,
            search=search,
            only_errors=only_errors,
        )
