"""Connectivity, curve-coverage and per-rail diagnostics for computed routes.

Rail-level diagnostics are expensive to build and only useful while an
operator inspects one route, so they live in a single-slot TTL cache and are
paged at read time.
"""

from __future__ import annotations

import copy
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

import numpy as np

from .block_pos import BlockPosition, encode_block_position, extract_block_position
from .dataset import ScopeDataset
from .logging_utils import log_event
from .payload import as_json_record, normalize_id, normalize_payload_record
from .platform_snap import PlatformNodes, SnapResult, extract_platform_nodes, snap_platform_nodes
from .rail_graph import (
    RailGraph,
    extract_connection_position,
    extract_rail_connections,
    extract_rail_node_position,
    normalize_connection_metadata,
)
from .settings import settings

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


def component_index(graph: RailGraph | None) -> tuple[dict[int, int], int]:
    """Breadth-first partition of node indices into connected components (0-based)."""
    component_by_node: dict[int, int] = {}
    if graph is None:
        return component_by_node, 0
    component_count = 0
    for start in range(graph.node_count):
        if start in component_by_node:
            continue
        component_by_node[start] = component_count
        q: deque[int] = deque([start])
        while q:
            current = q.popleft()
            for nxt in graph.neighbors(current):
                if nxt in component_by_node:
                    continue
                component_by_node[nxt] = component_count
                q.append(nxt)
        component_count += 1
    return component_by_node, component_count


def _used_node_ids(path_edges: Sequence[dict[str, Any]] | None) -> set[str]:
    used: set[str] = set()
    for segment in path_edges or ():
        for key in ("start", "end"):
            node_id = encode_block_position(extract_block_position(segment.get(key)))
            if node_id:
                used.add(node_id)
    return used


def route_platform_components(
    route_platform_ids: Sequence[str],
    snapped: SnapResult,
    graph: RailGraph | None,
    component_by_node: dict[int, int],
) -> tuple[list[dict[str, Any]], int]:
    """Per route platform: snapped node ids and the components they fall in.

    Returns the rows and the number of route platforms with no snapped node.
    """
    snapped_by_platform: dict[str, PlatformNodes] = {
        entry.platform_id: entry for entry in snapped.nodes if entry.platform_id
    }
    rows: list[dict[str, Any]] = []
    missing = 0
    for platform_id in route_platform_ids:
        entry = snapped_by_platform.get(platform_id)
        nodes = entry.nodes if entry else []
        if not nodes:
            missing += 1
        component_ids: dict[int, None] = {}
        if graph is not None:
            for node in nodes:
                idx = graph.index_of(node.position)
                if idx is not None and idx in component_by_node:
                    component_ids[component_by_node[idx]] = None
        rows.append(
            {
                "platform_id": platform_id,
                "node_ids": [node.id for node in nodes],
                "component_ids": list(component_ids),
            }
        )
    return rows, missing


def _nearest_pair(
    from_positions: list[BlockPosition],
    to_positions: list[BlockPosition],
) -> tuple[int, int, float]:
    a = np.asarray(from_positions, dtype=np.float64)
    b = np.asarray(to_positions, dtype=np.float64)
    distances = np.sqrt(((a[:, None, :] - b[None, :, :]) ** 2).sum(axis=2))
    i, j = np.unravel_index(int(np.argmin(distances)), distances.shape)
    return int(i), int(j), float(distances[i, j])


def disconnected_segments(graph: RailGraph, platform_components: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Nearest node pair between every two components touched by the route's platforms."""
    component_nodes: dict[int, dict[str, None]] = {}
    for entry in platform_components:
        for component_id in entry["component_ids"]:
            bucket = component_nodes.setdefault(component_id, {})
            for node_id in entry["node_ids"]:
                bucket[node_id] = None

    def _resolved(node_ids: dict[str, None]) -> tuple[list[str], list[BlockPosition]]:
        ids: list[str] = []
        positions: list[BlockPosition] = []
        for node_id in node_ids:
            position = extract_block_position(node_id)
            if position is None or graph.index_of(position) is None:
                continue
            ids.append(node_id)
            positions.append(position)
        return ids, positions

    component_ids = list(component_nodes)
    out: list[dict[str, Any]] = []
    for i, from_component in enumerate(component_ids):
        from_ids, from_positions = _resolved(component_nodes[from_component])
        for to_component in component_ids[i + 1 :]:
            to_ids, to_positions = _resolved(component_nodes[to_component])
            if not from_positions or not to_positions:
                continue
            fi, ti, distance = _nearest_pair(from_positions, to_positions)
            out.append(
                {
                    "from_component": from_component,
                    "to_component": to_component,
                    "from_node_id": from_ids[fi],
                    "to_node_id": to_ids[ti],
                    "from": from_positions[fi].as_dict(),
                    "to": to_positions[ti].as_dict(),
                    "distance": round(distance, 2),
                }
            )
    return out


def build_fallback_diagnostics(
    *,
    graph: RailGraph | None,
    dataset: ScopeDataset,
    route_platform_ids: Sequence[str],
    path_edges: Sequence[dict[str, Any]] | None,
    source: str | None,
) -> dict[str, Any]:
    """Why a route could not be drawn along the rail graph."""
    graph_node_count = graph.node_count if graph else 0
    platform_nodes = extract_platform_nodes(dataset.platform_records)
    platform_count = len(dataset.platform_records)
    platform_with_nodes_count = len(platform_nodes)
    snapped = snap_platform_nodes(platform_nodes, graph) if graph else SnapResult()
    path_segment_count = len(path_edges or [])

    reasons: list[str] = []
    if graph is None or graph_node_count == 0:
        reasons.append("graph_empty")
    if platform_with_nodes_count == 0:
        reasons.append("platform_nodes_missing")
    if graph is not None and not snapped.nodes:
        reasons.append("platform_nodes_not_snapped")
    if graph is not None and snapped.nodes and path_segment_count == 0:
        reasons.append("path_not_found")

    component_by_node, component_count = component_index(graph)
    platform_components, missing_nodes = route_platform_components(
        route_platform_ids,
        snapped,
        graph,
        component_by_node,
    )
    route_components = {cid for entry in platform_components for cid in entry["component_ids"]}
    if len(route_components) > 1:
        reasons.append("route_platforms_disconnected")
    segments = disconnected_segments(graph, platform_components) if graph and len(route_components) > 1 else []

    return {
        "source": source,
        "graph_present": graph is not None,
        "graph_node_count": graph_node_count,
        "graph_edge_count": graph.edge_count if graph else 0,
        "platform_count": platform_count,
        "platform_with_nodes_count": platform_with_nodes_count,
        "platform_missing_pos_count": max(0, platform_count - platform_with_nodes_count),
        "platform_node_count": sum(len(entry.nodes) for entry in platform_nodes),
        "snapped_platform_count": len(snapped.nodes),
        "snapped_node_count": snapped.node_count,
        "snapped_missing_node_count": snapped.missing_nodes,
        "used_path_node_count": len(_used_node_ids(path_edges)),
        "path_segment_count": path_segment_count,
        "graph_component_count": component_count,
        "route_platform_count": len(route_platform_ids),
        "route_platform_missing_nodes": missing_nodes,
        "route_platform_component_count": len(route_components),
        "route_platform_components": platform_components,
        "disconnected_segments": segments,
        "reasons": reasons,
    }


def _has_curve(params: dict[str, Any] | None) -> bool:
    if not params:
        return False
    return any(value is not None for value in params.values())


def build_curve_diagnostics(
    path_edges: Sequence[dict[str, Any]] | None,
) -> tuple[dict[str, int], list[dict[str, Any]]]:
    edges = list(path_edges or [])
    with_primary = with_secondary = with_any = straight = vertical = 0
    missing: list[dict[str, Any]] = []
    for index, segment in enumerate(edges):
        connection = segment.get("connection") or None
        primary = connection.get("primary") if connection else None
        secondary = connection.get("secondary") if connection else None
        has_primary = _has_curve(primary)
        has_secondary = _has_curve(secondary)
        with_primary += int(has_primary)
        with_secondary += int(has_secondary)
        with_any += int(has_primary or has_secondary)
        if (primary or {}).get("is_straight") is True or (secondary or {}).get("is_straight") is True:
            straight += 1
        if connection and connection.get("vertical_curve_radius") is not None:
            vertical += 1
        if not (has_primary or has_secondary):
            missing.append(
                {
                    "index": index,
                    "start": segment.get("start"),
                    "end": segment.get("end"),
                    "connection": {k: v for k, v in connection.items() if k != "target_node_id"}
                    if connection
                    else None,
                }
            )
    return (
        {
            "total_segments": len(edges),
            "segments_with_primary_curve": with_primary,
            "segments_with_secondary_curve": with_secondary,
            "segments_with_any_curve": with_any,
            "segments_without_curve": len(edges) - with_any,
            "segments_straight": straight,
            "segments_with_vertical_curve": vertical,
        },
        missing,
    )


def build_rail_diagnostics(
    *,
    dataset: ScopeDataset,
    graph: RailGraph | None,
    path_edges: Sequence[dict[str, Any]] | None,
) -> list[dict[str, Any]]:
    """Per-rail resolution status with the platforms and routes it touches."""
    used_node_ids = _used_node_ids(path_edges)
    node_platforms: dict[str, dict[str, None]] = {}
    for platform in extract_platform_nodes(dataset.platform_records):
        if not platform.platform_id:
            continue
        for node in platform.nodes:
            node_platforms.setdefault(node.id, {})[platform.platform_id] = None

    rails: list[dict[str, Any]] = []
    for row in dataset.rails:
        rail_id = normalize_id(row.entity_id) or str(row.entity_id)
        raw = as_json_record(row.payload)
        record = normalize_payload_record(raw) if raw is not None else None
        node_position = extract_rail_node_position(record) if record is not None else None
        node_id = encode_block_position(node_position)
        connections = extract_rail_connections(record) if record is not None else []

        connection_rows: list[dict[str, Any]] = []
        curve_present = 0
        for connection in connections:
            target = extract_connection_position(connection)
            target_id = encode_block_position(target)
            metadata = normalize_connection_metadata(connection, target_id or "")
            has_curve = metadata.primary is not None or metadata.secondary is not None
            curve_present += int(has_curve)
            row_out = metadata.as_dict()
            row_out["target_node_id"] = target_id
            row_out["target_position"] = target.as_dict() if target else None
            row_out["has_curve"] = has_curve
            connection_rows.append(row_out)

        platform_ids: dict[str, None] = {}
        for candidate in [node_id, *(c["target_node_id"] for c in connection_rows)]:
            if candidate:
                platform_ids.update(node_platforms.get(candidate, {}))
        route_ids: dict[str, None] = {}
        for platform_id in platform_ids:
            route_ids.update(dict.fromkeys(dataset.platform_route_ids.get(platform_id, [])))

        has_node_position = node_position is not None
        has_connections = bool(connections)
        in_graph = bool(graph is not None and node_position is not None and graph.index_of(node_position) is not None)
        issues: list[str] = []
        if not has_node_position:
            issues.append("missing_node_position")
        if not has_connections:
            issues.append("missing_connections")
        if not in_graph:
            issues.append("not_in_graph")

        rails.append(
            {
                "rail_id": rail_id,
                "node_id": node_id,
                "node_position": node_position.as_dict() if node_position else None,
                "connection_count": len(connections),
                "connections": connection_rows,
                "has_node_position": has_node_position,
                "has_connections": has_connections,
                "in_graph": in_graph,
                "used_in_route_path": bool(node_id and node_id in used_node_ids),
                "curve_present_count": curve_present,
                "curve_missing_count": len(connections) - curve_present,
                "associated_platform_ids": list(platform_ids),
                "associated_route_ids": list(route_ids),
                "calculation_success": has_node_position and has_connections and in_graph,
                "issues": issues,
                "payload": record,
            }
        )
    return rails


@dataclass
class RailDiagnosticsEntry:
    job_id: str
    server_id: str
    route_id: str
    network_variant: str
    dimension_context: str
    created_at: float
    rails: list[dict[str, Any]] = field(default_factory=list)


class RailDiagnosticsCache:
    """Single-slot cache; the next ``store`` replaces the entry, expiry is checked lazily."""

    def __init__(self, *, ttl_s: float | None = None, clock: Callable[[], float] = time.time) -> None:
        self._ttl_s = float(ttl_s if ttl_s is not None else settings.rail_diagnostics_ttl_s)
        self._clock = clock
        self._lock = Lock()
        self._entry: RailDiagnosticsEntry | None = None
        self._expires_at = 0.0

    def _prune(self) -> None:
        if self._entry is not None and self._expires_at <= self._clock():
            log_event("rail_diagnostics_expired", job_id=self._entry.job_id, route_id=self._entry.route_id)
            self._entry = None

    def store(self, entry: RailDiagnosticsEntry) -> None:
        with self._lock:
            self._prune()
            if self._entry is not None:
                log_event(
                    "rail_diagnostics_replaced",
                    previous_route_id=self._entry.route_id,
                    route_id=entry.route_id,
                )
            self._entry = entry
            self._expires_at = self._clock() + self._ttl_s
            log_event(
                "rail_diagnostics_stored",
                job_id=entry.job_id,
                route_id=entry.route_id,
                rail_count=len(entry.rails),
                ttl_s=self._ttl_s,
            )

    def get(self, job_id: str) -> RailDiagnosticsEntry | None:
        with self._lock:
            self._prune()
            if self._entry is None or self._entry.job_id != job_id:
                return None
            return self._entry

    def clear(self) -> int:
        with self._lock:
            cleared = int(self._entry is not None)
            self._entry = None
            return cleared


def _rail_matches(rail: dict[str, Any], keyword: str) -> bool:
    if keyword in str(rail.get("rail_id") or "").lower():
        return True
    if keyword in str(rail.get("node_id") or "").lower():
        return True
    if any(keyword in str(pid).lower() for pid in rail.get("associated_platform_ids", [])):
        return True
    return any(keyword in str(rid).lower() for rid in rail.get("associated_route_ids", []))


def paginate_rail_diagnostics(
    entry: RailDiagnosticsEntry,
    *,
    page: int | None = None,
    page_size: int | None = None,
    search: str | None = None,
    only_errors: bool = False,
) -> dict[str, Any]:
    size = min(max(int(DEFAULT_PAGE_SIZE if page_size is None else page_size), 1), MAX_PAGE_SIZE)
    current = max(int(1 if page is None else page), 1)
    keyword = (search or "").strip().lower()
    rails = [rail for rail in entry.rails if not rail["calculation_success"]] if only_errors else entry.rails
    if keyword:
        rails = [rail for rail in rails if _rail_matches(rail, keyword)]
    start = (current - 1) * size
    return {
        "job_id": entry.job_id,
        "server_id": entry.server_id,
        "route_id": entry.route_id,
        "network_variant": entry.network_variant,
        "dimension_context": entry.dimension_context,
        "created_at": entry.created_at,
        "page": current,
        "page_size": size,
        "total": len(rails),
        "items": copy.deepcopy(rails[start : start + size]),
    }
