from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import NamedTuple

from .block_pos import BlockPosition
from .models import PlatformRecord
from .rail_graph import (
    ConnectionMetadata,
    CurveParameters,
    RailGraph,
    RailSegment,
    node_id_for,
    segment_key,
)
from .settings import settings


class GraphNode(NamedTuple):
    id: str
    position: BlockPosition


@dataclass
class PlatformNodes:
    platform_id: str | None
    nodes: list[GraphNode] = field(default_factory=list)

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]


@dataclass
class SnapResult:
    nodes: list[PlatformNodes] = field(default_factory=list)
    missing_nodes: int = 0
    snapped_nodes: int = 0

    @property
    def node_count(self) -> int:
        return sum(len(entry.nodes) for entry in self.nodes)


def extract_platform_nodes(platforms: Iterable[PlatformRecord]) -> list[PlatformNodes]:
    """Logical endpoints per platform; platforms without any endpoint are dropped."""
    out: list[PlatformNodes] = []
    for platform in platforms:
        entry = PlatformNodes(platform_id=platform.id)
        if platform.pos_1 is not None:
            entry.nodes.append(GraphNode(node_id_for(platform.pos_1), platform.pos_1))
        if platform.pos_2 is not None and platform.pos_2 != platform.pos_1:
            entry.nodes.append(GraphNode(node_id_for(platform.pos_2), platform.pos_2))
        if entry.nodes:
            out.append(entry)
    return out


def _ring_offsets(radius: int) -> tuple[tuple[int, int], ...]:
    if radius <= 0:
        return ((0, 0),)
    offsets: list[tuple[int, int]] = []
    for dx in range(-radius, radius + 1):
        for dz in range(-radius, radius + 1):
            if abs(dx) == radius or abs(dz) == radius:
                offsets.append((dx, dz))
    return tuple(offsets)


def _closest_elevation(graph: RailGraph, candidates: list[int], target_y: int) -> int | None:
    best: int | None = None
    best_dy = 0
    for idx in candidates:
        dy = abs(graph.positions[idx].y - target_y)
        if best is None or dy < best_dy:
            best = idx
            best_dy = dy
    return best


def nearest_graph_node(
    graph: RailGraph,
    position: BlockPosition,
    *,
    max_radius: int | None = None,
) -> int | None:
    """Closest-elevation node in the nearest non-empty column around ``position``."""
    radius_limit = settings.platform_snap_max_radius if max_radius is None else max(0, int(max_radius))
    columns = graph.columns()
    for radius in range(0, radius_limit + 1):
        for dx, dz in _ring_offsets(radius):
            candidates = columns.get((position.x + dx, position.z + dz))
            if candidates:
                return _closest_elevation(graph, candidates, position.y)
    return None


def snap_platform_nodes(
    platform_nodes: list[PlatformNodes],
    graph: RailGraph,
    *,
    max_radius: int | None = None,
) -> SnapResult:
    result = SnapResult()
    for platform in platform_nodes:
        snapped = PlatformNodes(platform_id=platform.platform_id)
        used: set[str] = set()
        for node in platform.nodes:
            if graph.index_of(node.position) is not None:
                if node.id not in used:
                    used.add(node.id)
                    snapped.nodes.append(node)
                continue
            result.missing_nodes += 1
            best = nearest_graph_node(graph, node.position, max_radius=max_radius)
            if best is None:
                continue
            best_id = graph.node_id(best)
            if best_id in used:
                continue
            used.add(best_id)
            result.snapped_nodes += 1
            snapped.nodes.append(GraphNode(best_id, graph.positions[best]))
        if snapped.nodes:
            result.nodes.append(snapped)
    return result


def _platform_connection(platform: PlatformRecord, start: BlockPosition, end: BlockPosition) -> ConnectionMetadata:
    return ConnectionMetadata(
        target_node_id=node_id_for(end),
        rail_type="PLATFORM",
        transport_mode=platform.transport_mode,
        model_key=None,
        is_secondary_dir=False,
        y_start=start.y,
        y_end=end.y,
        vertical_curve_radius=0,
        primary=CurveParameters(h=0, k=0, r=0, t_start=0, t_end=0, reverse=False, is_straight=True),
        secondary=None,
        preferred_curve="primary",
    )


def include_platform_segments(
    segments: Iterable[RailSegment] | None,
    platforms: Iterable[PlatformRecord],
) -> list[RailSegment]:
    """Append a straight ``PLATFORM`` segment per two-ended platform not already on the path."""
    registry: dict[str, RailSegment] = {}
    for segment in segments or ():
        registry[segment.key()] = segment
    for platform in platforms:
        if platform.pos_1 is None or platform.pos_2 is None:
            continue
        key = segment_key(platform.pos_1, platform.pos_2)
        if key in registry:
            continue
        registry[key] = RailSegment(
            start=platform.pos_1,
            end=platform.pos_2,
            connection=_platform_connection(platform, platform.pos_1, platform.pos_2),
        )
    return list(registry.values())
