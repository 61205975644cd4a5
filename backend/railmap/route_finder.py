from __future__ import annotations

import heapq
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from .block_pos import BlockPosition
from .platform_snap import GraphNode, PlatformNodes
from .rail_graph import ConnectionMetadata, RailGraph, RailSegment
from .settings import settings

SearchFailureReason = Literal[
    "start-nodes-not-in-graph",
    "target-nodes-not-in-graph",
    "no-path",
    "visit-cap-exceeded",
]

SECONDARY_DIR_PENALTY = 12.0
PRIMARY_REVERSE_PENALTY = 20.0
SECONDARY_REVERSE_PENALTY = 10.0
PREFERRED_SECONDARY_PENALTY = 6.0


@dataclass(frozen=True)
class SearchFailure:
    segment_index: int
    reason: SearchFailureReason
    visits: int


@dataclass
class PathResult:
    points: list[BlockPosition] = field(default_factory=list)
    segments: list[RailSegment] = field(default_factory=list)


class RouteFinder:
    """Stop-by-stop Dijkstra over a rail graph with an edge-reuse bonus.

    Edges already used by routes found earlier through the same finder get
    slightly cheaper, so parallel services bundle onto one visual track.
    """

    def __init__(
        self,
        graph: RailGraph,
        *,
        max_visits: int | None = None,
        density_weight: float | None = None,
        min_edge_cost: float | None = None,
    ) -> None:
        self.graph = graph
        self.max_visits = int(max_visits if max_visits is not None else settings.route_finder_max_visits)
        self.density_weight = float(
            density_weight if density_weight is not None else settings.route_finder_density_weight
        )
        self.min_edge_cost = float(min_edge_cost if min_edge_cost is not None else settings.route_finder_min_edge_cost)
        self.last_failure: SearchFailure | None = None
        self._density: dict[tuple[int, int], int] = {}
        for start, neighbors in enumerate(graph.adjacency):
            for end in neighbors:
                self._density[(start, end)] = len(neighbors)

    def density(self, start: int, end: int) -> int:
        return self._density.get((start, end), 1)

    def edge_cost(self, start: int, end: int) -> float:
        a = self.graph.positions[start]
        b = self.graph.positions[end]
        penalty = _connection_penalty(self.graph.connection(start, end))
        bonus = self.density_weight * math.log1p(self.density(start, end))
        return max(self.min_edge_cost, math.hypot(a.x - b.x, a.z - b.z) + penalty - bonus)

    def find_route(self, platform_nodes: Sequence[PlatformNodes]) -> PathResult | None:
        self.last_failure = None
        if not platform_nodes:
            return None
        if len(platform_nodes) == 1:
            return PathResult(points=[node.position for node in platform_nodes[0].nodes])

        collected: list[BlockPosition] = []
        segments: list[RailSegment] = []
        for index in range(len(platform_nodes) - 1):
            result = self.find_path_between(
                platform_nodes[index].nodes,
                platform_nodes[index + 1].nodes,
                segment_index=index,
            )
            if result is None or not result.points:
                return None
            points = result.points
            if collected and collected[-1] == points[0]:
                points = points[1:]
            collected.extend(points)
            segments.extend(result.segments)
            self._bump_density(result.segments)
        return PathResult(points=collected, segments=segments) if collected else None

    def find_path_between(
        self,
        start_nodes: Sequence[GraphNode],
        target_nodes: Sequence[GraphNode],
        *,
        segment_index: int = 0,
    ) -> PathResult | None:
        graph = self.graph
        starts = [idx for idx in (graph.index_of(node.position) for node in start_nodes) if idx is not None]
        targets = {idx for idx in (graph.index_of(node.position) for node in target_nodes) if idx is not None}
        if not starts:
            self.last_failure = SearchFailure(segment_index, "start-nodes-not-in-graph", 0)
            return None
        if not targets:
            self.last_failure = SearchFailure(segment_index, "target-nodes-not-in-graph", 0)
            return None

        distances: dict[int, float] = {}
        previous: dict[int, int | None] = {}
        heap: list[tuple[float, int]] = []
        for idx in starts:
            distances[idx] = 0.0
            previous[idx] = None
            heapq.heappush(heap, (0.0, idx))

        visited: set[int] = set()
        visits = 0
        while heap:
            cost, current = heapq.heappop(heap)
            if cost > distances.get(current, math.inf):
                continue
            if current in visited:
                continue
            visited.add(current)
            visits += 1
            if visits > self.max_visits:
                self.last_failure = SearchFailure(segment_index, "visit-cap-exceeded", visits)
                return None
            if current in targets:
                return self._reconstruct(current, previous)
            for nxt in graph.neighbors(current):
                new_cost = cost + self.edge_cost(current, nxt)
                if new_cost < distances.get(nxt, math.inf):
                    distances[nxt] = new_cost
                    previous[nxt] = current
                    heapq.heappush(heap, (new_cost, nxt))

        self.last_failure = SearchFailure(segment_index, "no-path", visits)
        return None

    def _reconstruct(self, target: int, previous: dict[int, int | None]) -> PathResult:
        path: list[int] = []
        cursor: int | None = target
        while cursor is not None:
            path.append(cursor)
            cursor = previous.get(cursor)
        path.reverse()
        segments = [
            RailSegment(
                start=self.graph.positions[a],
                end=self.graph.positions[b],
                connection=self.graph.connection(a, b),
            )
            for a, b in zip(path, path[1:])
        ]
        return PathResult(points=[self.graph.positions[idx] for idx in path], segments=segments)

    def _bump_density(self, segments: Sequence[RailSegment]) -> None:
        for segment in segments:
            start = self.graph.index_of(segment.start)
            end = self.graph.index_of(segment.end)
            if start is None or end is None:
                continue
            self._density[(start, end)] = self._density.get((start, end), 0) + 1


def _connection_penalty(connection: ConnectionMetadata | None) -> float:
    if connection is None:
        return 0.0
    penalty = 0.0
    if connection.is_secondary_dir:
        penalty += SECONDARY_DIR_PENALTY
    if connection.primary is not None and connection.primary.reverse:
        penalty += PRIMARY_REVERSE_PENALTY
    if connection.secondary is not None and connection.secondary.reverse:
        penalty += SECONDARY_REVERSE_PENALTY
    if connection.preferred_curve == "secondary":
        penalty += PREFERRED_SECONDARY_PENALTY
    return penalty
