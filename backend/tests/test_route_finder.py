from __future__ import annotations

import pytest

from railmap.block_pos import BlockPosition
from railmap.dataset import SourceRow
from railmap.platform_snap import GraphNode, PlatformNodes
from railmap.rail_graph import RailGraph, build_rail_graph, node_id_for
from railmap.route_finder import RouteFinder, _connection_penalty
from railmap.settings import settings

A = BlockPosition(0, 64, 0)
B = BlockPosition(10, 64, 0)
C = BlockPosition(20, 64, 0)
D = BlockPosition(100, 64, 0)
E = BlockPosition(110, 64, 0)


def _rail(node: BlockPosition, *targets: BlockPosition, **connection_fields: object) -> SourceRow:
    return SourceRow(
        entity_id=node_id_for(node),
        payload={
            "node_pos": node.as_dict(),
            "rail_connections": [
                {"node_pos": target.as_dict(), "is_straight_1": True, **connection_fields} for target in targets
            ],
        },
    )


def _stop(platform_id: str, *positions: BlockPosition) -> PlatformNodes:
    return PlatformNodes(platform_id, [GraphNode(node_id_for(pos), pos) for pos in positions])


def _line_graph() -> RailGraph:
    graph = build_rail_graph([_rail(A, B), _rail(B, C), _rail(C), _rail(D, E)])
    assert graph is not None
    return graph


def test_find_route_follows_straight_track_between_stops() -> None:
    finder = RouteFinder(_line_graph())

    result = finder.find_route([_stop("pA", A), _stop("pC", C)])

    assert result is not None
    assert result.points == [A, B, C]
    assert len(result.segments) == 2
    for segment in result.segments:
        assert segment.connection is not None
        assert segment.connection.primary.is_straight is True
        assert _connection_penalty(segment.connection) == 0.0
    assert finder.last_failure is None


def test_find_route_collapses_duplicate_points_at_stop_boundaries() -> None:
    finder = RouteFinder(_line_graph())

    result = finder.find_route([_stop("pA", A), _stop("pB", B), _stop("pC", C)])

    assert result is not None
    assert result.points == [A, B, C]
    assert len(result.segments) == 2


def test_find_route_with_fewer_than_two_stops_skips_search() -> None:
    finder = RouteFinder(_line_graph())
    assert finder.find_route([]) is None

    single = finder.find_route([_stop("pA", A)])
    assert single is not None
    assert single.points == [A]
    assert single.segments == []


def test_find_path_between_reports_no_path_across_components() -> None:
    finder = RouteFinder(_line_graph())

    assert finder.find_path_between([GraphNode(node_id_for(A), A)], [GraphNode(node_id_for(E), E)]) is None
    assert finder.last_failure is not None
    assert finder.last_failure.reason == "no-path"
    assert finder.last_failure.visits == 3


def test_find_path_between_reports_missing_endpoints() -> None:
    finder = RouteFinder(_line_graph())
    outside = BlockPosition(999, 64, 999)

    assert finder.find_path_between([GraphNode("x", outside)], [GraphNode(node_id_for(C), C)]) is None
    assert finder.last_failure.reason == "start-nodes-not-in-graph"

    assert finder.find_path_between([GraphNode(node_id_for(A), A)], [GraphNode("x", outside)], segment_index=4) is None
    assert finder.last_failure.reason == "target-nodes-not-in-graph"
    assert finder.last_failure.segment_index == 4


def test_find_path_between_stops_at_visit_cap() -> None:
    finder = RouteFinder(_line_graph(), max_visits=1)

    assert finder.find_route([_stop("pA", A), _stop("pC", C)]) is None
    assert finder.last_failure.reason == "visit-cap-exceeded"


def test_visit_cap_defaults_to_settings(monkeypatch) -> None:
    monkeypatch.setattr(settings, "route_finder_max_visits", 7)
    assert RouteFinder(_line_graph()).max_visits == 7


def test_edge_cost_applies_direction_and_curve_penalties() -> None:
    graph = build_rail_graph(
        [
            SourceRow(
                entity_id="a",
                payload={
                    "node_pos": A.as_dict(),
                    "rail_connections": [
                        {"node_pos": B.as_dict(), "is_secondary_dir": True},
                        {"node_pos": C.as_dict(), "h_2": 1.0, "reverse_t_2": False},
                    ],
                },
            )
        ]
    )
    finder = RouteFinder(graph, density_weight=0.0)
    a, b, c = graph.index_of(A), graph.index_of(B), graph.index_of(C)

    assert finder.edge_cost(a, b) == pytest.approx(10.0 + 12.0)
    assert finder.edge_cost(a, c) == pytest.approx(20.0 + 6.0)
    # opposite direction flips the secondary curve to reverse
    assert finder.edge_cost(c, a) == pytest.approx(20.0 + 10.0 + 6.0)


def test_edge_cost_is_clamped_positive_under_heavy_reuse() -> None:
    finder = RouteFinder(_line_graph(), density_weight=100.0, min_edge_cost=0.25)
    a, b = finder.graph.index_of(A), finder.graph.index_of(B)
    assert finder.edge_cost(a, b) == pytest.approx(0.25)


def test_completed_routes_make_their_edges_cheaper() -> None:
    finder = RouteFinder(_line_graph())
    a, b = finder.graph.index_of(A), finder.graph.index_of(B)
    before = finder.edge_cost(a, b)

    finder.find_route([_stop("pA", A), _stop("pC", C)])

    assert finder.density(a, b) == 2
    assert finder.edge_cost(a, b) < before
