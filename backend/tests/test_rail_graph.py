from __future__ import annotations

from railmap.block_pos import BlockPosition, encode_block_position
from railmap.dataset import SourceRow
from railmap.rail_graph import (
    ConnectionMetadata,
    CurveParameters,
    build_rail_graph,
    pick_preferred_curve,
    reverse_connection_metadata,
)

A = BlockPosition(0, 64, 0)
B = BlockPosition(10, 64, 0)
C = BlockPosition(20, 64, 0)


def _rail(entity_id: str, payload: dict) -> SourceRow:
    return SourceRow(entity_id=entity_id, payload=payload, dimension_context="mtr/minecraft/overworld")


def test_build_rail_graph_returns_none_without_positions() -> None:
    assert build_rail_graph([]) is None
    assert build_rail_graph([_rail("r1", {"rail_connections": []}), _rail("r2", "broken")]) is None


def test_build_rail_graph_stores_each_edge_in_both_directions() -> None:
    graph = build_rail_graph(
        [
            _rail("a", {"node_pos": A.as_dict(), "rail_connections": [{"node_pos": B.as_dict(), "rail_type": "X"}]}),
            _rail("b", {"node_pos": B.as_dict(), "rail_connections": [{"node_pos": C.as_dict()}]}),
        ]
    )
    assert graph is not None
    assert graph.node_count == 3
    assert graph.edge_count == 2
    a, b = graph.index_of(A), graph.index_of(B)
    assert graph.connection(a, b).target_node_id == encode_block_position(B)
    assert graph.connection(b, a).target_node_id == encode_block_position(A)
    assert graph.connection(b, a).rail_type == "X"


def test_build_rail_graph_reads_camel_case_and_packed_positions() -> None:
    packed_a = encode_block_position(A)
    graph = build_rail_graph(
        [
            _rail(
                "a",
                {
                    "nodePos": packed_a,
                    "connectionMap": {
                        "east": {
                            "nodePos": B.as_dict(),
                            "railType": "SLOW",
                            "h1": 1.5,
                            "reverseT1": False,
                            "yStart": 64,
                            "yEnd": 66,
                        }
                    },
                },
            )
        ]
    )
    assert graph is not None
    forward = graph.connection(graph.index_of(A), graph.index_of(B))
    assert forward.rail_type == "SLOW"
    assert forward.primary == CurveParameters(h=1.5, reverse=False)
    assert forward.secondary is None
    assert forward.preferred_curve == "primary"

    backward = graph.connection(graph.index_of(B), graph.index_of(A))
    assert backward.primary.reverse is True
    assert (backward.y_start, backward.y_end) == (66, 64)


def test_pick_preferred_curve_prefers_forward_variant() -> None:
    forward = CurveParameters(r=5.0, reverse=False)
    reversed_curve = CurveParameters(r=5.0, reverse=True)
    assert pick_preferred_curve(reversed_curve, forward) == "secondary"
    assert pick_preferred_curve(forward, forward) == "primary"
    assert pick_preferred_curve(reversed_curve, reversed_curve) == "primary"
    assert pick_preferred_curve(None, reversed_curve) == "secondary"
    assert pick_preferred_curve(None, None) is None


def test_reverse_connection_metadata_keeps_tags() -> None:
    meta = ConnectionMetadata(
        target_node_id="b",
        rail_type="X",
        model_key="m",
        y_start=1,
        y_end=2,
        primary=CurveParameters(h=1.0, reverse=True),
        preferred_curve="primary",
    )
    rev = reverse_connection_metadata(meta, "a")
    assert rev.target_node_id == "a"
    assert (rev.y_start, rev.y_end) == (2, 1)
    assert rev.primary.reverse is False
    assert rev.rail_type == "X"
    assert rev.model_key == "m"
    assert rev.preferred_curve == "primary"
