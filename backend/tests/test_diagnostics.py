from __future__ import annotations

import pytest

from railmap.block_pos import BlockPosition, encode_block_position
from railmap.dataset import ScopeDataset, SourceRow
from railmap.diagnostics import (
    RailDiagnosticsCache,
    RailDiagnosticsEntry,
    build_curve_diagnostics,
    build_fallback_diagnostics,
    build_rail_diagnostics,
    component_index,
    paginate_rail_diagnostics,
)
from railmap.models import PlatformRecord
from railmap.rail_graph import build_rail_graph

A = BlockPosition(0, 64, 0)
B = BlockPosition(10, 64, 0)
D = BlockPosition(100, 64, 0)
E = BlockPosition(110, 64, 0)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _rails() -> list[SourceRow]:
    return [
        SourceRow(entity_id="ra", payload={"node_pos": A.as_dict(), "rail_connections": [{"node_pos": B.as_dict()}]}),
        SourceRow(entity_id="rd", payload={"node_pos": D.as_dict(), "rail_connections": [{"node_pos": E.as_dict()}]}),
        SourceRow(entity_id="lonely", payload={"node_pos": {"x": 500, "y": 64, "z": 0}}),
        SourceRow(entity_id="broken", payload={"rail_connections": []}),
    ]


def _dataset() -> ScopeDataset:
    platforms = [
        PlatformRecord.model_validate({"id": "pA", "pos_1": A.as_dict()}),
        PlatformRecord.model_validate({"id": "pD", "pos_1": D.as_dict()}),
        PlatformRecord.model_validate({"id": "pX"}),
    ]
    return ScopeDataset(
        platform_records=platforms,
        platform_map={p.id: p for p in platforms},
        platform_route_ids={"pA": ["r1"], "pD": ["r1", "r2"]},
        rails=_rails(),
    )


def test_component_index_numbers_components_in_node_order() -> None:
    graph = build_rail_graph(_rails())
    components, count = component_index(graph)
    assert count == 3
    assert components[graph.index_of(A)] == components[graph.index_of(B)] == 0
    assert components[graph.index_of(D)] == components[graph.index_of(E)] == 1
    assert component_index(None) == ({}, 0)


def test_fallback_diagnostics_report_disconnected_route_platforms() -> None:
    dataset = _dataset()
    graph = build_rail_graph(dataset.rails)

    diag = build_fallback_diagnostics(
        graph=graph,
        dataset=dataset,
        route_platform_ids=["pA", "pD", "pMissing"],
        path_edges=None,
        source="fallback",
    )

    assert diag["graph_present"] is True
    assert diag["graph_node_count"] == 5
    assert diag["graph_edge_count"] == 2
    assert diag["platform_count"] == 3
    assert diag["platform_with_nodes_count"] == 2
    assert diag["platform_missing_pos_count"] == 1
    assert diag["graph_component_count"] == 3
    assert diag["route_platform_missing_nodes"] == 1
    assert diag["route_platform_component_count"] == 2
    assert "route_platforms_disconnected" in diag["reasons"]
    assert "path_not_found" in diag["reasons"]
    assert diag["route_platform_components"][0] == {
        "platform_id": "pA",
        "node_ids": [encode_block_position(A)],
        "component_ids": [0],
    }
    [gap] = diag["disconnected_segments"]
    assert gap["from_component"] == 0
    assert gap["to_component"] == 1
    assert gap["from_node_id"] == encode_block_position(A)
    assert gap["to_node_id"] == encode_block_position(D)
    assert gap["distance"] == pytest.approx(100.0)


def test_fallback_diagnostics_without_graph() -> None:
    dataset = _dataset()
    diag = build_fallback_diagnostics(
        graph=None,
        dataset=dataset,
        route_platform_ids=["pA"],
        path_edges=None,
        source="fallback",
    )
    assert diag["reasons"] == ["graph_empty"]
    assert diag["graph_present"] is False
    assert diag["disconnected_segments"] == []


def test_curve_diagnostics_count_curve_coverage() -> None:
    edges = [
        {
            "start": A.as_dict(),
            "end": B.as_dict(),
            "connection": {
                "target_node_id": "b",
                "vertical_curve_radius": 4.0,
                "primary": {"h": None, "is_straight": True},
                "secondary": None,
            },
        },
        {"start": B.as_dict(), "end": A.as_dict(), "connection": {"target_node_id": "a", "primary": None}},
        {"start": D.as_dict(), "end": E.as_dict(), "connection": None},
    ]

    counts, missing = build_curve_diagnostics(edges)

    assert counts == {
        "total_segments": 3,
        "segments_with_primary_curve": 1,
        "segments_with_secondary_curve": 0,
        "segments_with_any_curve": 1,
        "segments_without_curve": 2,
        "segments_straight": 1,
        "segments_with_vertical_curve": 1,
    }
    assert [entry["index"] for entry in missing] == [1, 2]
    assert missing[0]["connection"] == {"primary": None}
    assert missing[1]["connection"] is None
    assert build_curve_diagnostics(None)[0]["total_segments"] == 0


def test_rail_diagnostics_tag_issues_and_associations() -> None:
    dataset = _dataset()
    graph = build_rail_graph(dataset.rails)
    path_edges = [{"start": A.as_dict(), "end": B.as_dict(), "connection": None}]

    rails = {rail["rail_id"]: rail for rail in build_rail_diagnostics(dataset=dataset, graph=graph, path_edges=path_edges)}

    assert rails["ra"]["calculation_success"] is True
    assert rails["ra"]["used_in_route_path"] is True
    assert rails["ra"]["associated_platform_ids"] == ["pA"]
    assert rails["ra"]["associated_route_ids"] == ["r1"]
    assert rails["ra"]["connections"][0]["target_node_id"] == encode_block_position(B)
    assert rails["rd"]["used_in_route_path"] is False
    assert rails["rd"]["associated_route_ids"] == ["r1", "r2"]
    assert rails["lonely"]["issues"] == ["missing_connections"]
    assert rails["broken"]["issues"] == ["missing_node_position", "missing_connections", "not_in_graph"]
    assert rails["broken"]["calculation_success"] is False


def _entry(job_id: str, rails: list[dict] | None = None) -> RailDiagnosticsEntry:
    return RailDiagnosticsEntry(
        job_id=job_id,
        server_id="srv",
        route_id="r1",
        network_variant="MTR",
        dimension_context="mtr/minecraft/overworld",
        created_at=0.0,
        rails=rails or [],
    )


def test_rail_diagnostics_cache_expires_lazily() -> None:
    clock = FakeClock()
    cache = RailDiagnosticsCache(ttl_s=300, clock=clock)
    cache.store(_entry("job-1"))

    clock.now += 299
    assert cache.get("job-1") is not None
    assert cache.get("other") is None

    clock.now += 2
    assert cache.get("job-1") is None


def test_rail_diagnostics_cache_keeps_only_latest_entry() -> None:
    cache = RailDiagnosticsCache(ttl_s=300, clock=FakeClock())
    cache.store(_entry("job-1"))
    cache.store(_entry("job-2"))
    assert cache.get("job-1") is None
    assert cache.get("job-2").job_id == "job-2"
    assert cache.clear() == 1
    assert cache.get("job-2") is None


def _rail_row(index: int, ok: bool) -> dict:
    return {
        "rail_id": f"rail-{index}",
        "node_id": str(index),
        "associated_platform_ids": ["PLAT-X"] if index == 7 else [],
        "associated_route_ids": [],
        "calculation_success": ok,
    }


def test_paginate_rail_diagnostics_clamps_and_filters() -> None:
    entry = _entry("job", [_rail_row(i, ok=i % 3 != 0) for i in range(250)])

    page = paginate_rail_diagnostics(entry, page=0, page_size=500)
    assert page["page"] == 1
    assert page["page_size"] == 200
    assert page["total"] == 250
    assert len(page["items"]) == 200

    second = paginate_rail_diagnostics(entry, page=2)
    assert second["page_size"] == 50
    assert second["items"][0]["rail_id"] == "rail-50"

    assert paginate_rail_diagnostics(entry, page_size=0)["page_size"] == 1

    errors = paginate_rail_diagnostics(entry, only_errors=True)
    assert errors["total"] == 84
    assert all(not item["calculation_success"] for item in errors["items"])

    found = paginate_rail_diagnostics(entry, search="  plat-x ")
    assert found["total"] == 1
    assert found["items"][0]["rail_id"] == "rail-7"
