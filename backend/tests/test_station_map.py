from __future__ import annotations

import asyncio

from railmap.dataset import ScopeDataset, ScopeKey
from railmap.models import Bounds, PlatformRecord, Point2D, RouteGeometryValue, StationRecord, StopMarker
from railmap.station_map import (
    build_station_map,
    compute_station_map_snapshots,
    extract_route_group_key,
    merge_bounds,
    merge_stop_markers,
    platforms_for_station,
)
from railmap.stores import InMemorySnapshotStore

SCOPE = ScopeKey("srv", "MTR", "mtr/minecraft/overworld")


def _geometry(points: list[tuple[float, float]], stops: list[StopMarker] | None = None) -> RouteGeometryValue:
    path = [Point2D(x=x, z=z) for x, z in points]
    xs = [p.x for p in path]
    zs = [p.z for p in path]
    return RouteGeometryValue(
        source="graph",
        paths=[path],
        bounds=Bounds(x_min=min(xs), x_max=max(xs), z_min=min(zs), z_max=max(zs)),
        stops=stops or [],
    )


def _dataset() -> ScopeDataset:
    station = StationRecord.model_validate({"id": "s1", "name": "Central"})
    boxed = StationRecord.model_validate({"id": "s2", "name": "Boxed", "x_min": 90, "x_max": 110, "z_min": -10, "z_max": 10})
    lonely = StationRecord.model_validate({"id": "s3", "name": "Lonely"})
    platforms = [
        PlatformRecord.model_validate({"id": "p1", "station_id": "s1", "route_ids": ["r1", "r2", "r3"]}),
        PlatformRecord.model_validate(
            {"id": "p2", "pos_1": {"x": 95, "y": 64, "z": 0}, "pos_2": {"x": 120, "y": 64, "z": 0}, "route_ids": ["r1"]}
        ),
    ]
    return ScopeDataset(
        platform_records=platforms,
        platform_map={p.id: p for p in platforms},
        platform_route_ids={"p1": ["r1", "r2", "r3"], "p2": ["r1"]},
        station_records=[station, boxed, lonely],
        station_map={s.id: s for s in (station, boxed, lonely)},
    )


def test_extract_route_group_key_strips_qualifiers() -> None:
    assert extract_route_group_key("Line 1||East|Express") == "Line 1"
    assert extract_route_group_key(" Red | West ") == "Red"
    assert extract_route_group_key("|hidden") is None
    assert extract_route_group_key(None) is None


def test_merge_helpers_union_bounds_and_dedup_stops() -> None:
    merged = merge_bounds(Bounds(x_min=0, x_max=1, z_min=0, z_max=1), Bounds(x_min=-1, x_max=0, z_min=2, z_max=3))
    assert merged == Bounds(x_min=-1, x_max=1, z_min=0, z_max=3)
    assert merge_bounds(None, None) is None

    stops = [StopMarker(station_id="s1", x=0, z=0, label="A")]
    merge_stop_markers(
        stops,
        [
            StopMarker(station_id="s1", x=5, z=5, label="A again"),
            StopMarker(x=1, z=1, label="B"),
            StopMarker(x=1, z=1, label="B"),
        ],
    )
    assert [stop.label for stop in stops] == ["A", "B"]


def test_platforms_for_station_uses_linkage_or_bounding_box() -> None:
    dataset = _dataset()
    assert [p.id for p in platforms_for_station(dataset.station_map["s1"], dataset.platform_records)] == ["p1"]
    # midpoint (108, 0) and pos_1 fall inside the box, pos_2 does not
    assert [p.id for p in platforms_for_station(dataset.station_map["s2"], dataset.platform_records)] == ["p2"]
    assert platforms_for_station(dataset.station_map["s3"], dataset.platform_records) == []


def test_build_station_map_groups_lines_and_splits_distant_branches() -> None:
    dataset = _dataset()
    geometries = {
        "r1": _geometry([(0, 0), (100, 0)], [StopMarker(station_id="s1", x=0, z=0, label="Central")]),
        "r2": _geometry([(5000, 0), (5100, 0)], [StopMarker(station_id="s1", x=0, z=0, label="Central")]),
        "r3": _geometry([(0, 0), (0, 100)]),
    }
    names = {"r1": "Red|East", "r2": "Red|West", "r3": "Blue"}
    colors = {"r1": 0xFF0000, "r2": 0xAA0000, "r3": None}

    payload = build_station_map(
        dataset.station_map["s1"],
        scope=SCOPE,
        dataset=dataset,
        route_geometry_by_id=geometries,
        route_names=names,
        route_colors=colors,
    )

    assert payload is not None
    assert payload.dimension == "minecraft:overworld"
    assert [(g.key, g.display_name) for g in payload.groups] == [("Blue", "Blue"), ("Red", "Red"), ("Red#2", "Red")]
    red, red_far = payload.groups[1], payload.groups[2]
    assert red.route_ids == ["r1"]
    assert red.color == 0xFF0000
    assert red_far.route_ids == ["r2"]
    assert red_far.bounds.x_min == 5000
    assert payload.groups[0].color is None


def test_build_station_map_merges_nearby_routes_of_one_line() -> None:
    dataset = _dataset()
    geometries = {
        "r1": _geometry([(0, 0), (100, 0)], [StopMarker(station_id="s1", x=0, z=0, label="Central")]),
        "r2": _geometry([(50, 0), (300, 0)], [StopMarker(station_id="s1", x=0, z=0, label="Central")]),
    }
    payload = build_station_map(
        dataset.station_map["s1"],
        scope=SCOPE,
        dataset=dataset,
        route_geometry_by_id=geometries,
        route_names={"r1": "Red", "r2": "Red||night"},
        route_colors={},
    )

    assert payload is not None
    assert len(payload.groups) == 1
    group = payload.groups[0]
    assert group.route_ids == ["r1", "r2"]
    assert len(group.paths) == 2
    assert len(group.stops) == 1
    assert (group.bounds.x_min, group.bounds.x_max) == (0, 300)


def test_compute_station_map_snapshots_writes_only_served_stations() -> None:
    dataset = _dataset()
    store = InMemorySnapshotStore()
    geometries = {"r1": _geometry([(0, 0), (100, 0)])}

    written = asyncio.run(
        compute_station_map_snapshots(
            store,
            scope=SCOPE,
            dataset=dataset,
            route_geometry_by_id=geometries,
            fingerprint="fp",
        )
    )

    assert sorted(written) == ["s1", "s2"]
    snapshot = asyncio.run(store.get_station_map(SCOPE, "s1"))
    assert snapshot is not None
    assert snapshot.source_fingerprint == "fp"
    assert asyncio.run(store.get_station_map(SCOPE, "s3")) is None
