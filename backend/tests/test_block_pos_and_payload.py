from __future__ import annotations

from railmap.block_pos import (
    BlockPosition,
    decode_block_position,
    encode_block_position,
    extract_block_position,
    round_half_up,
)
from railmap.models import PlatformRecord, RouteRecord, StationRecord
from railmap.payload import (
    NODE_POSITION_ALIASES,
    first_present,
    normalize_id_list,
    normalize_payload_record,
    read_string,
    to_boolean,
    to_number,
)


def test_encode_block_position_packs_x_z_y_fields() -> None:
    assert encode_block_position(BlockPosition(1, 2, 3)) == str((1 << 38) | (3 << 12) | 2)
    assert encode_block_position(None) is None


def test_decode_block_position_sign_extends_negative_axes() -> None:
    pos = BlockPosition(-1200, -64, 345)
    assert decode_block_position(encode_block_position(pos)) == pos
    assert decode_block_position("not-a-number") is None


def test_extract_block_position_accepts_mapping_sequence_and_packed() -> None:
    assert extract_block_position({"x": "1", "y": 2, "z": 3.9}) == BlockPosition(1, 2, 3)
    assert extract_block_position([4, 5, 6]) == BlockPosition(4, 5, 6)
    assert extract_block_position(int(encode_block_position(BlockPosition(7, 8, 9)))) == BlockPosition(7, 8, 9)
    assert extract_block_position({"x": 1, "y": 2}) is None
    assert extract_block_position(True) is None


def test_round_half_up_matches_js_rounding() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(-2.5) == -2
    assert round_half_up(0.49) == 0


def test_scalar_readers_are_tolerant() -> None:
    assert to_number("1.5") == 1.5
    assert to_number(True) is None
    assert to_number("inf") is None
    assert to_boolean("yes") is True
    assert to_boolean("off") is False
    assert to_boolean(0) is False
    assert to_boolean("maybe") is None
    assert read_string(5.0) == "5"
    assert read_string("  ") is None
    assert normalize_id_list([1, "a", "", None, True]) == ["1", "a"]


def test_first_present_resolves_dotted_aliases_in_order() -> None:
    record = {"node": {"nodePos": {"x": 1, "y": 2, "z": 3}}}
    assert first_present(record, NODE_POSITION_ALIASES) == {"x": 1, "y": 2, "z": 3}
    assert first_present({"node_pos": None}, NODE_POSITION_ALIASES, default="missing") == "missing"


def test_normalize_payload_record_stringifies_ids_and_decodes_positions() -> None:
    packed = encode_block_position(BlockPosition(1, 2, 3))
    out = normalize_payload_record({"id": 12, "platform_ids": [1, 2], "pos_1": packed, "name": "x"})
    assert out["id"] == "12"
    assert out["platform_ids"] == ["1", "2"]
    assert out["pos_1"] == {"x": 1, "y": 2, "z": 3}
    assert out["name"] == "x"


def test_records_accept_camel_case_aliases() -> None:
    route = RouteRecord.model_validate({"id": 7, "platformIds": [1, 2], "transportMode": "TRAIN"})
    assert route.id == "7"
    assert route.platform_ids == ["1", "2"]
    assert route.transport_mode == "TRAIN"

    packed = encode_block_position(BlockPosition(10, 64, -5))
    platform = PlatformRecord.model_validate({"id": "p1", "stationId": 3, "pos1": packed, "routeIds": ["7"]})
    assert platform.station_id == "3"
    assert platform.pos_1 == BlockPosition(10, 64, -5)
    assert platform.pos_2 is None
    assert platform.route_ids == ["7"]

    station = StationRecord.model_validate({"id": "s1", "xMin": -5, "xMax": 5, "zMin": 0, "zMax": 10})
    assert station.has_bounds
    assert StationRecord.model_validate({"id": "s2", "xMin": 1}).has_bounds is False
