"""Tolerant readers for the free-form payloads synced from the game server.

Every logical field has an ordered tuple of accepted spellings. Lookups resolve
the first alias that is present (dotted aliases walk nested mappings), so
normalization happens once, before any position or connection extraction.
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from decimal import Decimal
from typing import Any

from .block_pos import BlockPosition, decode_block_position

_MISSING = object()

NODE_POSITION_ALIASES: tuple[str, ...] = (
    "node_pos",
    "nodePos",
    "node.node_pos",
    "node.nodePos",
    "node",
)
CONNECTION_LIST_ALIASES: tuple[str, ...] = (
    "rail_connections",
    "railConnections",
    "connections",
    "connection_map",
    "connectionMap",
)
CONNECTION_TARGET_ALIASES: tuple[str, ...] = ("node_pos", "nodePos", "node")
PLATFORM_IDS_ALIASES: tuple[str, ...] = ("platform_ids", "platformIds")
ROUTE_IDS_ALIASES: tuple[str, ...] = ("route_ids", "routeIds")
STATION_ID_ALIASES: tuple[str, ...] = ("station_id", "stationId")
POS_1_ALIASES: tuple[str, ...] = ("pos_1", "pos1")
POS_2_ALIASES: tuple[str, ...] = ("pos_2", "pos2")
TRANSPORT_MODE_ALIASES: tuple[str, ...] = ("transport_mode", "transportMode")

# Curve field -> (snake, camel) stems; the variant suffix ("1" / "2") is appended.
CURVE_FIELD_ALIASES: dict[str, tuple[str, str]] = {
    "h": ("h", "h"),
    "k": ("k", "k"),
    "r": ("r", "r"),
    "t_start": ("t_start", "tStart"),
    "t_end": ("t_end", "tEnd"),
    "reverse": ("reverse_t", "reverseT"),
    "is_straight": ("is_straight", "isStraight"),
}

CONNECTION_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "rail_type": ("rail_type", "railType"),
    "transport_mode": TRANSPORT_MODE_ALIASES,
    "model_key": ("model_key", "modelKey"),
    "is_secondary_dir": ("is_secondary_dir", "isSecondaryDir"),
    "y_start": ("y_start", "yStart"),
    "y_end": ("y_end", "yEnd"),
    "vertical_curve_radius": ("vertical_curve_radius", "verticalCurveRadius"),
}

STATION_BOUND_ALIASES: dict[str, tuple[str, ...]] = {
    "x_min": ("x_min", "xMin"),
    "x_max": ("x_max", "xMax"),
    "z_min": ("z_min", "zMin"),
    "z_max": ("z_max", "zMax"),
}

_ID_KEYS: tuple[str, ...] = ("id", "entity_id", "entity")
_ID_LIST_KEYS: tuple[str, ...] = (
    *PLATFORM_IDS_ALIASES,
    *ROUTE_IDS_ALIASES,
    "station_ids",
    "stationIds",
    "depot_ids",
    "depotIds",
)
_POSITION_KEYS: frozenset[str] = frozenset(
    {"pos_1", "pos_2", "pos1", "pos2", "node_pos", "nodePos", "start_pos", "end_pos"}
)


def curve_aliases(field: str, suffix: str) -> tuple[str, ...]:
    """Accepted keys of one curve field for variant ``suffix`` ("1" or "2")."""
    snake, camel = CURVE_FIELD_ALIASES[field]
    return tuple(dict.fromkeys((f"{snake}_{suffix}", f"{camel}{suffix}")))


def _lookup(record: dict[str, Any], alias: str) -> Any:
    current: Any = record
    for part in alias.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def iter_present(record: dict[str, Any] | None, aliases: tuple[str, ...]) -> Iterator[Any]:
    if not isinstance(record, dict):
        return
    for alias in aliases:
        value = _lookup(record, alias)
        if value is not _MISSING and value is not None:
            yield value


def first_present(record: dict[str, Any] | None, aliases: tuple[str, ...], default: Any = None) -> Any:
    return next(iter_present(record, aliases), default)


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        f = float(value)
        return f if math.isfinite(f) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            f = float(text)
        except ValueError:
            return None
        return f if math.isfinite(f) else None
    return None


def to_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "y", "on"}:
            return True
        if normalized in {"false", "0", "no", "n", "off"}:
            return False
    return None


def read_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(float(value)):
        return str(int(value))
    return None


def normalize_id(value: Any) -> str | None:
    if isinstance(value, str):
        return value if value else None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value))
    return None


def normalize_id_list(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    out: list[str] = []
    for value in values:
        normalized = normalize_id(value)
        if normalized:
            out.append(normalized)
    return out


def _ensure_string_id(value: Any) -> Any:
    normalized = normalize_id(value)
    if normalized is not None:
        return normalized
    if value is None:
        return None
    return str(value)


def _is_position_key(key: str) -> bool:
    if key in _POSITION_KEYS:
        return True
    lower = key.lower()
    return lower.endswith("_pos") or lower.endswith("position")


def _normalize_position_value(value: Any) -> Any:
    if isinstance(value, list):
        return [_normalize_position_value(entry) for entry in value]
    if isinstance(value, dict):
        return value
    if isinstance(value, BlockPosition):
        return value.as_dict()
    decoded = decode_block_position(value)
    return decoded.as_dict() if decoded is not None else value


def normalize_payload_record(value: dict[str, Any]) -> dict[str, Any]:
    """Stringify ids and id lists, and decode packed positions to ``{x, y, z}``."""
    normalized: dict[str, Any] = dict(value)
    for key in _ID_KEYS:
        if key in normalized:
            normalized[key] = _ensure_string_id(normalized[key])
    for key in _ID_LIST_KEYS:
        entry = normalized.get(key)
        if isinstance(entry, list):
            normalized[key] = [_ensure_string_id(item) for item in entry]
    for key in list(normalized):
        if _is_position_key(key):
            normalized[key] = _normalize_position_value(normalized[key])
    return normalized


def as_json_record(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    return None
