from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, NamedTuple

# Packed long layout: x (26 bits) << 38 | z (26 bits) << 12 | y (12 bits)
XZ_BITS = 26
Y_BITS = 12
XZ_MASK = (1 << XZ_BITS) - 1
Y_MASK = (1 << Y_BITS) - 1
X_SHIFT = 38
Z_SHIFT = 12


class BlockPosition(NamedTuple):
    x: int
    y: int
    z: int

    def as_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "z": self.z}


def _sign_extend(value: int, bits: int) -> int:
    sign_bit = 1 << (bits - 1)
    return value - (1 << bits) if value & sign_bit else value


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        f = float(value)
        if not math.isfinite(f):
            return None
        return int(f)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            return None
    return None


def encode_block_position(position: BlockPosition | None) -> str | None:
    if position is None:
        return None
    x = int(position.x) & XZ_MASK
    y = int(position.y) & Y_MASK
    z = int(position.z) & XZ_MASK
    return str((x << X_SHIFT) | (z << Z_SHIFT) | y)


def decode_block_position(value: Any) -> BlockPosition | None:
    packed = _to_int(value)
    if packed is None:
        return None
    raw_x = (packed >> X_SHIFT) & XZ_MASK
    raw_z = (packed >> Z_SHIFT) & XZ_MASK
    raw_y = packed & Y_MASK
    return BlockPosition(
        x=_sign_extend(raw_x, XZ_BITS),
        y=_sign_extend(raw_y, Y_BITS),
        z=_sign_extend(raw_z, XZ_BITS),
    )


def extract_block_position(value: Any) -> BlockPosition | None:
    """Read a position from an ``{x, y, z}`` mapping, a list/tuple, or a packed long."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, BlockPosition):
        return value
    if isinstance(value, dict):
        if not all(axis in value for axis in ("x", "y", "z")):
            return None
        coords: list[int] = []
        for axis in ("x", "y", "z"):
            raw = value.get(axis)
            if isinstance(raw, bool):
                return None
            try:
                f = float(raw)  # type: ignore[arg-type]
            except (TypeError, ValueError):
                return None
            if not math.isfinite(f):
                return None
            coords.append(int(f))
        return BlockPosition(*coords)
    if isinstance(value, (list, tuple)):
        if len(value) != 3:
            return None
        return extract_block_position({"x": value[0], "y": value[1], "z": value[2]})
    return decode_block_position(value)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
