from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from .dataset import SOURCE_KINDS, ScopeKey

if TYPE_CHECKING:
    from .stores import SourceStore


def _format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "null"
    return str(int(value.timestamp() * 1000))


def format_scope_fingerprint(aggregates: dict[str, tuple[int, datetime | None]]) -> str:
    """``routes:<count>:<max-updated-ms|null>|platforms:...|stations:...|rails:...``"""
    parts: list[str] = []
    for kind in SOURCE_KINDS:
        count, latest = aggregates.get(kind, (0, None))
        parts.append(f"{kind}:{int(count)}:{_format_timestamp(latest)}")
    return "|".join(parts)


async def compute_scope_fingerprint(source: SourceStore, scope: ScopeKey) -> str:
    aggregates = {kind: await source.aggregate(scope, kind) for kind in SOURCE_KINDS}
    return format_scope_fingerprint(aggregates)
