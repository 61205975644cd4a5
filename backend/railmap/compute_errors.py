from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "route_id_required",
        "route_not_found",
        "route_dataset_not_found",
        "dimension_context_missing",
        "network_variant_mismatch",
        "server_not_found",
        "rail_diagnostics_not_found",
        "scope_claim_conflict",
        "snapshot_store_unavailable",
    }
)

# reason_code -> HTTP status used by the trigger surface
REASON_STATUS: dict[str, int] = {
    "route_id_required": 400,
    "dimension_context_missing": 400,
    "network_variant_mismatch": 400,
    "route_not_found": 404,
    "route_dataset_not_found": 404,
    "server_not_found": 404,
    "rail_diagnostics_not_found": 404,
    "scope_claim_conflict": 409,
    "snapshot_store_unavailable": 503,
}


@dataclass
class ComputeError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class ScopeClaimConflict(ComputeError):
    """Raised by a snapshot store when a scope row already exists on insert."""

    def __init__(self, message: str = "compute scope already exists") -> None:
        super().__init__(reason_code="scope_claim_conflict", message=message)


def normalize_reason_code(reason_code: str, *, default: str = "snapshot_store_unavailable") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def http_status_for(reason_code: str) -> int:
    return REASON_STATUS.get(str(reason_code or "").strip(), 500)
