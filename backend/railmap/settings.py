from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_out_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Env-driven settings for the snapshot compute service."""

    model_config = SettingsConfigDict(
        # repo root .env or backend/.env
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    source_dump_dir: str = Field(default="", alias="RAILWAY_SOURCE_DUMP_DIR")

    # Per-scope worker pools (routes first, then stations)
    snapshot_route_concurrency: int = Field(
        default=2,
        ge=1,
        le=64,
        alias="RAILWAY_SNAPSHOT_ROUTE_CONCURRENCY",
    )
    snapshot_station_concurrency: int = Field(
        default=2,
        ge=1,
        le=64,
        alias="RAILWAY_SNAPSHOT_STATION_CONCURRENCY",
    )

    # Large routes can span thousands of rail nodes. If the search is capped too
    # low, geometry falls back to platform centers and draws straight lines.
    route_finder_max_visits: int = Field(
        default=120_000,
        ge=1,
        alias="RAILWAY_ROUTE_FINDER_MAX_VISITS",
    )
    route_finder_min_edge_cost: float = Field(
        default=0.001,
        gt=0.0,
        alias="RAILWAY_ROUTE_FINDER_MIN_EDGE_COST",
    )
    route_finder_density_weight: float = Field(
        default=0.5,
        ge=0.0,
        alias="RAILWAY_ROUTE_FINDER_DENSITY_WEIGHT",
    )
    platform_snap_max_radius: int = Field(
        default=8,
        ge=0,
        le=64,
        alias="RAILWAY_PLATFORM_SNAP_MAX_RADIUS",
    )
    station_merge_max_distance: float = Field(
        default=1500.0,
        ge=0.0,
        alias="RAILWAY_STATION_MERGE_MAX_DISTANCE",
    )
    rail_diagnostics_ttl_s: int = Field(
        default=300,
        ge=1,
        alias="RAILWAY_RAIL_DIAGNOSTICS_TTL_S",
    )
    fallback_calculate_batch_size: int = Field(
        default=25,
        ge=1,
        le=1000,
        alias="RAILWAY_FALLBACK_CALCULATE_BATCH_SIZE",
    )

    @model_validator(mode="after")
    def _normalize_paths(self) -> "Settings":
        self.log_level = str(self.log_level or "INFO").strip().upper() or "INFO"
        self.source_dump_dir = str(self.source_dump_dir or "").strip()
        return self

    def resolved_source_dump_dir(self) -> Path:
        if self.source_dump_dir:
            return Path(self.source_dump_dir)
        return Path(self.out_dir) / "source"


settings = Settings()
