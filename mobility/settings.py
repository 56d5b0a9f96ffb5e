from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_workspace_cache_root() -> str:
    # Processed graphs survive restarts here; the resolver falls back to temp/cwd.
    return str(Path.home() / ".cache" / "osm-mobility")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    map_file: str = Field(default="", alias="MAP_FILE")
    trace_file: str = Field(default="", alias="TRACE_FILE")
    trace_min_time: float = Field(default=0.0, alias="TRACE_MIN_TIME")
    trace_use_ids: bool = Field(default=False, alias="TRACE_USE_IDS")

    # Agent placement policy
    on_streets: bool = Field(default=True, alias="ON_STREETS")
    only_on_streets: bool = Field(default=True, alias="ONLY_ON_STREETS")
    snap_vehicle: str = Field(default="bike", alias="SNAP_VEHICLE")
    snap_radius_m: float = Field(default=300.0, gt=0.0, le=50_000.0, alias="SNAP_RADIUS_M")

    route_cache_max_entries: int = Field(default=10_000, ge=1, alias="ROUTE_CACHE_MAX_ENTRIES")
    route_cache_max_idle_s: float = Field(default=600.0, gt=0.0, alias="ROUTE_CACHE_MAX_IDLE_S")
    route_search_timeout_s: float = Field(default=0.0, ge=0.0, le=3600.0, alias="ROUTE_SEARCH_TIMEOUT_S")

    # Comma-separated override of the workspace candidate roots.
    workspace_roots: str = Field(default="", alias="WORKSPACE_ROOTS")
    workspace_cache_root: str = Field(default_factory=_default_workspace_cache_root, alias="WORKSPACE_CACHE_ROOT")
    graph_build_workers: int = Field(default=0, ge=0, le=32, alias="GRAPH_BUILD_WORKERS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="", alias="LOG_DIR")

    @field_validator("snap_vehicle")
    @classmethod
    def _normalize_snap_vehicle(cls, value: str) -> str:
        vehicle = str(value or "").strip().lower()
        if vehicle not in {"foot", "bike", "car"}:
            raise ValueError("SNAP_VEHICLE must be one of foot, bike, car")
        return vehicle

    def workspace_root_candidates(self) -> list[str]:
        return [part.strip() for part in self.workspace_roots.split(",") if part.strip()]


settings = Settings()
