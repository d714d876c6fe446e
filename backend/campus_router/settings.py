from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_osrm_base_url() -> str:
    # In docker-compose, OSRM is reachable by service name "osrm".
    # When running the backend directly on the host, OSRM is typically exposed on localhost:5000.
    return "http://osrm:5000" if _running_in_docker() else "http://localhost:5000"


class Settings(BaseSettings):
    """Validated settings (env-driven). Resolved once at startup."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Campus rectangle. Default is the rectangle the campus paths were surveyed in;
    # the map-viewport rectangle (11.23..11.26, 124.99..125.02) is wider.
    campus_north_lat: float = Field(default=11.2500, ge=-90, le=90, alias="CAMPUS_NORTH_LAT")
    campus_south_lat: float = Field(default=11.2380, ge=-90, le=90, alias="CAMPUS_SOUTH_LAT")
    campus_east_lon: float = Field(default=125.0080, ge=-180, le=180, alias="CAMPUS_EAST_LON")
    campus_west_lon: float = Field(default=124.9960, ge=-180, le=180, alias="CAMPUS_WEST_LON")

    junction_radius_km: float = Field(default=0.008, gt=0.0, le=0.1, alias="JUNCTION_RADIUS_KM")
    snap_limit_km: float = Field(default=0.5, gt=0.0, alias="SNAP_LIMIT_KM")
    walking_pace_km_per_min: float = Field(default=0.083, gt=0.0, alias="WALKING_PACE_KM_PER_MIN")

    external_timeout_ms: int = Field(default=4000, ge=100, le=60_000, alias="EXTERNAL_TIMEOUT_MS")
    request_deadline_ms: int = Field(default=8000, ge=100, le=120_000, alias="REQUEST_DEADLINE_MS")

    osrm_base_url: str = Field(default_factory=_default_osrm_base_url, alias="OSRM_BASE_URL")
    osrm_profile: str = Field(default="foot", alias="OSRM_PROFILE")

    # Path source: the hosted database in production, a fixture for dev/tests.
    path_store: Literal["supabase", "fixture"] = Field(default="supabase", alias="PATH_STORE")
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    path_fixture_file: str = Field(default="", alias="PATH_FIXTURE_FILE")
    path_snapshot_ttl_s: int = Field(default=0, ge=0, le=30, alias="PATH_SNAPSHOT_TTL_S")
    path_store_timeout_ms: int = Field(default=5000, ge=100, le=60_000, alias="PATH_STORE_TIMEOUT_MS")

    out_dir: str = Field(default="/app/out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @model_validator(mode="after")
    def _check_campus_rectangle(self) -> "Settings":
        if self.campus_south_lat > self.campus_north_lat:
            raise ValueError("CAMPUS_SOUTH_LAT must not exceed CAMPUS_NORTH_LAT")
        if self.campus_west_lon > self.campus_east_lon:
            raise ValueError("CAMPUS_WEST_LON must not exceed CAMPUS_EAST_LON")
        self.osrm_profile = str(self.osrm_profile or "foot").strip() or "foot"
        return self


settings = Settings()
