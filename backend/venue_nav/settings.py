from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_venue_graph_dir() -> str:
    # Venue payloads default to backend/out/venues.
    return str(Path(__file__).resolve().parents[1] / "out" / "venues")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping tunables out of the engine code."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    venue_graph_dir: str = Field(default_factory=_default_venue_graph_dir, alias="VENUE_GRAPH_DIR")

    # External directions / distance-matrix service
    directions_base_url: str = Field(
        default="https://maps.googleapis.com/maps/api",
        alias="DIRECTIONS_BASE_URL",
    )
    directions_api_key: str = Field(default="", alias="DIRECTIONS_API_KEY")
    directions_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="DIRECTIONS_TIMEOUT_S")
    directions_max_retries: int = Field(default=3, ge=1, le=10, alias="DIRECTIONS_MAX_RETRIES")
    directions_traffic_model: str = Field(default="best_guess", alias="DIRECTIONS_TRAFFIC_MODEL")

    # Distance cache
    distance_cache_ttl_s: int = Field(default=1800, ge=1, le=86_400, alias="DISTANCE_CACHE_TTL_S")
    distance_cache_max_entries: int = Field(default=2048, ge=1, alias="DISTANCE_CACHE_MAX_ENTRIES")
    distance_cache_coord_precision: int = Field(default=5, ge=0, le=8, alias="DISTANCE_CACHE_COORD_PRECISION")

    # Batch control (upstream distance-matrix limit is 25 destinations per call)
    batch_chunk_size: int = Field(default=25, ge=1, le=25, alias="BATCH_CHUNK_SIZE")
    batch_concurrency: int = Field(default=4, ge=1, le=64, alias="BATCH_CONCURRENCY")

    # Route planning
    turn_dead_band_deg: float = Field(default=15.0, ge=0.0, le=90.0, alias="TURN_DEAD_BAND_DEG")

    # Progress tracking tolerances (meters)
    off_route_threshold_outdoor_m: float = Field(default=25.0, gt=0.0, alias="OFF_ROUTE_THRESHOLD_OUTDOOR_M")
    off_route_threshold_indoor_m: float = Field(default=5.0, gt=0.0, alias="OFF_ROUTE_THRESHOLD_INDOOR_M")
    step_tolerance_outdoor_m: float = Field(default=20.0, gt=0.0, alias="STEP_TOLERANCE_OUTDOOR_M")
    step_tolerance_indoor_m: float = Field(default=2.0, gt=0.0, alias="STEP_TOLERANCE_INDOOR_M")
    arrival_tolerance_outdoor_m: float = Field(default=20.0, gt=0.0, alias="ARRIVAL_TOLERANCE_OUTDOOR_M")
    arrival_tolerance_indoor_m: float = Field(default=2.0, gt=0.0, alias="ARRIVAL_TOLERANCE_INDOOR_M")

    @model_validator(mode="after")
    def _normalise(self) -> "Settings":
        self.directions_base_url = self.directions_base_url.strip().rstrip("/")
        self.directions_api_key = self.directions_api_key.strip()
        tm = str(self.directions_traffic_model or "best_guess").strip().lower()
        if tm not in {"best_guess", "pessimistic", "optimistic"}:
            tm = "best_guess"
        self.directions_traffic_model = tm
        return self


settings = Settings()
