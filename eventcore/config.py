"""
Settings for the conflict-detection core.

Loaded from ``EVENTCORE_*`` environment variables (or a ``.env`` file).
Complex values such as ``EVENTCORE_VENUES`` are given as JSON.
"""

from __future__ import annotations

from datetime import timedelta, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from eventcore.domain.models import Coordinates


class VenueConfig(BaseModel):
    name: str
    coordinates: Coordinates | None = None


DEFAULT_VENUES: dict[str, list[VenueConfig]] = {
    "Auckland": [
        VenueConfig(name="Eden Park", coordinates=Coordinates(lat=-36.8749, lng=174.7448)),
        VenueConfig(name="Spark Arena", coordinates=Coordinates(lat=-36.8474, lng=174.7786)),
        VenueConfig(name="Aotea Centre", coordinates=Coordinates(lat=-36.8523, lng=174.7632)),
        VenueConfig(name="Auckland Town Hall", coordinates=Coordinates(lat=-36.8529, lng=174.7640)),
        VenueConfig(name="ASB Showgrounds", coordinates=Coordinates(lat=-36.8913, lng=174.7811)),
        VenueConfig(name="North Harbour Stadium", coordinates=Coordinates(lat=-36.7271, lng=174.7003)),
    ],
    "Wellington": [
        VenueConfig(name="Sky Stadium", coordinates=Coordinates(lat=-41.2730, lng=174.7859)),
        VenueConfig(name="Michael Fowler Centre", coordinates=Coordinates(lat=-41.2884, lng=174.7776)),
        VenueConfig(name="TSB Arena", coordinates=Coordinates(lat=-41.2853, lng=174.7807)),
    ],
    "Christchurch": [
        VenueConfig(name="Christchurch Town Hall", coordinates=Coordinates(lat=-43.5287, lng=172.6323)),
        VenueConfig(name="Te Pae", coordinates=Coordinates(lat=-43.5303, lng=172.6366)),
    ],
}


class Settings(BaseSettings):
    """
    Runtime settings for conflict checks, holds and scheduled jobs.

    Environment Variables (prefix ``EVENTCORE_``):
        TIMEZONE: Zone that event dates and times are expressed in (default: UTC)
        LOG_LEVEL / LOG_JSON: Logging verbosity and JSON output toggle
        CONFLICT_BUFFER_DAYS: Extra days queried either side of a candidate
        CALL_TIMEOUT_SECONDS: Bound applied to each repository or send call
        SEND_CONCURRENCY: Sends in flight at once within one job batch
        SCHEDULER_ENABLED: Start the dispatcher loop with the web app
    """

    model_config = SettingsConfigDict(env_prefix="EVENTCORE_", env_file=".env", extra="ignore")

    timezone: str = "UTC"
    log_level: str = "INFO"
    log_json: bool = False

    # Conflict detection
    conflict_buffer_days: int = Field(default=1, ge=0)
    suggestion_limit: int = Field(default=5, ge=0)
    alternative_date_days: int = Field(default=7, ge=0)
    alternative_time_shifts_hours: list[int] = Field(default_factory=lambda: [1, 2, 3])
    nearby_radius_km: float = Field(default=10.0, gt=0)
    venues: dict[str, list[VenueConfig]] = Field(default_factory=lambda: dict(DEFAULT_VENUES))

    # Pencil holds
    default_hold_ttl_hours: float = Field(default=48, gt=0)
    max_hold_ttl_hours: float = Field(default=14 * 24, gt=0)

    # Scheduled jobs
    reminder_window_hours: int = Field(default=24, gt=0)
    deadline_window_hours: int = Field(default=12, gt=0)
    digest_horizon_days: int = Field(default=7, gt=0)
    retention_days: int = Field(default=180, gt=0)
    call_timeout_seconds: float = Field(default=10.0, gt=0)
    send_concurrency: int = Field(default=10, gt=0)
    dispatcher_tick_seconds: float = Field(default=30.0, gt=0)
    scheduler_enabled: bool = False

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        ZoneInfo(v)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v

    @property
    def tz(self) -> tzinfo:
        return ZoneInfo(self.timezone)

    @property
    def default_hold_ttl(self) -> timedelta:
        return timedelta(hours=self.default_hold_ttl_hours)

    @property
    def max_hold_ttl(self) -> timedelta:
        return timedelta(hours=self.max_hold_ttl_hours)


@lru_cache
def get_settings() -> Settings:
    return Settings()
