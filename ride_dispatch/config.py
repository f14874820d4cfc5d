"""Centralised application settings loaded from environment / .env file."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ScoringWeights(BaseModel):
    """Composite score split (documented operator default: 40/35/15/10)."""

    rating: float = 0.40
    proximity: float = 0.35
    experience: float = 0.15
    eta: float = 0.10


class DispatchSettings(BaseModel):
    """Operator-tunable dispatch knobs; editable at runtime via the admin API."""

    auto_dispatch_enabled: bool = True
    auto_dispatch_timeout_seconds: float = Field(5.0, ge=0)
    driver_matching_radius_km: float = Field(10.0, gt=0)
    min_driver_rating: float = Field(3.5, ge=0, le=5)
    requires_driver_confirmation: bool = False
    driver_confirmation_timeout_seconds: float = Field(20.0, ge=0)

    # Retry / escalation
    max_retries: int = Field(3, ge=1)
    radius_growth_factor: float = Field(1.5, ge=1.0)
    max_radius_km: float = Field(25.0, gt=0)
    retry_backoff_seconds: float = Field(5.0, ge=0)
    retry_backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(60.0, ge=0)
    decline_cooldown_seconds: float = Field(300.0, ge=0)
    candidate_limit: int = Field(10, ge=1)

    # Scoring
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    experience_cap_trips: int = Field(500, ge=1)
    eta_cap_minutes: float = Field(20.0, gt=0)
    fallback_speed_kmh: float = Field(30.0, gt=0)
    min_live_speed_kmh: float = Field(5.0, ge=0)


class Settings(BaseSettings):
    # Persistence: "memory" keeps records in-process, "sql" uses SQLAlchemy
    store_backend: str = "memory"
    database_url: str = "sqlite+aiosqlite:///./ride_dispatch.db"

    # Redis (empty disables the sweep lock and event forwarding)
    redis_url: str = ""
    redis_channel_prefix: str = "ride-dispatch"

    # Live location
    h3_resolution: int = 8  # ~0.46 km edge
    stale_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 5.0

    # Pricing
    base_fare: float = 1000.0
    rate_per_km: float = 500.0
    minimum_fare: float = 1500.0

    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)

    model_config = {
        "env_file": ".env",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }


settings = Settings()
