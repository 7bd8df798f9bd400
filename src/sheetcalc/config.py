"""Configuration management for sheetcalc using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="SHEETCALC_",
        extra="ignore",
    )

    # Rule options
    use_optional_iq_rules: bool = Field(
        default=False,
        description="Base will and perception on 10 instead of IQ",
    )
    use_know_your_own_strength: bool = Field(
        default=False,
        description="Use the 'Know Your Own Strength' lift and damage progressions",
    )
    use_reduced_swing: bool = Field(
        default=False,
        description="Use the reduced swing damage progression",
    )
    use_thrust_equals_swing_minus_2: bool = Field(
        default=False,
        description="Derive basic thrust as basic swing minus 2",
    )
    use_metric_rules: bool = Field(
        default=False,
        description="Use the metric basic lift rules when weight units are metric",
    )
    weight_units: str = Field(default="lb", description="Display weight units (lb or kg)")

    # Character defaults
    initial_points: int = Field(default=150, description="Total points for a new character")
    undo_levels: int = Field(default=100, ge=1, description="Maximum undo history length")

    # Feature worker
    worker_idle_wait: float = Field(
        default=0.5, gt=0, description="Seconds the feature worker sleeps between wakeups"
    )
    worker_retry_backoff: float = Field(
        default=0.1, ge=0, description="Seconds to back off after a failed feature scan"
    )
    worker_finish_timeout: float = Field(
        default=10.0, gt=0, description="Default bound for wait_for_processing_to_finish"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level", alias="LOG_LEVEL")
    log_format: str = Field(
        default="console", description="Log format (console or json)", alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
