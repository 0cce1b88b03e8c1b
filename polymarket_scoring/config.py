"""
Configuration management for Polymarket Scoring.

Uses pydantic-settings to load configuration from environment variables
with sensible defaults for development. Engine-specific tuning lives in
dataclass configs next to each engine; the values here are the ones an
operator is expected to override per deployment.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Listener dispatch for all engines
    enable_events: bool = True

    # Calibrator
    min_samples_for_calibration: int = 50
    max_outcomes_to_store: int = 10000
    max_outcome_age_hours: float = 720.0

    # Weight configurator
    default_weight_preset: str = "default"
    weight_validation_mode: str = "normalize"
    weight_config_path: Optional[str] = None

    # Priority ranker
    priority_cache_ttl_seconds: int = 300
    escalation_delta: float = 20.0

    # Volume clustering
    cluster_window_seconds: int = 300


# Global settings instance
settings = Settings()
