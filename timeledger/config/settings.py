"""
Configuration Management for TimeLedger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Each engine component reads its own settings group, so a component
can be configured (or left at defaults) independently of the others.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerSettings(BaseSettings):
    """Periodic transaction scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        extra="ignore"
    )

    max_occurrences_per_pass: Optional[int] = Field(
        default=None,
        ge=1,
        description="Cap on occurrences posted in one pass (None = drain the whole backlog)"
    )
    retry_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="How many times the trigger helper re-invokes a retryable pass"
    )
    retry_backoff_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Base delay of the trigger helper's exponential backoff"
    )
    retry_backoff_max_seconds: float = Field(
        default=1800.0,
        ge=0.0,
        description="Upper bound of a single backoff delay"
    )
    interval_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="Time between passes when the scheduler runs on a timer"
    )


class ExchangeRateSettings(BaseSettings):
    """Exchange-rate source configuration (Frankfurter-compatible API)."""

    model_config = SettingsConfigDict(
        env_prefix="EXCHANGE_RATES_",
        extra="ignore"
    )

    base_url: str = Field(
        default="https://api.frankfurter.app",
        description="Base URL of the rate provider"
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="HTTP timeout for one rate request"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per fetch before reporting the rate as unavailable"
    )
    backoff_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay between fetch attempts"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class SyncSettings(BaseSettings):
    """Reconciliation configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    reset_to_idle_after_seconds: float = Field(
        default=3.0,
        ge=0.0,
        description="Delay before a finished sync returns the observer to Idle (0 = stay)"
    )
    write_back_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Merges redone when the local ledger changes before the write-back lands"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    default_currency: str = Field(
        default="CNY",
        min_length=3,
        max_length=3,
        description="Currency used when an entity does not name one"
    )

    @field_validator('default_currency')
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def exchange_rates(self) -> ExchangeRateSettings:
        return ExchangeRateSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings groups load from the current environment.

    Returns a dict of {setting_name: is_valid}, with an extra
    "<name>_error" entry for every group that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("scheduler", "exchange_rates", "sync", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
