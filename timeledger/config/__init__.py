"""Configuration package."""

from timeledger.config.settings import (
    AppSettings,
    ExchangeRateSettings,
    SchedulerSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "ExchangeRateSettings",
    "SchedulerSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
