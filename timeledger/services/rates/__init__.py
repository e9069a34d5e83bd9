"""Exchange-rate sources and the day-keyed rate cache."""

from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.rates.source import (
    ExchangeRateSource,
    FrankfurterRateSource,
    RateError,
    RateTable,
    RateUnavailableError,
)

__all__ = [
    "ExchangeRateCache",
    "ExchangeRateSource",
    "FrankfurterRateSource",
    "RateError",
    "RateTable",
    "RateUnavailableError",
]
