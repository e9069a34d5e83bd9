"""
Exchange-Rate Source using the Frankfurter API

DESIGN DECISION: We use a Frankfurter-compatible endpoint because:
1. Free, no API key
2. Date-stamped responses (the cache keys on the provider's own date)
3. Historical rates for back-dated periodic occurrences

The endpoint answers `GET /latest?from=BASE` (or `/<YYYY-MM-DD>?from=BASE`)
with {"amount": 1.0, "base": "CNY", "date": "2024-05-17", "rates": {...}},
where each rate is how much of that currency `amount` units of BASE buy.

CRITICAL: Any failure to obtain a table is reported as RateUnavailableError.
Callers treat it as transient and defer; they never skip conversion.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from timeledger.config import ExchangeRateSettings, get_settings


class RateError(Exception):
    """Base exception for exchange-rate errors."""
    pass


class RateUnavailableError(RateError):
    """No rate could be fetched or found in the cache. Transient."""
    pass


class RateTable(BaseModel):
    """One provider response: rates for `amount` units of `base` on `date`."""

    amount: Decimal = Field(default=Decimal("1"), gt=0)
    base: str
    date: date
    rates: dict[str, Decimal] = Field(default_factory=dict)

    @field_validator('base')
    @classmethod
    def upper_base(cls, v: str) -> str:
        return v.upper()

    @field_validator('rates')
    @classmethod
    def upper_codes(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        return {code.upper(): rate for code, rate in v.items() if rate > 0}

    def factor(self, to_currency: str) -> Optional[Decimal]:
        """Units of `to_currency` per one unit of base, if quoted."""
        if to_currency == self.base:
            return Decimal("1")
        rate = self.rates.get(to_currency)
        if rate is None:
            return None
        return rate / self.amount


class ExchangeRateSource(ABC):
    """Where rate tables come from."""

    @abstractmethod
    async def fetch(self, base: str, on: Optional[date] = None) -> RateTable:
        """
        Fetch the rate table for `base`.

        Args:
            base: Base currency code
            on: Historical date, or None for the latest table

        Raises:
            RateUnavailableError: If the table cannot be obtained
        """
        pass


class FrankfurterRateSource(ExchangeRateSource):
    """
    HTTP rate source for Frankfurter-compatible APIs.

    Transport errors (including timeouts) are retried with exponential
    backoff; whatever still fails becomes RateUnavailableError.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[ExchangeRateSettings] = None,
    ):
        self._settings = settings or get_settings().exchange_rates
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=self._settings.timeout_seconds,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, base: str) -> httpx.Response:
        client = self._get_client()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(multiplier=self._settings.backoff_seconds, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                response = await client.get(path, params={"from": base})
                response.raise_for_status()
        return response

    async def fetch(self, base: str, on: Optional[date] = None) -> RateTable:
        base = base.upper()
        path = "/latest" if on is None else f"/{on.isoformat()}"

        try:
            response = await self._get(path, base)
        except httpx.HTTPStatusError as e:
            raise RateUnavailableError(
                f"Rate provider answered {e.response.status_code} for {base}"
            ) from e
        except httpx.HTTPError as e:
            raise RateUnavailableError(f"Rate provider unreachable for {base}: {e}") from e

        try:
            return RateTable.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RateUnavailableError(f"Malformed rate response for {base}: {e}") from e
