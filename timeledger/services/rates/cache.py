"""
Exchange Rate Cache

Serves conversion factors from tables keyed by (base currency, provider date).

DESIGN DECISION: Tables are stored under the date the provider put in the
response, not under the date we asked for. A request alias remembers which
provider table answered (base, requested day), so asking again on the same
day (even over a weekend, when the provider returns Friday's table) never
re-fetches.

When the source fails, any cached table quoting the pair (directly or
inversely) is used instead; only when none exists is the rate unavailable.
"""

import asyncio
from collections import defaultdict
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

import structlog

from timeledger.models.audit import AuditEventBuilder
from timeledger.models.ledger import utcnow
from timeledger.services.rates.source import (
    ExchangeRateSource,
    RateTable,
    RateUnavailableError,
)

CENTS = Decimal("0.01")


class ExchangeRateCache:
    """
    Day-keyed cache in front of an ExchangeRateSource.

    Concurrent misses for the same base currency share one fetch.
    """

    def __init__(
        self,
        source: ExchangeRateSource,
        audit_logger=None,
        fetch_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            source: Where tables are fetched from on a miss
            audit_logger: Optional AuditLogger for fetches and failures
            fetch_timeout: Upper bound for one fetch; exceeding it counts as unavailable
            clock: Current time (decides whether a request is for 'latest')
        """
        self._source = source
        self._audit_logger = audit_logger
        self._fetch_timeout = fetch_timeout
        self._clock = clock
        self._tables: dict[tuple[str, date], RateTable] = {}
        self._aliases: dict[tuple[str, date], date] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._logger = structlog.get_logger(__name__)
        self.fetch_count = 0

    def _lookup(self, base: str, as_of: date) -> Optional[RateTable]:
        provider_date = self._aliases.get((base, as_of), as_of)
        return self._tables.get((base, provider_date))

    def _store(self, base: str, as_of: date, table: RateTable) -> None:
        self._tables[(base, table.date)] = table
        self._aliases[(base, as_of)] = table.date

    def cached_factor(self, from_currency: str, to_currency: str, as_of: date) -> Optional[Decimal]:
        """
        Best cached factor for a pair, without fetching.

        Prefers the newest table dated on or before `as_of`, then any newer
        table; direct quotes win over inverted ones.
        """
        def pick(candidates: list[RateTable]) -> Optional[RateTable]:
            if not candidates:
                return None
            earlier = [t for t in candidates if t.date <= as_of]
            pool = earlier or candidates
            return max(pool, key=lambda t: t.date) if earlier else min(pool, key=lambda t: t.date)

        direct = pick([
            t for (base, _), t in self._tables.items()
            if base == from_currency and t.factor(to_currency) is not None
        ])
        if direct is not None:
            return direct.factor(to_currency)

        inverse = pick([
            t for (base, _), t in self._tables.items()
            if base == to_currency and t.factor(from_currency) is not None
        ])
        if inverse is not None:
            return Decimal("1") / inverse.factor(from_currency)
        return None

    async def _fetch(self, base: str, as_of: date) -> RateTable:
        on = None if as_of >= self._clock().date() else as_of
        fetch = self._source.fetch(base, on)
        try:
            if self._fetch_timeout is not None:
                table = await asyncio.wait_for(fetch, timeout=self._fetch_timeout)
            else:
                table = await fetch
        except asyncio.TimeoutError as e:
            raise RateUnavailableError(f"Rate fetch for {base} timed out") from e
        self.fetch_count += 1
        self._logger.info(
            "rates_fetched",
            base=base,
            requested=as_of.isoformat(),
            provider_date=table.date.isoformat(),
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.rates_fetched(
                base=base,
                provider_date=table.date.isoformat(),
                currency_count=len(table.rates),
            ))
        return table

    async def _unavailable(self, from_currency: str, to_currency: str, message: str) -> RateUnavailableError:
        self._logger.warning(
            "rate_unavailable",
            from_currency=from_currency,
            to_currency=to_currency,
            error=message,
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.rate_unavailable(
                from_currency=from_currency,
                to_currency=to_currency,
                error_message=message,
            ))
        return RateUnavailableError(message)

    async def rate(
        self,
        from_currency: str,
        to_currency: str,
        as_of: Optional[date] = None,
    ) -> Decimal:
        """
        Conversion factor: units of `to_currency` per unit of `from_currency`.

        Raises:
            RateUnavailableError: Source unreachable and nothing cached for the pair
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Decimal("1")
        as_of = as_of or self._clock().date()

        table = self._lookup(from_currency, as_of)
        if table is None:
            async with self._locks[from_currency]:
                table = self._lookup(from_currency, as_of)
                if table is None:
                    try:
                        table = await self._fetch(from_currency, as_of)
                    except RateUnavailableError as e:
                        fallback = self.cached_factor(from_currency, to_currency, as_of)
                        if fallback is not None:
                            self._logger.info(
                                "rate_served_from_cache",
                                from_currency=from_currency,
                                to_currency=to_currency,
                                error=str(e),
                            )
                            return fallback
                        raise await self._unavailable(from_currency, to_currency, str(e)) from e
                    self._store(from_currency, as_of, table)

        factor = table.factor(to_currency)
        if factor is None:
            factor = self.cached_factor(from_currency, to_currency, as_of)
        if factor is None:
            raise await self._unavailable(
                from_currency,
                to_currency,
                f"{to_currency} is not quoted against {from_currency}",
            )
        return factor

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        as_of: Optional[date] = None,
    ) -> Decimal:
        """Convert `amount` and round to cents."""
        if from_currency.upper() == to_currency.upper():
            return amount
        factor = await self.rate(from_currency, to_currency, as_of)
        return (amount * factor).quantize(CENTS, rounding=ROUND_HALF_UP)
