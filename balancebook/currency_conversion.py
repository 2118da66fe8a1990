from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from balancebook.money import (
    SUPPORTED_CURRENCIES,
    Currency,
    coerce_decimal,
    normalize_currency,
    round_money,
)

logger = logging.getLogger(__name__)

# Target currency per 1 USD.
DEFAULT_RATES: dict[Currency, Decimal] = {
    Currency.USD: Decimal("1"),
    Currency.EUR: Decimal("0.92"),
    Currency.ILS: Decimal("3.70"),
}

DEFAULT_PAIR_TTL = timedelta(hours=24)
DEFAULT_FETCH_TIMEOUT_SECONDS = 8.0


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateFetcher(Protocol):
    def __call__(
        self, base_currency: Currency, on_date: date | None = None
    ) -> Awaitable[Mapping[Currency, Decimal]]: ...


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StaticRateFetcher:
    """Deterministic, in-memory FX rates expressed per 1 USD."""

    rates: Mapping[Currency, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    async def __call__(
        self, base_currency: Currency, on_date: date | None = None
    ) -> Mapping[Currency, Decimal]:
        base = normalize_currency(base_currency)
        try:
            base_rate = self.rates[base]
        except KeyError as exc:
            raise RateProviderUnavailable(f"No static rate for {base.value}") from exc
        return {
            currency: rate / base_rate
            for currency, rate in self.rates.items()
            if currency != base
        }


@dataclass(frozen=True)
class FrankfurterRateFetcher:
    base_url: str = "https://api.frankfurter.app"
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS

    async def __call__(
        self, base_currency: Currency, on_date: date | None = None
    ) -> Mapping[Currency, Decimal]:
        return await asyncio.to_thread(self._fetch_rates, normalize_currency(base_currency), on_date)

    def _fetch_rates(self, base_currency: Currency, on_date: date | None) -> Mapping[Currency, Decimal]:
        endpoint = on_date.isoformat() if on_date else "latest"
        targets = ",".join(c.value for c in SUPPORTED_CURRENCIES if c != base_currency)
        url = f"{self.base_url}/{endpoint}?from={base_currency.value}&to={targets}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed: dict[Currency, Decimal] = {}
        for code, value in rates.items():
            try:
                parsed[normalize_currency(code)] = Decimal(str(value))
            except ValueError:
                continue
        return parsed


class ConversionStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    UNCONVERTED = "unconverted"


_STATUS_SEVERITY = {ConversionStatus.FRESH: 0, ConversionStatus.STALE: 1, ConversionStatus.UNCONVERTED: 2}


def worst_status(statuses: Iterable[ConversionStatus]) -> ConversionStatus:
    return max(statuses, key=_STATUS_SEVERITY.__getitem__, default=ConversionStatus.FRESH)


@dataclass(frozen=True)
class ConversionResult:
    amount: Decimal
    status: ConversionStatus
    rate: Optional[Decimal] = None
    rate_fetched_at: Optional[datetime] = None

    @property
    def is_exact(self) -> bool:
        return self.status is ConversionStatus.FRESH


def rate_key(source: Currency, target: Currency) -> str:
    return f"{source.value}:{target.value}"


@dataclass(frozen=True)
class RateTable:
    reference_date: date
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    fetched_at: Optional[datetime] = None
    is_stale: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.rates

    def get(self, source: Currency, target: Currency) -> Optional[Decimal]:
        if source == target:
            return Decimal("1")
        return self.rates.get(rate_key(source, target))


@dataclass(frozen=True)
class CachedRate:
    rate: Decimal
    fetched_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RateRefreshResult:
    success: bool
    updated_at: datetime
    error: Optional[str] = None


class CurrencyConversionService:
    """Rate tables per reference date plus a per-pair rate cache.

    Provider failures never propagate: callers get the most recent rate we
    have, or the unconverted amount when we have none.
    """

    def __init__(
        self,
        fetcher: RateFetcher,
        *,
        pair_ttl: timedelta = DEFAULT_PAIR_TTL,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        self._fetcher = fetcher
        self._pair_ttl = pair_ttl
        self._fetch_timeout_seconds = fetch_timeout_seconds
        self._clock = clock
        self._tables: dict[date, RateTable] = {}
        self._latest_table: RateTable | None = None
        self._pairs: dict[tuple[Currency, Currency], CachedRate] = {}
        self._last_update: datetime | None = None

    @property
    def last_update_time(self) -> datetime | None:
        return self._last_update

    async def batch_load_rates(self, reference_date: date | None = None) -> RateTable:
        today = self._clock().date()
        target_date = min(reference_date or today, today)
        cached = self._tables.get(target_date)
        if cached is not None:
            return cached

        try:
            table = await self._fetch_table(target_date, use_latest=target_date == today)
        except RateProviderUnavailable as exc:
            return self._fallback_table(target_date, exc)

        self._tables[target_date] = table
        if self._latest_table is None or table.reference_date >= self._latest_table.reference_date:
            self._latest_table = table
        return table

    async def refresh_rates(self) -> RateRefreshResult:
        now = self._clock()
        today = now.date()
        try:
            table = await self._fetch_table(today, use_latest=True)
        except RateProviderUnavailable as exc:
            logger.warning("Failed to refresh exchange rates: %s", exc)
            return RateRefreshResult(success=False, updated_at=now, error=str(exc))
        self._tables[today] = table
        self._latest_table = table
        logger.info("Refreshed %d exchange rates for %s", len(table.rates), today.isoformat())
        return RateRefreshResult(success=True, updated_at=now)

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: Currency | str,
        target_currency: Currency | str | None,
        table: RateTable,
    ) -> Decimal:
        return self.convert_detailed(amount, source_currency, target_currency, table).amount

    def convert_detailed(
        self,
        amount: Decimal | int | float | str,
        source_currency: Currency | str,
        target_currency: Currency | str | None,
        table: RateTable,
    ) -> ConversionResult:
        coerced = coerce_decimal(amount)
        if target_currency is None:
            return ConversionResult(round_money(coerced), ConversionStatus.FRESH, Decimal("1"))
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ConversionResult(round_money(coerced), ConversionStatus.FRESH, Decimal("1"))

        rate = table.get(source, target)
        if rate is None:
            return ConversionResult(round_money(coerced), ConversionStatus.UNCONVERTED)
        status = ConversionStatus.STALE if table.is_stale else ConversionStatus.FRESH
        return ConversionResult(round_money(coerced * rate), status, rate, table.fetched_at)

    async def convert_async(
        self,
        amount: Decimal | int | float | str,
        source_currency: Currency | str,
        target_currency: Currency | str,
    ) -> ConversionResult:
        coerced = coerce_decimal(amount)
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ConversionResult(round_money(coerced), ConversionStatus.FRESH, Decimal("1"))

        now = self._clock()
        cached = self._pairs.get((source, target))
        if cached is not None and cached.expires_at > now:
            return ConversionResult(
                round_money(coerced * cached.rate), ConversionStatus.FRESH, cached.rate, cached.fetched_at
            )

        try:
            rates = await self._fetch(source, None)
        except RateProviderUnavailable as exc:
            return self._fallback_conversion(coerced, source, target, cached, exc)

        self._remember_pairs(source, rates, now)
        fresh = self._pairs.get((source, target))
        if fresh is None:
            return self._fallback_conversion(
                coerced, source, target, cached, RateProviderUnavailable("pair missing from response")
            )
        return ConversionResult(
            round_money(coerced * fresh.rate), ConversionStatus.FRESH, fresh.rate, fresh.fetched_at
        )

    async def _fetch(self, base: Currency, on_date: date | None) -> Mapping[Currency, Decimal]:
        try:
            return await asyncio.wait_for(self._fetcher(base, on_date), self._fetch_timeout_seconds)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise RateProviderUnavailable(
                f"Rate fetch for {base.value} timed out after {self._fetch_timeout_seconds}s"
            ) from exc

    async def _fetch_table(self, target_date: date, use_latest: bool) -> RateTable:
        now = self._clock()
        rates: dict[str, Decimal] = {}
        for base in SUPPORTED_CURRENCIES:
            fetched = await self._fetch(base, None if use_latest else target_date)
            for currency, value in fetched.items():
                target = normalize_currency(currency)
                if target != base:
                    rates[rate_key(base, target)] = coerce_decimal(value)
            if use_latest:
                self._remember_pairs(base, fetched, now)
        self._last_update = now
        return RateTable(reference_date=target_date, rates=rates, fetched_at=now)

    def _remember_pairs(self, base: Currency, rates: Mapping[Currency, Decimal], now: datetime) -> None:
        for currency, value in rates.items():
            target = normalize_currency(currency)
            if target == base:
                continue
            self._pairs[(base, target)] = CachedRate(
                rate=coerce_decimal(value), fetched_at=now, expires_at=now + self._pair_ttl
            )

    def _fallback_table(self, target_date: date, exc: Exception) -> RateTable:
        if self._latest_table is not None:
            logger.warning(
                "Failed to load exchange rates for %s (%s); using stale rates from %s",
                target_date.isoformat(),
                exc,
                self._latest_table.reference_date.isoformat(),
            )
            return RateTable(
                reference_date=self._latest_table.reference_date,
                rates=self._latest_table.rates,
                fetched_at=self._latest_table.fetched_at,
                is_stale=True,
            )
        logger.warning(
            "Failed to load exchange rates for %s (%s); amounts will not be converted",
            target_date.isoformat(),
            exc,
        )
        return RateTable(reference_date=target_date, is_stale=True)

    def _fallback_conversion(
        self,
        amount: Decimal,
        source: Currency,
        target: Currency,
        cached: CachedRate | None,
        exc: Exception,
    ) -> ConversionResult:
        if cached is not None:
            age = self._clock() - cached.fetched_at
            logger.warning(
                "Failed to fetch exchange rate %s -> %s (%s); using stale rate fetched %s ago",
                source.value,
                target.value,
                exc,
                age,
            )
            return ConversionResult(
                round_money(amount * cached.rate), ConversionStatus.STALE, cached.rate, cached.fetched_at
            )
        logger.warning(
            "No exchange rate available for %s -> %s (%s); returning unconverted amount",
            source.value,
            target.value,
            exc,
        )
        return ConversionResult(round_money(amount), ConversionStatus.UNCONVERTED)
