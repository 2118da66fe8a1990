from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from balancebook.currency_conversion import Clock, CurrencyConversionService, RateTable, utc_now
from balancebook.money import ZERO, Currency, round_money

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_WINDOW = timedelta(minutes=15)
FAILED_SYMBOL_RETRY_AFTER = timedelta(hours=24)


class QuoteUnavailable(RuntimeError):
    """Raised by a quote fetcher when the provider has no price for a symbol."""


class QuoteProviderUnavailable(RuntimeError):
    """Raised when the quote provider cannot be reached or refuses the call."""


@dataclass(frozen=True)
class Holding:
    id: str
    account_id: str
    category_id: str
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    currency: Currency
    account_name: str = ""
    category_name: str = ""
    notes: Optional[str] = None


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    price: Decimal
    fetched_at: datetime
    change_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class HoldingValuation:
    holding: Holding
    current_price: Optional[Decimal]
    change_percent: Optional[Decimal]
    cost_basis: Decimal
    market_value: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    price_age: Optional[datetime]
    is_stale: bool
    current_price_converted: Optional[Decimal] = None
    market_value_converted: Optional[Decimal] = None
    cost_basis_converted: Optional[Decimal] = None
    gain_loss_converted: Optional[Decimal] = None


PriceSource = Callable[[Sequence[str]], Awaitable[Mapping[str, PriceQuote]]]


def value_holding(
    holding: Holding,
    quote: Optional[PriceQuote],
    *,
    now: datetime,
    freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
    preferred_currency: Optional[Currency] = None,
    rate_table: Optional[RateTable] = None,
    converter: Optional[CurrencyConversionService] = None,
) -> HoldingValuation:
    cost_basis = round_money(holding.quantity * holding.average_cost)
    current_price = quote.price if quote is not None else None
    # Unpriced holdings are assumed to be at breakeven.
    market_value = round_money(holding.quantity * current_price) if current_price is not None else cost_basis
    gain_loss = round_money(market_value - cost_basis)
    gain_loss_percent = ZERO if cost_basis == ZERO else round_money(gain_loss / cost_basis * 100)
    is_stale = quote is not None and now - quote.fetched_at > freshness_window

    valuation = HoldingValuation(
        holding=holding,
        current_price=current_price,
        change_percent=quote.change_percent if quote is not None else None,
        cost_basis=cost_basis,
        market_value=market_value,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss_percent,
        price_age=quote.fetched_at if quote is not None else None,
        is_stale=is_stale,
    )
    if preferred_currency is None or preferred_currency == holding.currency:
        return valuation
    if converter is None or rate_table is None:
        raise ValueError("A converter and rate table are required for display conversion.")

    def convert(amount: Decimal) -> Decimal:
        return converter.convert(amount, holding.currency, preferred_currency, rate_table)

    market_value_converted = convert(market_value)
    cost_basis_converted = convert(cost_basis)
    return HoldingValuation(
        holding=holding,
        current_price=valuation.current_price,
        change_percent=valuation.change_percent,
        cost_basis=cost_basis,
        market_value=market_value,
        gain_loss=gain_loss,
        gain_loss_percent=gain_loss_percent,
        price_age=valuation.price_age,
        is_stale=is_stale,
        current_price_converted=convert(current_price) if current_price is not None else None,
        market_value_converted=market_value_converted,
        cost_basis_converted=cost_basis_converted,
        gain_loss_converted=round_money(market_value_converted - cost_basis_converted),
    )


class HoldingsValuator:
    def __init__(
        self,
        converter: CurrencyConversionService,
        price_source: PriceSource,
        *,
        freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
        clock: Clock = utc_now,
    ) -> None:
        self._converter = converter
        self._price_source = price_source
        self._freshness_window = freshness_window
        self._clock = clock

    async def value_holdings(
        self,
        holdings: Iterable[Holding],
        preferred_currency: Optional[Currency] = None,
        rate_table: Optional[RateTable] = None,
    ) -> List[HoldingValuation]:
        holdings = list(holdings)
        if not holdings:
            return []
        quotes = await self._price_source([h.symbol.upper() for h in holdings])
        needs_conversion = preferred_currency is not None and any(
            h.currency != preferred_currency for h in holdings
        )
        if needs_conversion and rate_table is None:
            rate_table = await self._converter.batch_load_rates()

        now = self._clock()
        return [
            value_holding(
                holding,
                quotes.get(holding.symbol.upper()),
                now=now,
                freshness_window=self._freshness_window,
                preferred_currency=preferred_currency,
                rate_table=rate_table,
                converter=self._converter,
            )
            for holding in holdings
        ]


@dataclass
class PriceRefreshResult:
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


class StockPriceRefresher:
    """Refreshes quotes one symbol at a time, honoring the provider's call rate."""

    def __init__(
        self,
        fetch_quote: Callable[[str], Awaitable[PriceQuote]],
        save_quote: Callable[[PriceQuote], Awaitable[None]],
        *,
        min_call_interval_seconds: float = 12.0,
        time_budget_seconds: float = 25.0,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetch_quote = fetch_quote
        self._save_quote = save_quote
        self._min_call_interval_seconds = min_call_interval_seconds
        self._time_budget_seconds = time_budget_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float | None = None
        self._failed_symbols: dict[str, datetime] = {}

    def is_symbol_known_invalid(self, symbol: str) -> bool:
        failed_at = self._failed_symbols.get(symbol.upper())
        if failed_at is None:
            return False
        if self._clock() - failed_at > FAILED_SYMBOL_RETRY_AFTER:
            del self._failed_symbols[symbol.upper()]
            return False
        return True

    async def refresh_prices(self, symbols: Iterable[str]) -> PriceRefreshResult:
        unique_symbols = list(dict.fromkeys(s.strip().upper() for s in symbols if s.strip()))
        result = PriceRefreshResult()
        started_at = self._monotonic()

        for index, symbol in enumerate(unique_symbols):
            if self._monotonic() - started_at >= self._time_budget_seconds:
                result.skipped += len(unique_symbols) - index
                result.errors.append("Refresh time budget exceeded - skipped remaining symbols")
                break
            if self.is_symbol_known_invalid(symbol):
                result.skipped += 1
                result.errors.append(f"{symbol}: Skipped - previously failed (retry after 24h)")
                continue

            try:
                quote = await self._throttled_fetch(symbol)
            except QuoteUnavailable as exc:
                logger.warning("Failed to refresh price for %s: %s", symbol, exc)
                self._failed_symbols[symbol] = self._clock()
                result.errors.append(f"{symbol}: {exc}")
                continue
            except QuoteProviderUnavailable as exc:
                logger.warning("Quote provider unavailable while refreshing %s: %s", symbol, exc)
                result.errors.append(f"{symbol}: {exc}")
                continue

            await self._save_quote(quote)
            result.updated += 1

        return result

    async def _throttled_fetch(self, symbol: str) -> PriceQuote:
        async with self._lock:
            if self._last_call is not None:
                wait = self._min_call_interval_seconds - (self._monotonic() - self._last_call)
                if wait > 0:
                    await self._sleep(wait)
            self._last_call = self._monotonic()
            return await self._fetch_quote(symbol)


@dataclass(frozen=True)
class AlphaVantageQuoteFetcher:
    api_key: str
    base_url: str = "https://www.alphavantage.co/query"
    timeout_seconds: float = 10.0
    clock: Clock = utc_now

    async def __call__(self, symbol: str) -> PriceQuote:
        if not self.api_key:
            raise QuoteProviderUnavailable("Alpha Vantage API key not configured")
        payload = await asyncio.to_thread(self._fetch_payload, symbol.strip().upper())
        return self._parse_quote(symbol.strip().upper(), payload)

    def _fetch_payload(self, symbol: str) -> dict:
        query = urlencode({"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": self.api_key})
        try:
            with urlopen(f"{self.base_url}?{query}", timeout=self.timeout_seconds) as response:
                return json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise QuoteProviderUnavailable("Alpha Vantage API unavailable") from exc

    def _parse_quote(self, symbol: str, payload: dict) -> PriceQuote:
        if "Note" in payload or "Information" in payload:
            raise QuoteProviderUnavailable("API rate limit reached")
        if "Error Message" in payload:
            raise QuoteUnavailable("Invalid symbol")
        quote = payload.get("Global Quote") or {}
        if not quote.get("01. symbol"):
            raise QuoteUnavailable("Invalid symbol or no data available")
        try:
            price = Decimal(quote["05. price"])
            change = quote.get("10. change percent")
            change_percent = Decimal(change.rstrip("%")) if change else None
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise QuoteUnavailable("Malformed quote") from exc
        return PriceQuote(symbol=symbol, price=price, fetched_at=self.clock(), change_percent=change_percent)
