"""Cache-aside layer in front of the dashboard aggregation.

Fresh entries (younger than the TTL) are served from the store. Misses are
computed once per key no matter how many callers ask concurrently: the first
caller registers a task for the key and everybody else awaits that task.
Store failures are counted and logged but never fail a request.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from balancebook.aggregation import DashboardQuery, FinancialAggregator
from balancebook.cache_store import CacheEntry, CacheScope, CacheStore, CacheStoreError, entry_matches
from balancebook.currency_conversion import Clock, utc_now
from balancebook.money import Currency
from balancebook.months import normalize_month_key
from balancebook.schemas import DashboardSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_TTL = timedelta(minutes=5)
MAX_CACHE_SIZE_BYTES = 512 * 1024


def generate_cache_key(
    month_key: str,
    account_id: Optional[str] = None,
    preferred_currency: Optional[Currency] = None,
    user_id: Optional[str] = None,
) -> str:
    account = account_id or "ALL"
    currency = preferred_currency.value if preferred_currency else "DEFAULT"
    if user_id:
        return f"dashboard:{user_id}:{month_key}:{account}:{currency}"
    return f"dashboard:{month_key}:{account}:{currency}"


@dataclass(frozen=True)
class CacheMetrics:
    cache_hit: int
    cache_miss: int
    cache_error: int
    last_reset: datetime

    @property
    def total(self) -> int:
        return self.cache_hit + self.cache_miss

    @property
    def hit_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.cache_hit / self.total * 100, 2)

    def as_dict(self) -> dict:
        return {
            "cache_hit": self.cache_hit,
            "cache_miss": self.cache_miss,
            "cache_error": self.cache_error,
            "last_reset": self.last_reset,
            "total": self.total,
            "hit_rate": self.hit_rate,
        }


@dataclass(frozen=True)
class _InFlight:
    task: asyncio.Task
    scope: CacheScope


class DashboardCache:
    def __init__(
        self,
        store: CacheStore,
        aggregator: FinancialAggregator,
        *,
        ttl: timedelta = CACHE_TTL,
        max_payload_bytes: int = MAX_CACHE_SIZE_BYTES,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._ttl = ttl
        self._max_payload_bytes = max_payload_bytes
        self._clock = clock
        self._in_flight: Dict[str, _InFlight] = {}
        self.reset_metrics()

    async def init(self) -> None:
        await self._store.init()
        self.reset()

    def reset(self) -> None:
        self._in_flight.clear()
        self.reset_metrics()

    def reset_metrics(self) -> None:
        self._cache_hit = 0
        self._cache_miss = 0
        self._cache_error = 0
        self._last_reset = self._clock()

    def get_metrics(self) -> CacheMetrics:
        return CacheMetrics(
            cache_hit=self._cache_hit,
            cache_miss=self._cache_miss,
            cache_error=self._cache_error,
            last_reset=self._last_reset,
        )

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def get_snapshot(self, query: DashboardQuery) -> DashboardSnapshot:
        month_key = normalize_month_key(query.month_key)
        query = DashboardQuery(month_key, query.account_id, query.preferred_currency, query.user_id)
        scope = CacheScope(
            month_key=month_key,
            account_id=query.account_id,
            preferred_currency=query.preferred_currency.value if query.preferred_currency else None,
        )
        return await self.get_cached_data(
            generate_cache_key(month_key, query.account_id, query.preferred_currency, query.user_id),
            lambda: self._aggregator.compute(query),
            scope,
            encode=lambda snapshot: snapshot.model_dump_json(),
            decode=DashboardSnapshot.model_validate_json,
        )

    async def get_cached_data(
        self,
        cache_key: str,
        compute: Callable[[], Awaitable[T]],
        scope: CacheScope,
        *,
        encode: Callable[[T], str],
        decode: Callable[[str], T],
    ) -> T:
        # Lookup and registration must not be separated by an await.
        flight = self._in_flight.get(cache_key)
        if flight is None:
            task = asyncio.ensure_future(self._load(cache_key, compute, scope, encode, decode))
            flight = _InFlight(task=task, scope=scope)
            self._in_flight[cache_key] = flight
            task.add_done_callback(functools.partial(self._release, cache_key))
        else:
            logger.debug("Joining in-flight dashboard computation for %s", cache_key)
        return await asyncio.shield(flight.task)

    async def invalidate(self, month_key: Optional[str] = None, account_id: Optional[str] = None) -> None:
        for key in [k for k, f in self._in_flight.items() if entry_matches(f.scope, month_key, account_id)]:
            del self._in_flight[key]
        try:
            removed = await self._store.delete_matching(month_key, account_id)
        except CacheStoreError as exc:
            self._cache_error += 1
            logger.warning(
                "Dashboard cache invalidation failed (month=%s, account=%s): %s", month_key, account_id, exc
            )
            return
        logger.debug(
            "Invalidated %d dashboard cache entries (month=%s, account=%s)", removed, month_key, account_id
        )

    async def invalidate_all(self) -> None:
        await self.invalidate()

    async def _load(
        self,
        cache_key: str,
        compute: Callable[[], Awaitable[T]],
        scope: CacheScope,
        encode: Callable[[T], str],
        decode: Callable[[str], T],
    ) -> T:
        cached = await self._read_fresh(cache_key, decode)
        if cached is not None:
            return cached

        data = await compute()
        self._cache_miss += 1
        logger.debug("Dashboard cache miss for %s", cache_key)

        payload = encode(data)
        payload_size = len(payload.encode("utf-8"))
        if payload_size > self._max_payload_bytes:
            logger.warning(
                "Dashboard cache payload too large for %s (%d > %d bytes); not caching",
                cache_key,
                payload_size,
                self._max_payload_bytes,
            )
            return data

        flight = self._in_flight.get(cache_key)
        if flight is None or flight.task is not asyncio.current_task():
            logger.debug("Dashboard cache key %s invalidated during computation; not caching", cache_key)
            return data

        entry = CacheEntry(
            cache_key=cache_key,
            payload=payload,
            fetched_at=self._clock(),
            month_key=scope.month_key,
            account_id=scope.account_id,
            preferred_currency=scope.preferred_currency,
        )
        try:
            await self._store.write(entry)
        except CacheStoreError as exc:
            self._cache_error += 1
            logger.warning("Dashboard cache write failed for %s: %s", cache_key, exc)
        return data

    async def _read_fresh(self, cache_key: str, decode: Callable[[str], T]) -> Optional[T]:
        try:
            entry = await self._store.read(cache_key)
        except CacheStoreError as exc:
            self._cache_error += 1
            logger.warning("Dashboard cache read failed for %s: %s", cache_key, exc)
            return None
        if entry is None or self._clock() - entry.fetched_at > self._ttl:
            return None
        try:
            value = decode(entry.payload)
        except ValueError as exc:
            self._cache_error += 1
            logger.warning("Discarding undecodable dashboard cache entry %s: %s", cache_key, exc)
            return None
        self._cache_hit += 1
        logger.debug("Dashboard cache hit for %s", cache_key)
        return value

    def _release(self, cache_key: str, task: asyncio.Task) -> None:
        flight = self._in_flight.get(cache_key)
        if flight is not None and flight.task is task:
            del self._in_flight[cache_key]
