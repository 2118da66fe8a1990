from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from balancebook.db import as_utc, dashboard_cache, init_db


class CacheStoreError(RuntimeError):
    """Base class for failures of the persistent dashboard cache."""


class CacheReadFailure(CacheStoreError):
    pass


class CacheWriteFailure(CacheStoreError):
    pass


@dataclass(frozen=True)
class CacheScope:
    month_key: str
    account_id: Optional[str] = None
    preferred_currency: Optional[str] = None


@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    payload: str
    fetched_at: datetime
    month_key: str
    account_id: Optional[str] = None
    preferred_currency: Optional[str] = None


class CacheStore(Protocol):
    async def init(self) -> None: ...

    async def read(self, cache_key: str) -> Optional[CacheEntry]: ...

    async def write(self, entry: CacheEntry) -> None: ...

    async def delete_matching(self, month_key: Optional[str], account_id: Optional[str]) -> int: ...


def entry_matches(entry: CacheEntry | CacheScope, month_key: Optional[str], account_id: Optional[str]) -> bool:
    """Invalidation scope rules.

    With both filters, "all accounts" entries of that month are included,
    since they aggregate the account too.
    """
    if month_key and account_id:
        return entry.month_key == month_key and entry.account_id in (account_id, None)
    if month_key:
        return entry.month_key == month_key
    if account_id:
        return entry.account_id == account_id
    return True


class InMemoryCacheStore:
    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    async def init(self) -> None:
        return None

    async def read(self, cache_key: str) -> Optional[CacheEntry]:
        return self._entries.get(cache_key)

    async def write(self, entry: CacheEntry) -> None:
        self._entries[entry.cache_key] = entry

    async def delete_matching(self, month_key: Optional[str], account_id: Optional[str]) -> int:
        doomed = [key for key, entry in self._entries.items() if entry_matches(entry, month_key, account_id)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class SqlCacheStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def init(self) -> None:
        await init_db(self.engine)

    async def read(self, cache_key: str) -> Optional[CacheEntry]:
        stmt = select(dashboard_cache).where(dashboard_cache.c.cache_key == cache_key)
        try:
            async with self.engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except SQLAlchemyError as exc:
            raise CacheReadFailure(f"Failed to read cache entry {cache_key}") from exc
        if row is None:
            return None
        return CacheEntry(
            cache_key=row["cache_key"],
            payload=row["data"],
            fetched_at=as_utc(row["fetched_at"]),
            month_key=row["month_key"],
            account_id=row["account_id"],
            preferred_currency=row["preferred_currency"],
        )

    async def write(self, entry: CacheEntry) -> None:
        values = {
            "data": entry.payload,
            "fetched_at": entry.fetched_at,
            "month_key": entry.month_key,
            "account_id": entry.account_id,
            "preferred_currency": entry.preferred_currency,
        }
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    delete(dashboard_cache).where(dashboard_cache.c.cache_key == entry.cache_key)
                )
                await conn.execute(dashboard_cache.insert().values(cache_key=entry.cache_key, **values))
        except SQLAlchemyError as exc:
            raise CacheWriteFailure(f"Failed to write cache entry {entry.cache_key}") from exc

    async def delete_matching(self, month_key: Optional[str], account_id: Optional[str]) -> int:
        stmt = delete(dashboard_cache)
        if month_key and account_id:
            stmt = stmt.where(
                and_(
                    dashboard_cache.c.month_key == month_key,
                    or_(
                        dashboard_cache.c.account_id == account_id,
                        dashboard_cache.c.account_id.is_(None),
                    ),
                )
            )
        elif month_key:
            stmt = stmt.where(dashboard_cache.c.month_key == month_key)
        elif account_id:
            stmt = stmt.where(dashboard_cache.c.account_id == account_id)
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise CacheWriteFailure("Failed to invalidate dashboard cache") from exc
        return result.rowcount or 0
