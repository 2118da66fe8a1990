import unittest
from datetime import datetime, timedelta, timezone

from balancebook.cache_store import (
    CacheEntry,
    CacheReadFailure,
    CacheScope,
    CacheWriteFailure,
    SqlCacheStore,
    entry_matches,
)
from balancebook.db import create_engine_for

FETCHED_AT = datetime(2024, 3, 20, 9, 0, tzinfo=timezone.utc)


def make_entry(month_key: str, account_id: str | None, payload: str = "{}") -> CacheEntry:
    return CacheEntry(
        cache_key=f"dashboard:{month_key}:{account_id or 'ALL'}:DEFAULT",
        payload=payload,
        fetched_at=FETCHED_AT,
        month_key=month_key,
        account_id=account_id,
    )


class EntryMatchesTests(unittest.TestCase):
    def test_scope_rules(self) -> None:
        march_all = CacheScope("2024-03")
        march_one = CacheScope("2024-03", "acc-1")
        march_two = CacheScope("2024-03", "acc-2")

        self.assertTrue(entry_matches(march_two, None, None))
        self.assertTrue(entry_matches(march_two, "2024-03", None))
        self.assertFalse(entry_matches(march_two, "2024-02", None))
        self.assertTrue(entry_matches(march_one, None, "acc-1"))
        self.assertFalse(entry_matches(march_all, None, "acc-1"))
        self.assertTrue(entry_matches(march_all, "2024-03", "acc-1"))
        self.assertFalse(entry_matches(march_two, "2024-03", "acc-1"))


class SqlCacheStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = create_engine_for("sqlite+aiosqlite://")
        self.store = SqlCacheStore(self.engine)
        await self.store.init()

    async def asyncTearDown(self) -> None:
        await self.engine.dispose()

    async def test_write_then_read(self) -> None:
        entry = make_entry("2024-03", "acc-1", payload='{"month": "2024-03"}')

        await self.store.write(entry)

        self.assertEqual(await self.store.read(entry.cache_key), entry)
        self.assertIsNone(await self.store.read("dashboard:1999-01:ALL:DEFAULT"))

    async def test_write_replaces_existing_entry(self) -> None:
        entry = make_entry("2024-03", None, payload="old")
        await self.store.write(entry)

        newer = CacheEntry(
            cache_key=entry.cache_key,
            payload="new",
            fetched_at=FETCHED_AT + timedelta(minutes=3),
            month_key="2024-03",
        )
        await self.store.write(newer)

        stored = await self.store.read(entry.cache_key)
        self.assertEqual(stored.payload, "new")
        self.assertEqual(stored.fetched_at, FETCHED_AT + timedelta(minutes=3))

    async def test_delete_matching_month_and_account(self) -> None:
        entries = [
            make_entry("2024-03", "acc-1"),
            make_entry("2024-03", None),
            make_entry("2024-03", "acc-2"),
            make_entry("2024-02", "acc-1"),
        ]
        for entry in entries:
            await self.store.write(entry)

        removed = await self.store.delete_matching("2024-03", "acc-1")

        self.assertEqual(removed, 2)
        self.assertIsNotNone(await self.store.read(entries[2].cache_key))
        self.assertEqual(await self.store.delete_matching(None, "acc-1"), 1)
        self.assertEqual(await self.store.delete_matching("2023-01", None), 0)
        self.assertEqual(await self.store.delete_matching(None, None), 1)

    async def test_database_errors_are_wrapped(self) -> None:
        engine = create_engine_for("sqlite+aiosqlite://")
        store = SqlCacheStore(engine)
        try:
            with self.assertRaises(CacheReadFailure):
                await store.read("dashboard:2024-03:ALL:DEFAULT")
            with self.assertRaises(CacheWriteFailure):
                await store.write(make_entry("2024-03", None))
        finally:
            await engine.dispose()


if __name__ == "__main__":
    unittest.main()
