"""Tests for continuation-token persistence and the freshness check."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.healthsync.storage import InMemoryKeyValueStore
from src.healthsync.sync.token_store import SyncTokenStore, token_key
from src.healthsync.tests.conftest import TEST_NOW
from src.models.sync_state import SyncTokenRecord


def _record(token: str, minutes: int = 0, **kwargs) -> SyncTokenRecord:
    when = TEST_NOW + timedelta(minutes=minutes)
    return SyncTokenRecord(data_type="steps", token=token, created_at=when, last_sync_at=when, **kwargs)


class TestSyncTokenStore:
    @pytest.mark.asyncio
    async def test_save_and_get(self, token_store: SyncTokenStore) -> None:
        assert await token_store.save(_record("abc", last_record_count=3))
        stored = await token_store.get("steps")
        assert stored.token == "abc"
        assert stored.last_record_count == 3

    @pytest.mark.asyncio
    async def test_older_write_does_not_overwrite_newer(self, token_store: SyncTokenStore) -> None:
        """A fetch issued earlier but finishing later must not win."""
        await token_store.save(_record("newer", minutes=10))
        assert not await token_store.save(_record("older", minutes=5))
        assert (await token_store.get("steps")).token == "newer"

    @pytest.mark.asyncio
    async def test_unchanged_token_keeps_created_at(self, token_store: SyncTokenStore) -> None:
        await token_store.save(_record("same"))
        later = _record("same", minutes=30)
        await token_store.save(later)

        stored = await token_store.get("steps")
        assert stored.created_at == TEST_NOW
        assert stored.last_sync_at == TEST_NOW + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_unreadable_record_is_treated_as_absent(
        self, store: InMemoryKeyValueStore, token_store: SyncTokenStore
    ) -> None:
        await store.put(token_key("steps"), {"data_type": "steps", "token": ""})
        assert await token_store.get("steps") is None

    @pytest.mark.asyncio
    async def test_delete_data_types_and_clear(self, token_store: SyncTokenStore) -> None:
        await token_store.save(_record("a"))
        await token_store.save(
            SyncTokenRecord(data_type="sleep", token="b", created_at=TEST_NOW, last_sync_at=TEST_NOW)
        )
        assert sorted(await token_store.data_types()) == ["sleep", "steps"]

        assert await token_store.delete("steps")
        assert not await token_store.delete("steps")
        assert await token_store.clear() == 1

    def test_lock_is_shared_per_data_type(self, token_store: SyncTokenStore) -> None:
        assert token_store.lock_for("steps") is token_store.lock_for("steps")
        assert token_store.lock_for("steps") is not token_store.lock_for("sleep")

    @pytest.mark.asyncio
    async def test_concurrent_fetches_are_serialized(self, changes_engine, platform) -> None:
        """Two concurrent first fetches create exactly one token."""
        results = await asyncio.gather(
            changes_engine.fetch_changes("steps"),
            changes_engine.fetch_changes("steps"),
        )
        assert [r.is_initial_sync for r in results] == [True, False]
        assert platform.calls["request_initial_token"] == 1
