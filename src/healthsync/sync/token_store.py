"""Per-data-type continuation token persistence.

One live token per data type, stored as ``sync_token::{data_type}``.  Writes
go through a freshness check: a candidate whose ``last_sync_at`` is older
than the stored token's is dropped, so a fetch that was issued early but
finished late cannot overwrite a newer token.

Read-modify-write sequences must hold ``lock_for(data_type)``; the store's
own methods do not take the lock.
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from src.healthsync.storage import KeyValueStore
from src.models.sync_state import SyncTokenRecord

logger = logging.getLogger("healthsync.sync.token_store")

KEY_PREFIX = "sync_token::"


def token_key(data_type: str) -> str:
    return f"{KEY_PREFIX}{data_type}"


class SyncTokenStore:
    """Typed view over a ``KeyValueStore`` for continuation tokens."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, data_type: str) -> asyncio.Lock:
        lock = self._locks.get(data_type)
        if lock is None:
            lock = self._locks[data_type] = asyncio.Lock()
        return lock

    async def get(self, data_type: str) -> SyncTokenRecord | None:
        """Return the stored token, or None.

        A stored document that no longer validates is logged and treated as
        absent, which sends the next fetch down the initial-sync path.
        """
        raw = await self._store.get(token_key(data_type))
        if raw is None:
            return None
        try:
            return SyncTokenRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning(
                "Discarding unreadable sync token for %s: %s", data_type, exc.errors()[:1]
            )
            return None

    async def save(self, record: SyncTokenRecord) -> bool:
        """Persist ``record`` unless the stored token is fresher.

        ``created_at`` is carried over when the token value is unchanged.

        Returns:
            True if written, False if skipped by the freshness check.
        """
        current = await self.get(record.data_type)
        if current is not None:
            if current.last_sync_at > record.last_sync_at:
                logger.info(
                    "Skipping stale token write for %s (stored %s is newer than %s)",
                    record.data_type,
                    current.last_sync_at.isoformat(),
                    record.last_sync_at.isoformat(),
                )
                return False
            if current.token == record.token and current.created_at != record.created_at:
                record = record.model_copy(update={"created_at": current.created_at})

        await self._store.put(token_key(record.data_type), record.to_storage())
        return True

    async def delete(self, data_type: str) -> bool:
        return await self._store.delete(token_key(data_type))

    async def data_types(self) -> list[str]:
        """Data types that currently have a stored token."""
        keys = await self._store.keys(KEY_PREFIX)
        return [k[len(KEY_PREFIX):] for k in keys]

    async def clear(self) -> int:
        removed = 0
        for data_type in await self.data_types():
            if await self.delete(data_type):
                removed += 1
        return removed
