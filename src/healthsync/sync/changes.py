"""Incremental sync on top of the platform change feed.

Flow per data type::

    no token ──► request initial token ──► persist ──► is_initial_sync
    token    ──► fetch changes since token
                   ├── ok              ──► persist next token ──► delta
                   ├── TokenInvalid    ──► fallback configured?
                   │                         yes ──► full sync + fresh token ──► used_fallback
                   │                         no  ──► re-raise
                   └── anything else   ──► re-raise, token untouched

Continuation tokens are fragile: the platform expires them after roughly 30
days of disuse and invalidates them on app reinstall or permission changes.
A token that has not been used for ``stale_after_days`` is reported as stale
by ``get_sync_status`` but is never reset automatically.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable

from src.healthsync.base import (
    DataType,
    FullSyncProvider,
    HealthPlatform,
    RawRecord,
    TimeRange,
    data_type_key,
)
from src.healthsync.errors import HealthSyncError, TokenInvalidError
from src.healthsync.rate_limiter import RateLimiter
from src.healthsync.sync.token_store import SyncTokenStore
from src.models.base import utc_now
from src.models.sync_state import SyncTokenRecord

logger = logging.getLogger("healthsync.sync.changes")


@dataclass
class ChangesConfig:
    """Incremental-sync settings."""

    fallback_range_days: int = 30
    stale_after_days: int = 30


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ChangesResult:
    """Outcome of one ``fetch_changes`` call.

    Attributes:
        data_type:       Data type fetched.
        records:         Changed records (empty on initial sync).
        is_initial_sync: A token was just created; no history was fetched.
        used_fallback:   The token was rejected and a full sync ran instead.
        has_more:        The platform has more changes; call again.
        token:           Token stored after this call (None if none could be obtained).
    """

    data_type: str
    records: list[RawRecord] = field(default_factory=list)
    is_initial_sync: bool = False
    used_fallback: bool = False
    has_more: bool = False
    token: str | None = None

    @property
    def record_count(self) -> int:
        return len(self.records)


@dataclass
class MultiTypeChangesResult:
    """Per-type results of ``fetch_changes_for_types``; failures don't stop the batch."""

    results: dict[str, ChangesResult] = field(default_factory=dict)
    errors: dict[str, HealthSyncError] = field(default_factory=dict)

    @property
    def total_records(self) -> int:
        return sum(r.record_count for r in self.results.values())

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def is_complete_success(self) -> bool:
        return not self.errors


@dataclass
class SyncStatus:
    data_type: str
    has_token: bool
    token_created_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_record_count: int = 0
    token_age: timedelta | None = None
    is_stale: bool = False

    def to_dict(self) -> dict:
        return {
            "data_type": self.data_type,
            "has_token": self.has_token,
            "token_created_at": self.token_created_at.isoformat() if self.token_created_at else None,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_record_count": self.last_record_count,
            "token_age_hours": round(self.token_age.total_seconds() / 3600, 1)
            if self.token_age is not None
            else None,
            "is_stale": self.is_stale,
        }


@dataclass
class TokenValidation:
    is_valid: bool
    is_stale: bool = False
    token_age: timedelta | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Fallback strategy
# ---------------------------------------------------------------------------


class PlatformFullSyncProvider(FullSyncProvider):
    """Full sync by reading raw records for the whole range hint."""

    def __init__(self, platform: HealthPlatform, rate_limiter: RateLimiter | None = None) -> None:
        self._platform = platform
        self._limiter = rate_limiter or RateLimiter(name="full-sync")

    async def full_sync(self, data_type: str, range_hint: TimeRange) -> list[RawRecord]:
        return await self._limiter.execute(
            lambda: self._platform.fetch_raw_records(data_type, range_hint),
            f"full sync {data_type}",
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ChangesEngine:
    """Token-based incremental fetches with full-sync fallback.

    Args:
        platform:     Platform the change feed is read from.
        token_store:  Persistent per-data-type token storage.
        rate_limiter: Wraps every platform call.
        fallback:     Strategy invoked when a token is rejected. None = propagate.
        config:       Fallback range and staleness window.
        clock:        Returns the current UTC time (injected in tests).
    """

    def __init__(
        self,
        platform: HealthPlatform,
        token_store: SyncTokenStore,
        rate_limiter: RateLimiter | None = None,
        fallback: FullSyncProvider | None = None,
        config: ChangesConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._platform = platform
        self._tokens = token_store
        self._limiter = rate_limiter or RateLimiter(name="changes")
        self._fallback = fallback
        self.config = config or ChangesConfig()
        self._clock = clock

    @property
    def has_fallback(self) -> bool:
        return self._fallback is not None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_changes(self, data_type: DataType | str) -> ChangesResult:
        """Fetch records changed since the last sync of ``data_type``.

        Raises:
            TokenInvalidError: The token was rejected and no fallback is configured.
            HealthSyncError:   Any other platform failure; the token is left as is.
        """
        key = data_type_key(data_type)
        async with self._tokens.lock_for(key):
            current = await self._tokens.get(key)
            if current is None:
                return await self._initial_sync(key)

            issued_at = self._clock()
            try:
                response = await self._limiter.execute(
                    lambda: self._platform.fetch_changes_since(key, current.token),
                    f"fetch changes {key}",
                )
            except TokenInvalidError as exc:
                if self._fallback is None:
                    logger.error(
                        "Sync token for %s was rejected and no fallback is configured: %s",
                        key,
                        exc,
                    )
                    raise
                return await self._fallback_sync(key, exc)

            next_token = response.next_token or current.token
            await self._tokens.save(
                SyncTokenRecord(
                    data_type=key,
                    token=next_token,
                    created_at=current.created_at if next_token == current.token else issued_at,
                    last_sync_at=issued_at,
                    last_record_count=len(response.records),
                )
            )
            logger.debug(
                "Fetched %d change(s) for %s (has_more=%s)",
                len(response.records),
                key,
                response.has_more,
            )
            return ChangesResult(
                data_type=key,
                records=list(response.records),
                has_more=response.has_more,
                token=next_token,
            )

    async def fetch_changes_for_types(
        self, data_types: Iterable[DataType | str]
    ) -> MultiTypeChangesResult:
        """Fetch changes for several data types, continuing past per-type failures."""
        outcome = MultiTypeChangesResult()
        for data_type in data_types:
            key = data_type_key(data_type)
            try:
                outcome.results[key] = await self.fetch_changes(key)
            except HealthSyncError as exc:
                logger.warning("Incremental sync failed for %s: %s", key, exc)
                outcome.errors[key] = exc
        return outcome

    async def _initial_sync(self, key: str) -> ChangesResult:
        issued_at = self._clock()
        token = await self._limiter.execute(
            lambda: self._platform.request_initial_token(key),
            f"initial token {key}",
        )
        await self._tokens.save(
            SyncTokenRecord(
                data_type=key,
                token=token,
                created_at=issued_at,
                last_sync_at=issued_at,
                last_record_count=0,
            )
        )
        logger.info("Created initial sync token for %s", key)
        return ChangesResult(data_type=key, is_initial_sync=True, token=token)

    async def _fallback_sync(self, key: str, cause: TokenInvalidError) -> ChangesResult:
        """Replace a rejected token with a full sync of the fallback range.

        The fresh token is requested before the full sync runs, so changes
        made during the full sync are seen again on the next incremental
        fetch rather than lost.  If the fallback provider itself fails, the
        old token stays in place and the error propagates, so the next call
        retries the fallback.
        """
        logger.warning("Sync token for %s is invalid (%s), running full sync", key, cause)
        now = self._clock()
        range_hint = TimeRange(start=now - timedelta(days=self.config.fallback_range_days), end=now)

        fresh_token: str | None
        try:
            fresh_token = await self._limiter.execute(
                lambda: self._platform.request_initial_token(key),
                f"initial token {key}",
            )
        except HealthSyncError as exc:
            logger.error("Could not obtain a fresh token for %s after rejection: %s", key, exc)
            fresh_token = None

        records = await self._fallback.full_sync(key, range_hint)

        if fresh_token is not None:
            await self._tokens.save(
                SyncTokenRecord(
                    data_type=key,
                    token=fresh_token,
                    created_at=now,
                    last_sync_at=now,
                    last_record_count=len(records),
                )
            )
        else:
            await self._tokens.delete(key)
        logger.info("Full sync for %s returned %d record(s)", key, len(records))
        return ChangesResult(data_type=key, records=records, used_fallback=True, token=fresh_token)

    # ------------------------------------------------------------------
    # Status & maintenance
    # ------------------------------------------------------------------

    async def get_sync_status(self, data_type: DataType | str) -> SyncStatus:
        key = data_type_key(data_type)
        record = await self._tokens.get(key)
        if record is None:
            return SyncStatus(data_type=key, has_token=False)
        age = self._clock() - record.last_sync_at
        return SyncStatus(
            data_type=key,
            has_token=True,
            token_created_at=record.created_at,
            last_sync_at=record.last_sync_at,
            last_record_count=record.last_record_count,
            token_age=age,
            is_stale=age > timedelta(days=self.config.stale_after_days),
        )

    async def get_all_sync_status(self) -> dict[str, SyncStatus]:
        return {dt: await self.get_sync_status(dt) for dt in await self._tokens.data_types()}

    async def validate_token(self, data_type: DataType | str) -> TokenValidation:
        """Local check of the stored token; does not call the platform."""
        status = await self.get_sync_status(data_type)
        if not status.has_token:
            return TokenValidation(is_valid=False, reason="No token stored")
        if status.is_stale:
            return TokenValidation(
                is_valid=True,
                is_stale=True,
                token_age=status.token_age,
                reason=(
                    f"Token unused for more than {self.config.stale_after_days} days; "
                    "the platform may reject it"
                ),
            )
        return TokenValidation(is_valid=True, token_age=status.token_age)

    async def has_been_synced(self, data_type: DataType | str) -> bool:
        return await self._tokens.get(data_type_key(data_type)) is not None

    async def reset_sync(self, data_type: DataType | str) -> None:
        """Discard the token so the next fetch starts over with an initial sync."""
        key = data_type_key(data_type)
        async with self._tokens.lock_for(key):
            if await self._tokens.delete(key):
                logger.info("Reset sync token for %s", key)

    async def reset_all(self) -> int:
        """Discard every stored token; returns how many were removed."""
        removed = 0
        for key in await self._tokens.data_types():
            async with self._tokens.lock_for(key):
                if await self._tokens.delete(key):
                    removed += 1
        logger.info("Reset %d sync token(s)", removed)
        return removed
