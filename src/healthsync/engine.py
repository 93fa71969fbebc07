"""HealthSyncEngine, the single object that owns the sync state.

The engine wires one platform, one key-value store and one sync config into
the rate limiter, changes engine, conflict detector, aggregate validator and
background scheduler.  Token and stats state is owned here and nowhere else;
callers get an engine passed to them rather than reaching for a global.

Usage::

    async with HealthSyncEngine.from_settings(get_settings()) as engine:
        result = await engine.fetch_changes("steps")
        conflicts = await engine.detect_conflicts("steps")
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from src.healthsync.aggregate_validator import AggregateValidation, AggregateValidator
from src.healthsync.base import DataType, HealthPlatform, TimeRange, data_type_key
from src.healthsync.config_loader import SyncConfig, get_sync_config
from src.healthsync.conflicts import (
    ConflictDetectionResult,
    ConflictDetector,
    ConflictSummary,
)
from src.healthsync.rate_limiter import RateLimiter
from src.healthsync.storage import KeyValueStore, create_store
from src.healthsync.sync.changes import (
    ChangesEngine,
    ChangesResult,
    MultiTypeChangesResult,
    PlatformFullSyncProvider,
    SyncStatus,
)
from src.healthsync.sync.device_profiles import DeviceCompatibility
from src.healthsync.sync.scheduler import BackgroundSyncConfig, BackgroundSyncScheduler
from src.healthsync.sync.stats import BackgroundSyncStats, ExecutionStatsStore
from src.healthsync.sync.token_store import SyncTokenStore
from src.models.base import utc_now

logger = logging.getLogger("healthsync.engine")


class HealthSyncEngine:
    """Facade over every HealthSync component for one platform.

    Args:
        platform:      The platform-owned health store.
        store:         Durable storage for tokens and stats.
        sync_config:   Tunables; defaults to the bundled ``sync_config.yaml``.
        enable_fallback: Run a full sync when a change token is rejected.
        clock:         Returns the current UTC time.
        sleep:         Awaitable sleep for backoff and scheduling.
        monotonic:     Monotonic clock for the circuit breaker.
    """

    def __init__(
        self,
        platform: HealthPlatform,
        store: KeyValueStore,
        sync_config: SyncConfig | None = None,
        enable_fallback: bool = True,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = sync_config or get_sync_config()
        self.platform = platform
        self.store = store
        self._clock = clock

        self.rate_limiter = RateLimiter(
            self.config.rate_limiter, sleep=sleep, clock=monotonic, name=platform.PLATFORM_ID
        )
        self.tokens = SyncTokenStore(store)
        self.changes = ChangesEngine(
            platform,
            self.tokens,
            rate_limiter=self.rate_limiter,
            fallback=PlatformFullSyncProvider(platform, self.rate_limiter) if enable_fallback else None,
            config=self.config.changes,
            clock=clock,
        )
        self.conflicts = ConflictDetector(self.config.conflicts)
        self.validator = AggregateValidator(self.config.validation)
        background = self.config.background
        self.stats = ExecutionStatsStore(
            store,
            clock=clock,
            healthy_success_rate=background.healthy_success_rate,
            stuck_after=timedelta(hours=background.stuck_after_hours),
        )
        self.scheduler = BackgroundSyncScheduler(
            platform,
            self.changes,
            self.stats,
            device_profiles=self.config.device_profiles,
            rate_limiter=self.rate_limiter,
            min_frequency=background.min_frequency,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        platform: HealthPlatform | None = None,
        **kwargs: Any,
    ) -> "HealthSyncEngine":
        """Build an engine from ``Settings`` (storage backend and platform URL)."""
        if platform is None:
            from src.healthsync.adapters import HttpHealthPlatform

            platform = HttpHealthPlatform(
                settings.platform_base_url,
                api_key=settings.platform_api_key,
                timeout=settings.platform_timeout_seconds,
            )
        store = create_store(settings.storage_backend, settings.storage_path)
        logger.info(
            "HealthSync engine using %s platform and %s store",
            platform.PLATFORM_ID,
            settings.storage_backend,
        )
        return cls(platform, store, **kwargs)

    async def __aenter__(self) -> "HealthSyncEngine":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop background tasks and release the store and platform client."""
        await self.scheduler.cancel_all()
        await self.store.close()
        aclose = getattr(self.platform, "aclose", None)
        if aclose is not None:
            await aclose()

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def fetch_changes(self, data_type: DataType | str) -> ChangesResult:
        return await self.changes.fetch_changes(data_type)

    async def fetch_changes_for_types(
        self, data_types: Iterable[DataType | str]
    ) -> MultiTypeChangesResult:
        return await self.changes.fetch_changes_for_types(data_types)

    async def get_sync_status(self, data_types: Iterable[DataType | str] | None = None) -> dict[str, SyncStatus]:
        """Status per data type; all synced types when ``data_types`` is None."""
        if data_types is None:
            return await self.changes.get_all_sync_status()
        return {
            data_type_key(dt): await self.changes.get_sync_status(dt) for dt in data_types
        }

    async def reset_sync(self, data_type: DataType | str) -> None:
        await self.changes.reset_sync(data_type)

    # ------------------------------------------------------------------
    # Conflicts & validation
    # ------------------------------------------------------------------

    def _window(self, window: TimeRange | None) -> TimeRange:
        if window is not None:
            return window
        return TimeRange.last(
            timedelta(hours=self.config.validation.lookback_hours), now=self._clock()
        )

    async def detect_conflicts(
        self, data_type: DataType | str, window: TimeRange | None = None
    ) -> ConflictDetectionResult:
        """Read raw records for ``window`` (default: lookback) and analyse writers."""
        key = data_type_key(data_type)
        span = self._window(window)
        records = await self.rate_limiter.execute(
            lambda: self.platform.fetch_raw_records(key, span),
            f"conflict scan {key}",
        )
        return self.conflicts.detect(key, records, span)

    async def detect_conflicts_for_types(
        self, data_types: Iterable[DataType | str], window: TimeRange | None = None
    ) -> ConflictSummary:
        return await self.conflicts.detect_for_types(
            self.platform, data_types, self._window(window), rate_limiter=self.rate_limiter
        )

    async def validate_aggregate(
        self, data_type: DataType | str, window: TimeRange | None = None
    ) -> AggregateValidation:
        return await self.validator.validate_range(
            self.platform, data_type, self._window(window), rate_limiter=self.rate_limiter
        )

    # ------------------------------------------------------------------
    # Background
    # ------------------------------------------------------------------

    def schedule_periodic(self, config: BackgroundSyncConfig) -> asyncio.Task:
        return self.scheduler.schedule_periodic(config)

    async def cancel(self, task_id: str | None = None) -> bool:
        return await self.scheduler.cancel(task_id)

    async def get_stats(self, task_id: str | None = None) -> BackgroundSyncStats:
        return await self.scheduler.get_stats(task_id)

    def check_compatibility(self, manufacturer: str | None) -> DeviceCompatibility:
        return self.scheduler.check_compatibility(manufacturer)
