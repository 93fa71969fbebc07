"""Periodic background sync on top of the changes engine.

A scheduled task is a detached ``asyncio`` task that wakes up every
``frequency``, runs one sync pass, and records the outcome in the execution
stats store.  Nothing else talks to it: results reach the rest of the app
only through the persisted tokens and stats, and through the optional
callbacks on ``BackgroundSyncConfig``.

Delivery is best effort.  On phones the OS may defer or skip runs; the stats
(``appears_stuck``, ``success_rate``) are how that shows up after the fact.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from src.healthsync.base import (
    DataType,
    HealthPlatform,
    RawRecord,
    TimeRange,
    data_type_key,
)
from src.healthsync.errors import ConfigurationError, HealthSyncError
from src.healthsync.rate_limiter import RateLimiter
from src.healthsync.sync.changes import ChangesEngine
from src.healthsync.sync.device_profiles import (
    CompatibilityLevel,
    DeviceCompatibility,
    DeviceProfileTable,
)
from src.healthsync.sync.stats import BackgroundSyncStats, ExecutionStatsStore
from src.models.base import utc_now

logger = logging.getLogger("healthsync.sync.scheduler")

#: Shortest period the platform job scheduler accepts.
MIN_FREQUENCY = timedelta(minutes=15)

DEFAULT_TASK_ID = "health-sync-background"

#: Window read by a non-incremental pass.
FULL_FETCH_WINDOW = timedelta(hours=24)

DataSyncedCallback = Callable[[str, list[RawRecord]], Awaitable[None]]
SyncCompleteCallback = Callable[["BackgroundSyncResult"], Awaitable[None]]
SyncFailedCallback = Callable[[str], Awaitable[None]]
ConditionCheck = Callable[["BackgroundSyncConfig"], bool]


@dataclass
class BackgroundSyncConfig:
    """What a periodic task syncs, how often, and under which conditions.

    Attributes:
        data_types:        Data types synced on every pass.
        frequency:         Interval between passes (at least 15 minutes).
        use_incremental:   Use the change feed; otherwise read the last 24h.
        requires_charging: Skip passes unless the device is charging.
        requires_wifi:     Skip passes unless on an unmetered network.
        task_id:           Key for scheduling and stats.
        on_data_synced:    Called with each type's records after it syncs.
        on_sync_complete:  Called with the result of a successful pass.
        on_sync_failed:    Called with the error message of a failed pass.
    """

    data_types: list[str]
    frequency: timedelta = timedelta(minutes=30)
    use_incremental: bool = True
    requires_charging: bool = False
    requires_wifi: bool = False
    task_id: str = DEFAULT_TASK_ID
    on_data_synced: DataSyncedCallback | None = field(default=None, repr=False)
    on_sync_complete: SyncCompleteCallback | None = field(default=None, repr=False)
    on_sync_failed: SyncFailedCallback | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.data_types = [data_type_key(dt) for dt in self.data_types]

    @classmethod
    def from_preset(
        cls, name: str, data_types: Iterable[DataType | str], **overrides
    ) -> "BackgroundSyncConfig":
        """Build a config from a named preset in ``sync_config.yaml``."""
        from src.healthsync.config_loader import get_sync_config

        config = get_sync_config()
        preset = config.background_preset(name)
        base = cls(
            data_types=list(data_types),
            frequency=preset.frequency,
            requires_charging=preset.requires_charging,
            requires_wifi=preset.requires_wifi,
            task_id=config.background.default_task_id,
        )
        return replace(base, **overrides) if overrides else base

    @classmethod
    def conservative(cls, data_types: Iterable[DataType | str], **overrides) -> "BackgroundSyncConfig":
        """Hourly, only while charging on Wi-Fi."""
        return cls.from_preset("conservative", data_types, **overrides)

    @classmethod
    def balanced(cls, data_types: Iterable[DataType | str], **overrides) -> "BackgroundSyncConfig":
        return cls.from_preset("balanced", data_types, **overrides)

    @classmethod
    def aggressive(cls, data_types: Iterable[DataType | str], **overrides) -> "BackgroundSyncConfig":
        """Every 15 minutes with no constraints."""
        return cls.from_preset("aggressive", data_types, **overrides)

    @classmethod
    def for_device(
        cls,
        manufacturer: str | None,
        data_types: Iterable[DataType | str],
        profiles: DeviceProfileTable | None = None,
        **overrides,
    ) -> "BackgroundSyncConfig":
        """Use the recommended frequency and constraints for ``manufacturer``."""
        if profiles is None:
            from src.healthsync.config_loader import get_sync_config

            profiles = get_sync_config().device_profiles
        compat = profiles.check_compatibility(manufacturer)
        base = cls(
            data_types=list(data_types),
            frequency=compat.recommended_frequency,
            requires_charging=compat.requires_charging,
            requires_wifi=compat.requires_wifi,
        )
        return replace(base, **overrides) if overrides else base


@dataclass
class BackgroundSyncResult:
    task_id: str
    started_at: datetime
    finished_at: datetime
    data_types: list[str]
    record_counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, HealthSyncError] = field(default_factory=dict)
    success: bool = True
    was_incremental: bool = True
    error_message: str | None = None

    @property
    def duration(self) -> timedelta:
        return self.finished_at - self.started_at

    @property
    def total_records(self) -> int:
        return sum(self.record_counts.values())


class BackgroundSyncScheduler:
    """Schedules periodic sync passes and records how they went.

    Args:
        platform:       Used for non-incremental (24h raw) passes.
        changes_engine: Used for incremental passes.
        stats_store:    Execution stats, keyed by task id.
        device_profiles: Manufacturer table for ``check_compatibility``.
        rate_limiter:   Wraps raw fetches.
        conditions:     Returns False to skip a pass (charging / Wi-Fi checks).
        min_frequency:  Shortest accepted period.
        clock:          Returns the current UTC time.
        sleep:          Awaitable sleep (injected in tests).
    """

    def __init__(
        self,
        platform: HealthPlatform,
        changes_engine: ChangesEngine,
        stats_store: ExecutionStatsStore,
        device_profiles: DeviceProfileTable | None = None,
        rate_limiter: RateLimiter | None = None,
        conditions: ConditionCheck | None = None,
        min_frequency: timedelta = MIN_FREQUENCY,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._platform = platform
        self._changes = changes_engine
        self._stats = stats_store
        self._profiles = device_profiles
        self._limiter = rate_limiter or RateLimiter(name="background")
        self._conditions = conditions
        self.min_frequency = min_frequency
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._configs: dict[str, BackgroundSyncConfig] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def validate_config(self, config: BackgroundSyncConfig) -> None:
        """Raise ``ConfigurationError`` if ``config`` cannot be scheduled."""
        if config.frequency < self.min_frequency:
            raise ConfigurationError(
                f"Background sync frequency must be at least "
                f"{int(self.min_frequency.total_seconds() // 60)} minutes, "
                f"got {config.frequency.total_seconds() / 60:g}"
            )
        if not config.data_types:
            raise ConfigurationError("Background sync needs at least one data type")
        if not config.task_id:
            raise ConfigurationError("Background sync needs a task id")

    def schedule_periodic(self, config: BackgroundSyncConfig) -> asyncio.Task:
        """Start (or replace) the periodic task for ``config.task_id``.

        Must be called from a running event loop.  The first pass runs one
        ``frequency`` after scheduling.

        Raises:
            ConfigurationError: Frequency below the minimum, or no data types.
        """
        self.validate_config(config)

        existing = self._tasks.pop(config.task_id, None)
        if existing is not None and not existing.done():
            existing.cancel()
            logger.info("Replacing background task %s", config.task_id)

        task = asyncio.get_running_loop().create_task(
            self._run_periodic(config), name=f"healthsync:{config.task_id}"
        )
        self._tasks[config.task_id] = task
        self._configs[config.task_id] = config
        logger.info(
            "Scheduled background sync %s every %d min for %s",
            config.task_id,
            int(config.frequency.total_seconds() // 60),
            ", ".join(config.data_types),
        )
        return task

    async def cancel(self, task_id: str | None = None) -> bool:
        """Stop a scheduled task; returns False if it was not scheduled."""
        key = task_id or DEFAULT_TASK_ID
        task = self._tasks.pop(key, None)
        self._configs.pop(key, None)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cancelled background sync %s", key)
        return True

    async def cancel_all(self) -> int:
        cancelled = 0
        for task_id in list(self._tasks):
            if await self.cancel(task_id):
                cancelled += 1
        return cancelled

    def is_scheduled(self, task_id: str | None = None) -> bool:
        task = self._tasks.get(task_id or DEFAULT_TASK_ID)
        return task is not None and not task.done()

    def scheduled_config(self, task_id: str | None = None) -> BackgroundSyncConfig | None:
        return self._configs.get(task_id or DEFAULT_TASK_ID)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_periodic(self, config: BackgroundSyncConfig) -> None:
        due = self._clock() + config.frequency
        while True:
            wait = (due - self._clock()).total_seconds()
            await self._sleep(max(wait, 0.0))
            started = self._clock()
            delay = max(started - due, timedelta(0))
            due = started + config.frequency

            if self._conditions is not None and not self._conditions(config):
                logger.debug("Skipping background pass %s: conditions not met", config.task_id)
                continue
            try:
                await self.run_once(config, delay=delay)
            except Exception as exc:
                # a broken callback must not end the schedule
                logger.exception("Background pass %s crashed", config.task_id)
                await self._stats.record_failure(config.task_id, type(exc).__name__)

    async def run_once(
        self,
        config: BackgroundSyncConfig,
        delay: timedelta | None = None,
    ) -> BackgroundSyncResult:
        """Run one sync pass for every data type in ``config`` and record it.

        A pass fails only if every data type failed; per-type errors are
        logged and returned in ``errors``.
        """
        if not config.data_types:
            raise ConfigurationError("Background sync needs at least one data type")

        started = self._clock()
        logger.info("Background pass %s started", config.task_id)
        counts: dict[str, int] = {}
        errors: dict[str, HealthSyncError] = {}

        for key in config.data_types:
            try:
                records = await self._sync_type(key, config.use_incremental)
            except HealthSyncError as exc:
                logger.error("Background sync of %s failed: %s", key, exc)
                errors[key] = exc
                counts[key] = 0
                continue
            counts[key] = len(records)
            logger.info("Synced %s: %d record(s)", key, len(records))
            if config.on_data_synced is not None:
                await config.on_data_synced(key, records)

        success = len(errors) < len(config.data_types)
        result = BackgroundSyncResult(
            task_id=config.task_id,
            started_at=started,
            finished_at=self._clock(),
            data_types=list(config.data_types),
            record_counts=counts,
            errors=errors,
            success=success,
            was_incremental=config.use_incremental,
        )

        if success:
            await self._stats.record_success(config.task_id, timestamp=started, delay=delay)
            logger.info(
                "Background pass %s completed: %d record(s) in %.1fs",
                config.task_id,
                result.total_records,
                result.duration.total_seconds(),
            )
            if config.on_sync_complete is not None:
                await self._notify(config, config.on_sync_complete, result)
        else:
            first = next(iter(errors.values()))
            result.error_message = str(first)
            await self._stats.record_failure(
                config.task_id, type(first).__name__, timestamp=started
            )
            logger.error("Background pass %s failed: %s", config.task_id, first)
            if config.on_sync_failed is not None:
                await self._notify(config, config.on_sync_failed, result.error_message)
        return result

    async def _notify(
        self,
        config: BackgroundSyncConfig,
        callback: Callable[[Any], Awaitable[Any]],
        payload: Any,
    ) -> None:
        # The pass outcome is already recorded; a callback error is logged only.
        try:
            await callback(payload)
        except Exception:
            logger.exception("Completion callback for background pass %s raised", config.task_id)

    async def _sync_type(self, key: str, incremental: bool) -> list[RawRecord]:
        if incremental:
            return (await self._changes.fetch_changes(key)).records
        window = TimeRange.last(FULL_FETCH_WINDOW, now=self._clock())
        return await self._limiter.execute(
            lambda: self._platform.fetch_raw_records(key, window),
            f"background fetch {key}",
        )

    # ------------------------------------------------------------------
    # Stats & compatibility
    # ------------------------------------------------------------------

    async def get_stats(self, task_id: str | None = None) -> BackgroundSyncStats:
        stats = await self._stats.get_stats(task_id or DEFAULT_TASK_ID)
        if stats.appears_stuck:
            logger.warning(
                "Background sync %s appears stuck (no success since %s); "
                "check the device's battery optimization settings",
                stats.task_id,
                stats.last_success_at.isoformat() if stats.last_success_at else "never",
            )
        return stats

    async def reset_stats(self, task_id: str | None = None) -> None:
        await self._stats.reset_stats(task_id or DEFAULT_TASK_ID)

    def check_compatibility(self, manufacturer: str | None) -> DeviceCompatibility:
        if self._profiles is None:
            from src.healthsync.config_loader import get_sync_config

            self._profiles = get_sync_config().device_profiles
        compat = self._profiles.check_compatibility(manufacturer)
        if compat.level is CompatibilityLevel.LOW:
            logger.warning(
                "Background sync is unreliable on %s devices: %s",
                compat.manufacturer,
                compat.warning or "aggressive battery management",
            )
        return compat
