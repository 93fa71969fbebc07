"""Tests for periodic background sync scheduling."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.healthsync.errors import ConfigurationError, PlatformError
from src.healthsync.rate_limiter import RateLimiter
from src.healthsync.storage import InMemoryKeyValueStore
from src.healthsync.sync.changes import ChangesEngine
from src.healthsync.sync.device_profiles import CompatibilityLevel
from src.healthsync.sync.scheduler import (
    DEFAULT_TASK_ID,
    BackgroundSyncConfig,
    BackgroundSyncScheduler,
)
from src.healthsync.sync.stats import ExecutionStatsStore
from src.healthsync.tests.conftest import TEST_NOW, FakeClock, FakePlatform, make_records


class ClockSleep:
    """Advances the wall clock by the requested delay and yields once."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds=seconds)
        await asyncio.sleep(0)


@pytest.fixture
def stats_store(store: InMemoryKeyValueStore, clock: FakeClock) -> ExecutionStatsStore:
    return ExecutionStatsStore(store, clock=clock)


@pytest.fixture
def scheduler(
    platform: FakePlatform,
    changes_engine: ChangesEngine,
    stats_store: ExecutionStatsStore,
    limiter: RateLimiter,
    sync_config,
    clock: FakeClock,
) -> BackgroundSyncScheduler:
    return BackgroundSyncScheduler(
        platform,
        changes_engine,
        stats_store,
        device_profiles=sync_config.device_profiles,
        rate_limiter=limiter,
        clock=clock,
        sleep=ClockSleep(clock),
    )


async def _wait_for(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if await predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestBackgroundSyncConfig:
    def test_presets(self) -> None:
        conservative = BackgroundSyncConfig.conservative(["steps"])
        assert conservative.frequency == timedelta(minutes=60)
        assert conservative.requires_charging and conservative.requires_wifi

        balanced = BackgroundSyncConfig.balanced(["steps"])
        assert balanced.frequency == timedelta(minutes=30)
        assert not balanced.requires_charging

        aggressive = BackgroundSyncConfig.aggressive(["steps"], task_id="fast")
        assert aggressive.frequency == timedelta(minutes=15)
        assert aggressive.task_id == "fast"

    def test_for_device(self, sync_config) -> None:
        config = BackgroundSyncConfig.for_device("Xiaomi", ["steps"], sync_config.device_profiles)
        assert config.frequency == timedelta(minutes=60)
        assert config.requires_charging and config.requires_wifi

    def test_data_types_are_normalised(self) -> None:
        from src.healthsync.base import DataType

        config = BackgroundSyncConfig(data_types=[DataType.STEPS, " sleep "])
        assert config.data_types == ["steps", "sleep"]


class TestScheduling:
    def test_frequency_below_minimum_raises(self, scheduler: BackgroundSyncScheduler) -> None:
        config = BackgroundSyncConfig(data_types=["steps"], frequency=timedelta(minutes=10))
        with pytest.raises(ConfigurationError, match="at least 15 minutes"):
            scheduler.schedule_periodic(config)
        assert not scheduler.is_scheduled()

    def test_empty_data_types_raise(self, scheduler: BackgroundSyncScheduler) -> None:
        with pytest.raises(ConfigurationError):
            scheduler.validate_config(BackgroundSyncConfig(data_types=[]))

    @pytest.mark.asyncio
    async def test_schedule_and_cancel(self, scheduler: BackgroundSyncScheduler) -> None:
        config = BackgroundSyncConfig(data_types=["steps"])
        task = scheduler.schedule_periodic(config)

        assert scheduler.is_scheduled()
        assert scheduler.scheduled_config() is config
        assert await scheduler.cancel()
        assert task.cancelled()
        assert not scheduler.is_scheduled()
        assert not await scheduler.cancel()

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_task(self, scheduler: BackgroundSyncScheduler) -> None:
        first = scheduler.schedule_periodic(BackgroundSyncConfig(data_types=["steps"]))
        second = scheduler.schedule_periodic(BackgroundSyncConfig(data_types=["sleep"]))
        for _ in range(3):
            await asyncio.sleep(0)

        assert first.cancelled()
        assert scheduler.scheduled_config().data_types == ["sleep"]
        assert await scheduler.cancel_all() == 1
        assert second.done()

    @pytest.mark.asyncio
    async def test_periodic_pass_records_stats(
        self, scheduler: BackgroundSyncScheduler, stats_store: ExecutionStatsStore
    ) -> None:
        scheduler.schedule_periodic(BackgroundSyncConfig(data_types=["steps"], frequency=timedelta(minutes=15)))

        async def ran_twice() -> bool:
            return (await stats_store.get_stats(DEFAULT_TASK_ID)).success_count >= 2

        await _wait_for(ran_twice)
        await scheduler.cancel_all()

        stats = await stats_store.get_stats(DEFAULT_TASK_ID)
        assert stats.first_execution_at == TEST_NOW + timedelta(minutes=15)
        assert stats.average_delay == timedelta(0)

    @pytest.mark.asyncio
    async def test_conditions_can_skip_a_pass(
        self,
        platform: FakePlatform,
        changes_engine: ChangesEngine,
        stats_store: ExecutionStatsStore,
        clock: FakeClock,
    ) -> None:
        checks: list[str] = []

        def on_battery(config: BackgroundSyncConfig) -> bool:
            checks.append(config.task_id)
            return False

        sleep = ClockSleep(clock)
        scheduler = BackgroundSyncScheduler(
            platform, changes_engine, stats_store, conditions=on_battery, clock=clock, sleep=sleep
        )
        scheduler.schedule_periodic(BackgroundSyncConfig(data_types=["steps"]))

        async def checked_three_times() -> bool:
            return len(checks) >= 3

        await _wait_for(checked_three_times)
        await scheduler.cancel_all()
        assert (await stats_store.get_stats(DEFAULT_TASK_ID)).total_executions == 0

    @pytest.mark.asyncio
    async def test_raising_completion_callback_counts_pass_once(
        self, scheduler: BackgroundSyncScheduler, stats_store: ExecutionStatsStore
    ) -> None:
        completions: list[object] = []

        async def on_complete(result) -> None:
            completions.append(result)
            raise RuntimeError("listener crashed")

        scheduler.schedule_periodic(BackgroundSyncConfig(data_types=["steps"], on_sync_complete=on_complete))

        async def completed_once() -> bool:
            return len(completions) >= 1

        await _wait_for(completed_once)
        await scheduler.cancel_all()

        stats = await stats_store.get_stats(DEFAULT_TASK_ID)
        assert stats.total_executions >= 1
        assert stats.success_count == stats.total_executions
        assert stats.failure_count == 0


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_incremental_pass_calls_back_with_records(
        self, scheduler: BackgroundSyncScheduler, platform: FakePlatform, stats_store: ExecutionStatsStore
    ) -> None:
        synced: dict[str, int] = {}
        completed = []

        async def on_data(data_type, records):
            synced[data_type] = len(records)

        async def on_complete(result):
            completed.append(result)

        config = BackgroundSyncConfig(
            data_types=["steps"], on_data_synced=on_data, on_sync_complete=on_complete
        )
        await scheduler.run_once(config)
        platform.add_changes("steps", make_records("com.fitapp", 4))

        result = await scheduler.run_once(config, delay=timedelta(minutes=5))

        assert result.success
        assert result.was_incremental
        assert result.total_records == 4
        assert synced == {"steps": 4}
        assert len(completed) == 2
        stats = await stats_store.get_stats(DEFAULT_TASK_ID)
        assert stats.success_count == 2
        assert stats.average_delay == timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_full_fetch_pass_reads_last_day(
        self, scheduler: BackgroundSyncScheduler, platform: FakePlatform
    ) -> None:
        platform.records["steps"] = make_records("com.fitapp", 48, start=TEST_NOW - timedelta(days=2), span=timedelta(days=2))

        result = await scheduler.run_once(BackgroundSyncConfig(data_types=["steps"], use_incremental=False))

        assert not result.was_incremental
        assert result.record_counts["steps"] == 24

    @pytest.mark.asyncio
    async def test_partial_failure_still_succeeds(
        self, scheduler: BackgroundSyncScheduler, platform: FakePlatform
    ) -> None:
        platform.fail_next("request_initial_token", PlatformError("permission denied"))

        result = await scheduler.run_once(BackgroundSyncConfig(data_types=["heart_rate", "steps"]))

        assert result.success
        assert set(result.errors) == {"heart_rate"}

    @pytest.mark.asyncio
    async def test_all_types_failing_records_failure(
        self, scheduler: BackgroundSyncScheduler, platform: FakePlatform, stats_store: ExecutionStatsStore
    ) -> None:
        failures: list[str] = []

        async def on_failed(message: str) -> None:
            failures.append(message)

        platform.fail_next("request_initial_token", PlatformError("permission denied"))
        config = BackgroundSyncConfig(data_types=["steps"], on_sync_failed=on_failed)

        result = await scheduler.run_once(config)

        assert not result.success
        assert result.error_message == "permission denied"
        assert failures == ["permission denied"]
        stats = await scheduler.get_stats()
        assert stats.failure_count == 1
        assert stats.last_failure_reason == "PlatformError"

    @pytest.mark.asyncio
    async def test_callback_error_does_not_change_recorded_outcome(
        self, scheduler: BackgroundSyncScheduler, platform: FakePlatform, caplog
    ) -> None:
        async def on_failed(message: str) -> None:
            raise RuntimeError("listener crashed")

        platform.fail_next("request_initial_token", PlatformError("permission denied"))

        result = await scheduler.run_once(BackgroundSyncConfig(data_types=["steps"], on_sync_failed=on_failed))

        assert not result.success
        stats = await scheduler.get_stats()
        assert (stats.total_executions, stats.failure_count) == (1, 1)
        assert "Completion callback" in caplog.text

    @pytest.mark.asyncio
    async def test_reset_stats(self, scheduler: BackgroundSyncScheduler) -> None:
        await scheduler.run_once(BackgroundSyncConfig(data_types=["steps"]))
        await scheduler.reset_stats()
        assert (await scheduler.get_stats()).total_executions == 0


class TestCompatibility:
    def test_low_compatibility_is_reported(self, scheduler: BackgroundSyncScheduler, caplog) -> None:
        with caplog.at_level("WARNING", logger="healthsync.sync.scheduler"):
            compat = scheduler.check_compatibility("Huawei")

        assert compat.level is CompatibilityLevel.LOW
        assert "unreliable on huawei devices" in caplog.text

    def test_high_compatibility(self, scheduler: BackgroundSyncScheduler) -> None:
        assert scheduler.check_compatibility("Pixel").level is CompatibilityLevel.HIGH
