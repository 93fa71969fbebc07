"""End-to-end tests for HealthSyncEngine wiring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.config import Settings
from src.healthsync.base import PlatformAggregate, TimeRange
from src.healthsync.config_loader import SyncConfig
from src.healthsync.engine import HealthSyncEngine
from src.healthsync.errors import TokenInvalidError
from src.healthsync.storage import InMemoryKeyValueStore
from src.healthsync.sync.device_profiles import CompatibilityLevel
from src.healthsync.sync.scheduler import BackgroundSyncConfig
from src.healthsync.tests.conftest import (
    TEST_NOW,
    FakeClock,
    FakeMonotonic,
    FakePlatform,
    FakeSleep,
    make_records,
)


@pytest.fixture
def engine(
    platform: FakePlatform,
    store: InMemoryKeyValueStore,
    sync_config: SyncConfig,
    clock: FakeClock,
    sleeper: FakeSleep,
    monotonic: FakeMonotonic,
) -> HealthSyncEngine:
    return HealthSyncEngine(
        platform, store, sync_config, clock=clock, sleep=sleeper, monotonic=monotonic
    )


class TestHealthSyncEngine:
    def test_components_share_one_limiter(self, engine: HealthSyncEngine) -> None:
        assert engine.rate_limiter.name == "fake"
        assert engine.rate_limiter.config.max_retries == 5
        assert engine.changes.has_fallback

    @pytest.mark.asyncio
    async def test_sync_round_trip(self, engine: HealthSyncEngine, platform: FakePlatform) -> None:
        first = await engine.fetch_changes("steps")
        assert first.is_initial_sync

        platform.add_changes("steps", make_records("com.fitapp", 3))
        outcome = await engine.fetch_changes_for_types(["steps"])
        assert outcome.total_records == 3

        statuses = await engine.get_sync_status()
        assert statuses["steps"].last_record_count == 3
        only = await engine.get_sync_status(["sleep"])
        assert not only["sleep"].has_token

        await engine.reset_sync("steps")
        assert await engine.get_sync_status() == {}

    @pytest.mark.asyncio
    async def test_fallback_can_be_disabled(
        self, platform: FakePlatform, store: InMemoryKeyValueStore, sync_config: SyncConfig, clock: FakeClock
    ) -> None:
        engine = HealthSyncEngine(platform, store, sync_config, enable_fallback=False, clock=clock)
        await engine.fetch_changes("steps")
        platform.invalidate_tokens()

        with pytest.raises(TokenInvalidError):
            await engine.fetch_changes("steps")

    @pytest.mark.asyncio
    async def test_detect_conflicts_uses_lookback_window(
        self, engine: HealthSyncEngine, platform: FakePlatform
    ) -> None:
        day_start = TEST_NOW - timedelta(hours=24)
        platform.records["steps"] = make_records("com.a", 96, start=day_start, span=timedelta(hours=24))
        platform.records["steps"] += make_records("com.b", 96, start=day_start, span=timedelta(hours=24))
        platform.records["steps"] += make_records(
            "com.old", 10, start=TEST_NOW - timedelta(days=5), span=timedelta(days=1)
        )

        result = await engine.detect_conflicts("steps")

        assert result.window.end == TEST_NOW
        assert {s.source_id for s in result.sources} == {"com.a", "com.b"}
        assert result.has_conflicts

        summary = await engine.detect_conflicts_for_types(["steps", "sleep"])
        assert summary.types_with_conflicts == ["steps"]

    @pytest.mark.asyncio
    async def test_validate_aggregate(self, engine: HealthSyncEngine, platform: FakePlatform) -> None:
        window = TimeRange(start=TEST_NOW - timedelta(hours=24), end=TEST_NOW)
        platform.records["steps"] = make_records("com.a", 10, start=window.start, span=timedelta(hours=10))
        platform.aggregates["steps"] = PlatformAggregate(data_type="steps", time_range=window, sum_value=100)

        result = await engine.validate_aggregate("steps")

        assert result.is_accurate

    @pytest.mark.asyncio
    async def test_background_and_close(
        self, platform: FakePlatform, store: InMemoryKeyValueStore, sync_config: SyncConfig
    ) -> None:
        engine = HealthSyncEngine(platform, store, sync_config)
        task = engine.schedule_periodic(BackgroundSyncConfig.balanced(["steps"]))
        assert engine.scheduler.is_scheduled()

        stats = await engine.get_stats()
        assert stats.total_executions == 0
        assert engine.check_compatibility("Vivo").level is CompatibilityLevel.LOW

        async with engine:
            pass
        assert task.done()
        assert not engine.scheduler.is_scheduled()

    @pytest.mark.asyncio
    async def test_from_settings(self, platform: FakePlatform, sync_config: SyncConfig) -> None:
        settings = Settings(storage_backend="memory")

        engine = HealthSyncEngine.from_settings(settings, platform=platform, sync_config=sync_config)

        assert isinstance(engine.store, InMemoryKeyValueStore)
        assert engine.platform is platform
        await engine.close()
