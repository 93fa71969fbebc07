"""Tests for persisted background execution statistics."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.healthsync.storage import InMemoryKeyValueStore, JsonFileKeyValueStore
from src.healthsync.sync.stats import BackgroundSyncStats, ExecutionStatsStore, stats_key
from src.healthsync.tests.conftest import TEST_NOW, FakeClock, InterruptibleStore

TASK = "health-sync-background"


@pytest.fixture
def stats_store(store: InMemoryKeyValueStore, clock: FakeClock) -> ExecutionStatsStore:
    return ExecutionStatsStore(store, clock=clock)


class TestBackgroundSyncStats:
    def test_success_rate_of_seven_out_of_ten(self) -> None:
        stats = BackgroundSyncStats(task_id=TASK, total_executions=10, success_count=7, failure_count=3)
        assert stats.success_rate == pytest.approx(0.7)
        assert stats.failure_rate == pytest.approx(0.3)
        assert not stats.is_healthy

    def test_exactly_eighty_percent_is_not_healthy(self) -> None:
        stats = BackgroundSyncStats(task_id=TASK, total_executions=10, success_count=8, failure_count=2)
        assert not stats.is_healthy

    def test_no_executions(self) -> None:
        stats = BackgroundSyncStats(task_id=TASK, as_of=TEST_NOW)
        assert stats.success_rate == 1.0
        assert stats.is_healthy
        assert not stats.appears_stuck
        assert stats.most_common_failure_reason is None
        assert "Last Success: Never" in stats.get_report()


class TestExecutionStatsStore:
    @pytest.mark.asyncio
    async def test_counts_add_up(self, stats_store: ExecutionStatsStore) -> None:
        for _ in range(7):
            await stats_store.record_success(TASK)
        for _ in range(3):
            await stats_store.record_failure(TASK, "PlatformError")

        stats = await stats_store.get_stats(TASK)

        assert stats.total_executions == 10
        assert stats.success_count + stats.failure_count == stats.total_executions
        assert stats.success_rate == pytest.approx(0.7)
        assert not stats.is_healthy

    @pytest.mark.asyncio
    async def test_average_delay(self, stats_store: ExecutionStatsStore) -> None:
        await stats_store.record_success(TASK, delay=timedelta(minutes=10))
        await stats_store.record_success(TASK, delay=timedelta(minutes=30))
        await stats_store.record_success(TASK)

        stats = await stats_store.get_stats(TASK)
        assert stats.average_delay == timedelta(minutes=20)
        assert "Average Delay: 20.0 minutes" in stats.get_report()

    @pytest.mark.asyncio
    async def test_no_success_for_a_day_appears_stuck(
        self, stats_store: ExecutionStatsStore, clock: FakeClock
    ) -> None:
        await stats_store.record_success(TASK)
        clock.advance(hours=12)
        await stats_store.record_failure(TASK, "RateLimitError")
        assert not (await stats_store.get_stats(TASK)).appears_stuck

        clock.advance(hours=13)
        stats = await stats_store.get_stats(TASK)

        assert stats.appears_stuck
        assert stats.time_since_last_success == timedelta(hours=25)
        assert "appears STUCK" in stats.get_report()

    @pytest.mark.asyncio
    async def test_never_succeeded_appears_stuck(
        self, stats_store: ExecutionStatsStore, clock: FakeClock
    ) -> None:
        await stats_store.record_failure(TASK, "PlatformError")
        clock.advance(hours=25)
        assert (await stats_store.get_stats(TASK)).appears_stuck

    @pytest.mark.asyncio
    async def test_most_common_failure_reason(self, stats_store: ExecutionStatsStore) -> None:
        await stats_store.record_failure(TASK, "RateLimitError")
        await stats_store.record_failure(TASK, "PlatformTimeoutError")
        await stats_store.record_failure(TASK, "PlatformTimeoutError")

        stats = await stats_store.get_stats(TASK)
        assert stats.most_common_failure_reason == "PlatformTimeoutError"
        assert stats.last_failure_reason == "PlatformTimeoutError"
        assert stats.failure_reasons == {"RateLimitError": 1, "PlatformTimeoutError": 2}

    @pytest.mark.asyncio
    async def test_unreadable_record_is_reset(
        self, store: InMemoryKeyValueStore, stats_store: ExecutionStatsStore
    ) -> None:
        await store.put(
            stats_key(TASK),
            {"task_id": TASK, "total_executions": 5, "success_count": 1, "failure_count": 1},
        )

        stats = await stats_store.record_success(TASK)

        assert stats.total_executions == 1
        assert stats.success_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_write_leaves_counts_consistent(self, clock: FakeClock) -> None:
        store = InterruptibleStore()
        stats_store = ExecutionStatsStore(store, clock=clock)
        await stats_store.record_success(TASK)

        store.cancel_next_put = True
        with pytest.raises(asyncio.CancelledError):
            await stats_store.record_failure(TASK, "PlatformError")

        stats = await stats_store.get_stats(TASK)
        assert (stats.total_executions, stats.success_count, stats.failure_count) == (1, 1, 0)
        await stats_store.record_failure(TASK, "PlatformError")
        assert (await stats_store.get_stats(TASK)).total_executions == 2

    @pytest.mark.asyncio
    async def test_reset_and_task_ids(self, stats_store: ExecutionStatsStore) -> None:
        await stats_store.record_success("a")
        await stats_store.record_success("b")
        assert await stats_store.task_ids() == ["a", "b"]

        await stats_store.reset_stats("a")
        assert (await stats_store.get_stats("a")).total_executions == 0
        assert await stats_store.task_ids() == ["b"]

    @pytest.mark.asyncio
    async def test_stats_survive_a_restart(self, tmp_path, clock: FakeClock) -> None:
        path = tmp_path / "state.json"
        first = ExecutionStatsStore(JsonFileKeyValueStore(path), clock=clock)
        await first.record_success(TASK)
        await first.record_failure(TASK, "PlatformError")

        second = ExecutionStatsStore(JsonFileKeyValueStore(path), clock=clock)
        stats = await second.get_stats(TASK)

        assert stats.total_executions == 2
        assert stats.last_success_at == TEST_NOW
        assert stats.to_dict()["failure_reasons"] == {"PlatformError": 1}
