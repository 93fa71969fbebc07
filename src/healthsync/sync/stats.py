"""Background execution statistics, persisted per task id.

The OS may defer or kill background work without telling the app.  The only
way to notice is after the fact: every run records a success (with how late
it started) or a failure (with a reason), and the derived view flags a task
that is failing too often or has not succeeded for a day.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from pydantic import ValidationError

from src.healthsync.storage import KeyValueStore
from src.models.base import utc_now
from src.models.sync_state import BackgroundSyncStatsRecord

logger = logging.getLogger("healthsync.sync.stats")

KEY_PREFIX = "sync_stats::"

#: Delay above which the OS is clearly deferring the task.
HIGH_DELAY = timedelta(hours=1)


def stats_key(task_id: str) -> str:
    return f"{KEY_PREFIX}{task_id}"


@dataclass
class BackgroundSyncStats:
    """Read-only view of a task's execution history at ``as_of``."""

    task_id: str
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_delay: timedelta | None = None
    first_execution_at: datetime | None = None
    last_execution_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    failure_reasons: dict[str, int] = field(default_factory=dict)
    as_of: datetime = field(default_factory=utc_now)
    healthy_success_rate: float = 0.8
    stuck_after: timedelta = timedelta(hours=24)

    @classmethod
    def from_record(
        cls,
        record: BackgroundSyncStatsRecord,
        as_of: datetime,
        healthy_success_rate: float = 0.8,
        stuck_after: timedelta = timedelta(hours=24),
    ) -> "BackgroundSyncStats":
        average = (
            timedelta(seconds=record.total_delay_seconds / record.delay_samples)
            if record.delay_samples
            else None
        )
        return cls(
            task_id=record.task_id,
            total_executions=record.total_executions,
            success_count=record.success_count,
            failure_count=record.failure_count,
            average_delay=average,
            first_execution_at=record.first_execution_at,
            last_execution_at=record.last_execution_at,
            last_success_at=record.last_success_at,
            last_failure_at=record.last_failure_at,
            last_failure_reason=record.last_failure_reason,
            failure_reasons=dict(record.failure_reasons),
            as_of=as_of,
            healthy_success_rate=healthy_success_rate,
            stuck_after=stuck_after,
        )

    @property
    def success_rate(self) -> float:
        """1.0 when nothing has run yet."""
        if self.total_executions == 0:
            return 1.0
        return self.success_count / self.total_executions

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    @property
    def is_healthy(self) -> bool:
        return self.success_rate > self.healthy_success_rate

    @property
    def time_since_last_success(self) -> timedelta | None:
        if self.last_success_at is None:
            return None
        return self.as_of - self.last_success_at

    @property
    def appears_stuck(self) -> bool:
        """No success for longer than ``stuck_after`` while the task has been running."""
        if self.total_executions == 0:
            return False
        reference = self.last_success_at or self.first_execution_at
        return reference is not None and self.as_of - reference > self.stuck_after

    @property
    def most_common_failure_reason(self) -> str | None:
        if not self.failure_reasons:
            return None
        # ties go to the reason seen first
        return max(self.failure_reasons, key=self.failure_reasons.__getitem__)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "total_executions": self.total_executions,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": round(self.success_rate, 4),
            "is_healthy": self.is_healthy,
            "appears_stuck": self.appears_stuck,
            "average_delay_seconds": self.average_delay.total_seconds()
            if self.average_delay is not None
            else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_failure_reason": self.last_failure_reason,
            "most_common_failure_reason": self.most_common_failure_reason,
            "failure_reasons": dict(self.failure_reasons),
        }

    def get_report(self) -> str:
        lines = [
            f"Background Sync Statistics ({self.task_id})",
            f"Total Executions: {self.total_executions}",
            f"  Successful: {self.success_count}",
            f"  Failed: {self.failure_count}",
            f"  Success Rate: {self.success_rate * 100:.1f}%",
            "",
            f"Last Execution: {self.last_execution_at.isoformat() if self.last_execution_at else 'Never'}",
            f"Last Success: {self.last_success_at.isoformat() if self.last_success_at else 'Never'}",
        ]
        if self.average_delay is not None:
            lines.append(f"Average Delay: {self.average_delay.total_seconds() / 60:.1f} minutes")
            if self.average_delay > HIGH_DELAY:
                lines.append("  ⚠ High delay indicates the system is deferring the task")
        if self.last_failure_reason is not None:
            lines += [
                "",
                "Last Failure:",
                f"  Time: {self.last_failure_at.isoformat() if self.last_failure_at else 'unknown'}",
                f"  Reason: {self.last_failure_reason}",
            ]
        lines += ["", f"Health Status: {'Healthy ✓' if self.is_healthy else 'Unhealthy ✗'}"]
        if self.appears_stuck:
            hours = int(self.stuck_after.total_seconds() // 3600)
            lines.append(f"  ⚠ WARNING: Sync appears STUCK (>{hours} hours since last success)")
        if not self.is_healthy:
            lines.append(f"  ⚠ WARNING: Low success rate ({self.success_rate * 100:.1f}%)")
        return "\n".join(lines)


class ExecutionStatsStore:
    """Persists ``BackgroundSyncStatsRecord`` documents keyed by task id.

    Each ``record_*`` call is a locked read-modify-write ending in a single
    ``put``, so ``total_executions == success_count + failure_count`` holds
    for every stored document.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = utc_now,
        healthy_success_rate: float = 0.8,
        stuck_after: timedelta = timedelta(hours=24),
    ) -> None:
        self._store = store
        self._clock = clock
        self._healthy_success_rate = healthy_success_rate
        self._stuck_after = stuck_after
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    async def _load(self, task_id: str) -> BackgroundSyncStatsRecord:
        raw = await self._store.get(stats_key(task_id))
        if raw is None:
            return BackgroundSyncStatsRecord(task_id=task_id)
        try:
            return BackgroundSyncStatsRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Resetting unreadable stats for task %s: %s", task_id, exc.errors()[:1])
            return BackgroundSyncStatsRecord(task_id=task_id)

    async def record_success(
        self,
        task_id: str,
        timestamp: datetime | None = None,
        delay: timedelta | None = None,
    ) -> BackgroundSyncStats:
        """Record a successful run that started ``delay`` after it was due."""
        when = timestamp or self._clock()
        async with self._lock_for(task_id):
            record = await self._load(task_id)
            update: dict = {
                "total_executions": record.total_executions + 1,
                "success_count": record.success_count + 1,
                "first_execution_at": record.first_execution_at or when,
                "last_execution_at": when,
                "last_success_at": when,
            }
            if delay is not None:
                update["total_delay_seconds"] = record.total_delay_seconds + max(
                    delay.total_seconds(), 0.0
                )
                update["delay_samples"] = record.delay_samples + 1
            record = record.model_copy(update=update)
            await self._store.put(stats_key(task_id), record.to_storage())
        return self._view(record)

    async def record_failure(
        self,
        task_id: str,
        reason: str,
        timestamp: datetime | None = None,
    ) -> BackgroundSyncStats:
        when = timestamp or self._clock()
        async with self._lock_for(task_id):
            record = await self._load(task_id)
            reasons = dict(record.failure_reasons)
            reasons[reason] = reasons.get(reason, 0) + 1
            record = record.model_copy(
                update={
                    "total_executions": record.total_executions + 1,
                    "failure_count": record.failure_count + 1,
                    "first_execution_at": record.first_execution_at or when,
                    "last_execution_at": when,
                    "last_failure_at": when,
                    "last_failure_reason": reason,
                    "failure_reasons": reasons,
                }
            )
            await self._store.put(stats_key(task_id), record.to_storage())
        view = self._view(record)
        if not view.is_healthy:
            logger.warning(
                "Background task %s success rate is %.0f%% (%d of %d runs)",
                task_id,
                view.success_rate * 100,
                view.success_count,
                view.total_executions,
            )
        return view

    async def get_stats(self, task_id: str) -> BackgroundSyncStats:
        return self._view(await self._load(task_id))

    async def reset_stats(self, task_id: str) -> None:
        async with self._lock_for(task_id):
            await self._store.delete(stats_key(task_id))
        logger.info("Reset background stats for task %s", task_id)

    async def task_ids(self) -> list[str]:
        keys = await self._store.keys(KEY_PREFIX)
        return [k[len(KEY_PREFIX):] for k in keys]

    def _view(self, record: BackgroundSyncStatsRecord) -> BackgroundSyncStats:
        return BackgroundSyncStats.from_record(
            record,
            as_of=self._clock(),
            healthy_success_rate=self._healthy_success_rate,
            stuck_after=self._stuck_after,
        )
