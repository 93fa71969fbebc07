"""Schemas for sync state persisted in the key-value store."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from src.models.base import HealthSyncBase, utc_now


class SyncTokenRecord(HealthSyncBase):
    """Stored under ``sync_token::{data_type}``."""

    data_type: str
    token: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    last_sync_at: datetime = Field(default_factory=utc_now)
    last_record_count: int = Field(default=0, ge=0)


class BackgroundSyncStatsRecord(HealthSyncBase):
    """Stored under ``sync_stats::{task_id}``."""

    task_id: str
    total_executions: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    total_delay_seconds: float = Field(default=0.0, ge=0)
    delay_samples: int = Field(default=0, ge=0)
    first_execution_at: datetime | None = None
    last_execution_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    failure_reasons: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _total_matches_outcomes(self) -> "BackgroundSyncStatsRecord":
        if self.total_executions != self.success_count + self.failure_count:
            raise ValueError(
                f"total_executions ({self.total_executions}) != success_count + failure_count "
                f"({self.success_count} + {self.failure_count})"
            )
        return self
