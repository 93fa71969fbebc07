"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthSyncBase(BaseModel):
    """Base model with shared config for all persisted HealthSync records."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_storage(self) -> dict:
        """JSON-safe dict for a ``KeyValueStore``."""
        return self.model_dump(mode="json")
