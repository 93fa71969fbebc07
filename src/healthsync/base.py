"""Base classes and canonical data models for the HealthSync resilience core.

The platform that owns the shared health store is reached only through the
``HealthPlatform`` interface.  Concrete adapters (HTTP, native bridges) do
field mapping and pagination and must raise the typed errors from
``src.healthsync.errors``; everything above this module treats them as black
boxes that supply raw records, raw aggregates and change-feed responses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from src.models.base import utc_now


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class DataType(str, Enum):
    """Health metric categories exposed by the platform store."""

    STEPS = "steps"
    HEART_RATE = "heart_rate"
    RESTING_HEART_RATE = "resting_heart_rate"
    HEART_RATE_VARIABILITY = "heart_rate_variability"
    SLEEP = "sleep"
    ACTIVITY = "activity"
    CALORIES = "calories"
    ACTIVE_CALORIES = "active_calories"
    DISTANCE = "distance"
    FLOORS_CLIMBED = "floors_climbed"
    BLOOD_OXYGEN = "blood_oxygen"
    BLOOD_PRESSURE = "blood_pressure"
    BODY_TEMPERATURE = "body_temperature"
    RESPIRATORY_RATE = "respiratory_rate"
    WEIGHT = "weight"
    HEIGHT = "height"


#: Metrics whose aggregate is a total over the range.
SUM_METRICS: frozenset[str] = frozenset(
    {
        DataType.STEPS.value,
        DataType.CALORIES.value,
        DataType.ACTIVE_CALORIES.value,
        DataType.DISTANCE.value,
        DataType.FLOORS_CLIMBED.value,
    }
)

#: Metrics whose aggregate is a mean over the range.
AVERAGE_METRICS: frozenset[str] = frozenset(
    {
        DataType.HEART_RATE.value,
        DataType.RESTING_HEART_RATE.value,
        DataType.HEART_RATE_VARIABILITY.value,
        DataType.BLOOD_OXYGEN.value,
        DataType.BODY_TEMPERATURE.value,
        DataType.RESPIRATORY_RATE.value,
        DataType.WEIGHT.value,
        DataType.HEIGHT.value,
    }
)


def data_type_key(data_type: DataType | str) -> str:
    """Return the canonical string key for a data type.

    Accepts either a ``DataType`` member or its string value; unknown strings
    pass through unchanged so adapters can expose extra record types.
    """
    if isinstance(data_type, DataType):
        return data_type.value
    return str(data_type).strip()


# ---------------------------------------------------------------------------
# Time ranges
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeRange:
    """Half-open UTC interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"TimeRange end {self.end} is before start {self.start}")

    @classmethod
    def last(cls, duration: timedelta, now: datetime | None = None) -> "TimeRange":
        """Return the range ending at ``now`` and spanning ``duration``."""
        end = now or utc_now()
        return cls(start=end - duration, end=end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def intersection(self, other: "TimeRange") -> timedelta:
        overlap_start = max(self.start, other.start)
        overlap_end = min(self.end, other.end)
        return max(overlap_end - overlap_start, timedelta(0))

    def union(self, other: "TimeRange") -> timedelta:
        """Length of the union of both intervals (gap excluded)."""
        return self.duration + other.duration - self.intersection(other)


# ---------------------------------------------------------------------------
# Records returned by the platform
# ---------------------------------------------------------------------------


@dataclass
class RawRecord:
    """A single raw record from the shared platform store.

    Attributes:
        source_id:           Writer identity (app package / bundle id).
        timestamp:           UTC start of the measurement.
        value:               Numeric value (None for non-numeric records).
        device_model:        Model of the device that produced the record.
        device_manufacturer: Manufacturer of that device.
        end_timestamp:       UTC end for interval records (None = instant).
        app_name:            Human-readable writer name, if the platform has one.
        is_manual:           True if the user entered the record by hand.
        record_id:           Platform record id, if exposed.
        metadata:            Any extra fields the adapter chose to keep.
    """

    source_id: str
    timestamp: datetime
    value: float | None = None
    device_model: str | None = None
    device_manufacturer: str | None = None
    end_timestamp: datetime | None = None
    app_name: str | None = None
    is_manual: bool = False
    record_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def end(self) -> datetime:
        return self.end_timestamp or self.timestamp


@dataclass
class PlatformAggregate:
    """A platform-computed summary over a time range.

    The platform deduplicates overlapping writers before computing these
    numbers; ``included_records`` / ``excluded_records`` / ``sources_included``
    are its transparency fields and may be missing.
    """

    data_type: str
    time_range: TimeRange
    sum_value: float | None = None
    avg_value: float | None = None
    min_value: float | None = None
    max_value: float | None = None
    count: int | None = None
    included_records: int | None = None
    excluded_records: int | None = None
    sources_included: list[str] | None = None
    deduplication_method: str | None = None
    raw: dict = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        return self.sum_value is not None or self.avg_value is not None

    @property
    def total_records_processed(self) -> int | None:
        if self.included_records is None:
            return None
        return self.included_records + (self.excluded_records or 0)

    @property
    def deduplication_rate(self) -> float | None:
        """Fraction of processed records the platform dropped as duplicates."""
        total = self.total_records_processed
        if not total:
            return None
        return (self.excluded_records or 0) / total

    @property
    def has_significant_deduplication(self) -> bool:
        rate = self.deduplication_rate
        return rate is not None and rate > 0.1

    def value_for(self, data_type: str | None = None) -> float | None:
        """Return the headline value: the sum for count metrics, else the mean."""
        key = data_type_key(data_type or self.data_type)
        if key in AVERAGE_METRICS:
            return self.avg_value if self.avg_value is not None else self.sum_value
        return self.sum_value if self.sum_value is not None else self.avg_value


@dataclass
class ChangesResponse:
    """One page of the platform change feed."""

    records: list[RawRecord] = field(default_factory=list)
    next_token: str | None = None
    has_more: bool = False


# ---------------------------------------------------------------------------
# Abstract collaborators
# ---------------------------------------------------------------------------


class HealthPlatform(ABC):
    """Interface to the platform-owned health data store.

    Implementations must raise ``TokenInvalidError`` for rejected
    continuation tokens, ``RateLimitError`` / ``PlatformTimeoutError`` for
    transient failures, and ``PlatformError`` for anything else.  String or
    status-code sniffing belongs in the implementation, never above it.
    """

    #: Identifier used in logs.
    PLATFORM_ID: str = "unknown"

    @abstractmethod
    async def fetch_raw_records(
        self, data_type: str, time_range: TimeRange
    ) -> list[RawRecord]:
        """Fetch raw records of ``data_type`` inside ``time_range``."""

    @abstractmethod
    async def fetch_platform_aggregate(
        self, data_type: str, time_range: TimeRange
    ) -> PlatformAggregate | None:
        """Fetch the platform's deduplicated aggregate, or None if it has none."""

    @abstractmethod
    async def fetch_changes_since(self, data_type: str, token: str) -> ChangesResponse:
        """Fetch records changed since ``token``.

        Raises:
            TokenInvalidError: The token is expired, corrupted or unknown.
        """

    @abstractmethod
    async def request_initial_token(self, data_type: str) -> str:
        """Obtain a fresh continuation token positioned at "now"."""


class FullSyncProvider(ABC):
    """Strategy used by the changes engine when a token has to be discarded."""

    @abstractmethod
    async def full_sync(self, data_type: str, range_hint: TimeRange) -> list[RawRecord]:
        """Return every record of ``data_type`` in ``range_hint``."""
