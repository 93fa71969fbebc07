"""Cross-check platform aggregates against a sample of raw records.

The platform deduplicates overlapping writers before it computes a sum or
average, and its numbers can differ from what the raw records suggest.  The
validator recomputes the value locally from up to ``sample_size`` raw records
and reports how far apart the two are.  It never fails a sync: a problem
with the inputs yields an ``INCONCLUSIVE`` outcome instead of an exception.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable

from src.healthsync.base import (
    AVERAGE_METRICS,
    DataType,
    HealthPlatform,
    PlatformAggregate,
    RawRecord,
    TimeRange,
    data_type_key,
)
from src.healthsync.errors import HealthSyncError
from src.healthsync.rate_limiter import RateLimiter
from src.models.base import utc_now

logger = logging.getLogger("healthsync.validation")

RawFetch = Callable[[], Awaitable[list[RawRecord]]]


@dataclass
class ValidationConfig:
    sample_size: int = 100
    accuracy_threshold: float = 0.1
    significant_deduplication_rate: float = 0.1
    lookback_hours: int = 24


class ValidationOutcome(str, Enum):
    ACCURATE = "accurate"
    INACCURATE = "inaccurate"
    INCONCLUSIVE = "inconclusive"


@dataclass
class AggregateTransparency:
    """Deduplication details reported by the platform alongside an aggregate."""

    included_records: int | None = None
    excluded_records: int | None = None
    sources_included: list[str] | None = None
    deduplication_method: str | None = None
    deduplication_rate: float | None = None
    has_significant_deduplication: bool = False

    @classmethod
    def from_aggregate(
        cls, aggregate: PlatformAggregate | None, significant_rate: float = 0.1
    ) -> "AggregateTransparency":
        if aggregate is None:
            return cls()
        rate = aggregate.deduplication_rate
        return cls(
            included_records=aggregate.included_records,
            excluded_records=aggregate.excluded_records,
            sources_included=list(aggregate.sources_included)
            if aggregate.sources_included is not None
            else None,
            deduplication_method=aggregate.deduplication_method,
            deduplication_rate=rate,
            has_significant_deduplication=rate is not None and rate > significant_rate,
        )


@dataclass
class AggregateValidation:
    """Result of comparing a platform aggregate with a local calculation.

    ``percentage_difference`` is a fraction (0.2 means 20%).
    """

    data_type: str
    outcome: ValidationOutcome
    confidence: float = 0.0
    percentage_difference: float | None = None
    calculated_value: float | None = None
    platform_value: float | None = None
    sample_size: int = 0
    total_raw_records: int = 0
    notes: list[str] = field(default_factory=list)
    transparency: AggregateTransparency = field(default_factory=AggregateTransparency)

    @property
    def is_accurate(self) -> bool:
        return self.outcome is ValidationOutcome.ACCURATE

    @property
    def is_inconclusive(self) -> bool:
        return self.outcome is ValidationOutcome.INCONCLUSIVE

    @property
    def difference(self) -> float | None:
        if self.calculated_value is None or self.platform_value is None:
            return None
        return abs(self.platform_value - self.calculated_value)

    def get_report(self) -> str:
        lines = [
            "Aggregate Validation Report",
            f"Data Type: {self.data_type}",
            "",
            f"Platform Value: {self.platform_value}",
        ]
        if self.calculated_value is not None:
            lines.append(f"Calculated Value (from sample): {self.calculated_value}")
        if self.difference is not None:
            lines.append(f"Difference: {self.difference}")
        if self.percentage_difference is not None:
            lines.append(f"Percentage Difference: {self.percentage_difference * 100:.2f}%")
        lines += [
            "",
            f"Sample Size: {self.sample_size} of {self.total_raw_records} records",
            f"Confidence: {self.confidence * 100:.1f}%",
            f"Outcome: {self.outcome.value}",
        ]
        t = self.transparency
        if t.included_records is not None:
            lines.append(f"Records Included: {t.included_records}")
        if t.excluded_records is not None:
            lines.append(f"Records Excluded (Duplicates): {t.excluded_records}")
        if t.deduplication_rate is not None:
            lines.append(f"Deduplication Rate: {t.deduplication_rate * 100:.1f}%")
        if t.sources_included:
            lines.append("Data Sources: " + ", ".join(t.sources_included))
        if self.notes:
            lines += ["", "Notes:"] + [f"  - {note}" for note in self.notes]
        return "\n".join(lines)


def _local_value(sample: list[RawRecord], data_type: str, scale: float) -> float | None:
    values = [r.value for r in sample if r.value is not None]
    if not values:
        return None
    if data_type in AVERAGE_METRICS:
        return sum(values) / len(values)
    # count metrics and unknown types are totals; a truncated sample is scaled up
    return sum(values) * scale


class AggregateValidator:
    """Validates platform aggregates against raw-record samples.

    Args:
        config: Sample size, accuracy threshold and deduplication threshold.
        rng:    Random source used to pick the sample (seed it in tests).
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or ValidationConfig()
        self._rng = rng or random.Random()

    async def validate(
        self,
        aggregate: PlatformAggregate | None,
        raw_fetch: RawFetch,
        sample_size: int | None = None,
        accuracy_threshold: float | None = None,
        data_type: DataType | str | None = None,
    ) -> AggregateValidation:
        """Compare ``aggregate`` with a value recomputed from raw records.

        Args:
            aggregate:          Platform aggregate, or None if the platform had none.
            raw_fetch:          Coroutine function returning the raw records.
            sample_size:        Max records to use; defaults to config.
            accuracy_threshold: Max tolerated relative difference; defaults to config.
            data_type:          Needed only when ``aggregate`` is None.

        Returns:
            An ``AggregateValidation``; never raises for platform failures.
        """
        size = sample_size if sample_size is not None else self.config.sample_size
        threshold = (
            accuracy_threshold if accuracy_threshold is not None else self.config.accuracy_threshold
        )
        if data_type is not None:
            key = data_type_key(data_type)
        elif aggregate is not None:
            key = aggregate.data_type
        else:
            key = "unknown"
        transparency = AggregateTransparency.from_aggregate(
            aggregate, self.config.significant_deduplication_rate
        )

        def inconclusive(note: str, **extra) -> AggregateValidation:
            logger.info("Aggregate validation for %s inconclusive: %s", key, note)
            return AggregateValidation(
                data_type=key,
                outcome=ValidationOutcome.INCONCLUSIVE,
                notes=[note],
                transparency=transparency,
                **extra,
            )

        if aggregate is None:
            return inconclusive("Platform returned no aggregate for this range")

        platform_value = aggregate.value_for(key)
        if platform_value is None:
            return inconclusive("Aggregate has no value to compare")

        try:
            raw = await raw_fetch()
        except HealthSyncError as exc:
            logger.warning("Raw fetch for %s validation failed: %s", key, exc)
            return inconclusive(f"Validation error: {exc}", platform_value=platform_value)

        if not raw:
            return inconclusive("No raw data available for validation", platform_value=platform_value)

        sample = raw if len(raw) <= size else self._rng.sample(raw, size)
        calculated = _local_value(sample, key, len(raw) / len(sample))
        if calculated is None:
            return inconclusive(
                "Could not calculate value from raw data",
                platform_value=platform_value,
                sample_size=len(sample),
                total_raw_records=len(raw),
            )

        pct = abs(platform_value - calculated) / max(calculated, 1.0)
        confidence = max(0.0, 1.0 - pct)
        accurate = pct <= threshold

        notes: list[str] = []
        if len(sample) < len(raw):
            notes.append(f"Validation based on sample of {len(sample)} out of {len(raw)} records")
        if 0.01 < pct <= 0.05:
            notes.append(
                f"Small difference detected ({pct * 100:.2f}%). This may be due to deduplication."
            )
        elif 0.05 < pct <= 0.10:
            notes.append("Moderate difference detected. Check for multiple data sources.")
        elif pct > 0.10:
            notes.append(
                "Large difference detected. This may indicate a platform issue "
                "or a vendor-specific calculation."
            )
        if transparency.has_significant_deduplication:
            notes.append(
                f"Platform removed {transparency.deduplication_rate * 100:.1f}% of records as duplicates."
            )

        logger.info(
            "Aggregate validation for %s: %s (difference %.2f%%, confidence %.1f%%)",
            key,
            "PASS" if accurate else "FAIL",
            pct * 100,
            confidence * 100,
        )
        return AggregateValidation(
            data_type=key,
            outcome=ValidationOutcome.ACCURATE if accurate else ValidationOutcome.INACCURATE,
            confidence=confidence,
            percentage_difference=pct,
            calculated_value=calculated,
            platform_value=platform_value,
            sample_size=len(sample),
            total_raw_records=len(raw),
            notes=notes,
            transparency=transparency,
        )

    async def validate_range(
        self,
        platform: HealthPlatform,
        data_type: DataType | str,
        time_range: TimeRange | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> AggregateValidation:
        """Fetch the aggregate and raw records for a range and validate them.

        ``time_range`` defaults to the last ``lookback_hours``.
        """
        key = data_type_key(data_type)
        limiter = rate_limiter or RateLimiter(name="validation")
        window = time_range or TimeRange.last(
            timedelta(hours=self.config.lookback_hours), now=utc_now()
        )
        try:
            aggregate = await limiter.execute(
                lambda: platform.fetch_platform_aggregate(key, window),
                f"aggregate {key}",
            )
        except HealthSyncError as exc:
            logger.warning("Aggregate fetch for %s failed: %s", key, exc)
            aggregate = None

        return await self.validate(
            aggregate,
            lambda: limiter.execute(
                lambda: platform.fetch_raw_records(key, window),
                f"validation sample {key}",
            ),
            data_type=key,
        )
