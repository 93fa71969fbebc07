"""Multi-source conflict (double-counting) detection.

When two apps both write steps for the same walk, the platform store holds
both copies and any naive sum is inflated.  ``ConflictDetector`` looks at the
raw records for one data type, groups them by writer, and scores the
situation on two independent axes:

    severity   — how much harm the conflict would do if it is real
                 (rises with the number of writers, their time overlap and
                 how evenly records are split between them)
    confidence — how likely it is that the conflict is real
                 (rises with sample size, overlap, and the share of time
                 buckets that two or more writers wrote into)

Scores are estimates, never proof.  The user is only warned when confidence
is high, and recommendations never tell the user which specific app to
disable.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from itertools import combinations
from typing import Iterable, Sequence

from src.healthsync.base import DataType, HealthPlatform, RawRecord, TimeRange, data_type_key
from src.healthsync.errors import HealthSyncError
from src.healthsync.rate_limiter import RateLimiter
from src.models.base import utc_now

logger = logging.getLogger("healthsync.conflicts")

DEFAULT_PLATFORM_SOURCES: frozenset[str] = frozenset(
    {
        "com.google.android.apps.fitness",  # Google Fit
        "com.samsung.health",               # Samsung Health
        "com.android.healthconnect",        # Health Connect
        "com.google.android.gms",           # Google Play Services
        "com.apple.health",                 # Apple Health
    }
)


@dataclass
class ConflictDetectorConfig:
    """Tunable thresholds; all are empirically chosen defaults."""

    min_sample_size: int = 10
    sample_saturation: int = 100
    sync_loop_similarity: float = 0.9
    high_overlap_threshold: float = 0.5
    low_overlap_threshold: float = 0.2
    bucket_minutes: int = 15
    warn_high_severity: float = 0.7
    warn_medium_severity: float = 0.4
    warn_min_confidence: float = 0.8
    severity_high: float = 0.7
    severity_medium: float = 0.4
    confidence_high: float = 0.8
    confidence_medium: float = 0.5
    platform_sources: frozenset[str] = DEFAULT_PLATFORM_SOURCES


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ConflictType(str, Enum):
    MULTIPLE_WRITERS = "multiple_writers"
    SYNC_LOOP = "sync_loop"
    MULTIPLE_DEVICES = "multiple_devices"
    MANUAL_VS_AUTOMATIC = "manual_vs_automatic"


_TYPE_LABELS: dict[ConflictType, str] = {
    ConflictType.MULTIPLE_WRITERS: "Multiple apps writing same data",
    ConflictType.SYNC_LOOP: "Sync loop detected (apps copying data back and forth)",
    ConflictType.MULTIPLE_DEVICES: "Same app on multiple devices",
    ConflictType.MANUAL_VS_AUTOMATIC: "Manual entries competing with automatic tracking",
}


def severity_label(severity: float, config: ConflictDetectorConfig | None = None) -> str:
    cfg = config or ConflictDetectorConfig()
    if severity >= cfg.severity_high:
        return "HIGH"
    if severity >= cfg.severity_medium:
        return "MEDIUM"
    return "LOW"


def confidence_label(confidence: float, config: ConflictDetectorConfig | None = None) -> str:
    cfg = config or ConflictDetectorConfig()
    if confidence >= cfg.confidence_high:
        return "HIGH"
    if confidence >= cfg.confidence_medium:
        return "MEDIUM"
    return "LOW"


@dataclass
class SourceRecord:
    """One distinct writer (source_id + device_model) seen in the window.

    Attributes:
        source_id:           App package / bundle id.
        device_model:        Device model, if reported.
        device_manufacturer: Device manufacturer, if reported.
        app_name:            Human-readable app name, if reported.
        is_platform_owned:   The platform's own health app wrote these.
        is_manual:           Most of this writer's records were entered by hand.
        record_count:        Records from this writer in the window.
        percentage:          Share of all records in the window (0–100).
        time_range_covered:  Earliest start to latest end of its records.
    """

    source_id: str
    device_model: str | None
    device_manufacturer: str | None
    app_name: str | None
    is_platform_owned: bool
    is_manual: bool
    record_count: int
    percentage: float
    time_range_covered: TimeRange | None

    @property
    def display_name(self) -> str:
        return self.app_name or self.source_id

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.source_id, self.device_model)


@dataclass
class DataSourceConflict:
    """A detected (possible) conflict between writers of one data type."""

    data_type: str
    sources: list[SourceRecord]
    severity: float
    confidence: float
    type: ConflictType
    time_overlap_ratio: float
    is_legitimate_multi_device: bool = False
    explanation: str = ""
    total_records: int = 0
    window: TimeRange | None = None
    config: ConflictDetectorConfig = field(default_factory=ConflictDetectorConfig, repr=False)

    # -- labels ---------------------------------------------------------

    @property
    def severity_label(self) -> str:
        return severity_label(self.severity, self.config)

    @property
    def confidence_label(self) -> str:
        return confidence_label(self.confidence, self.config)

    @property
    def type_label(self) -> str:
        return _TYPE_LABELS[self.type]

    @property
    def is_high_severity(self) -> bool:
        return self.severity >= self.config.severity_high

    @property
    def is_medium_severity(self) -> bool:
        return self.config.severity_medium <= self.severity < self.config.severity_high

    @property
    def is_low_severity(self) -> bool:
        return self.severity < self.config.severity_medium

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= self.config.confidence_high

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence < self.config.confidence_medium

    @property
    def should_warn_user(self) -> bool:
        """Warn only when a conflict is both harmful and likely real."""
        cfg = self.config
        if self.is_low_confidence:
            return False
        if self.severity >= cfg.warn_high_severity and self.confidence >= cfg.warn_min_confidence:
            return True
        if self.severity >= cfg.warn_medium_severity and self.confidence >= cfg.warn_min_confidence:
            return True
        return False

    # -- user-facing text -----------------------------------------------

    def get_safe_recommendation(self) -> str:
        """Advice that never names a specific source to disable."""
        if self.is_legitimate_multi_device:
            return (
                f"You appear to be using {self.sources[0].display_name} on multiple devices. "
                "This is normal if you switched devices or use a phone and watch together. "
                "No action needed unless you're seeing incorrect totals."
            )

        if self.time_overlap_ratio < self.config.low_overlap_threshold:
            return (
                "Multiple apps detected, but they track different time periods. "
                "This may be intentional (e.g., you switched apps). "
                "Review your data timeline to confirm totals are correct."
            )

        if self.is_low_confidence:
            return (
                "Multiple data sources detected. This might be normal if you:\n"
                "- Switched health apps recently\n"
                "- Use different apps for different activities\n"
                "- Track data on multiple devices\n\n"
                "Review your data sources and disable any you're not using."
            )

        app_names = " and ".join(s.display_name for s in self.sources)
        return (
            f"Multiple apps ({app_names}) are tracking {self.data_type}. "
            "This may cause inflated counts.\n\n"
            "Recommended action:\n"
            "1. Review your data in each app\n"
            "2. Choose which app to keep\n"
            f"3. Disable {self.data_type} tracking in the other app(s)\n\n"
            "If the apps track different activities, this is normal."
        )

    def get_detailed_analysis(self) -> str:
        lines = [
            f"Conflict Analysis for {self.data_type}",
            "",
            f"Severity: {self.severity_label} ({self.severity * 100:.1f}%)",
            f"Confidence: {self.confidence_label} ({self.confidence * 100:.1f}%)",
            f"Type: {self.type_label}",
            f"Time overlap: {self.time_overlap_ratio * 100:.1f}%",
            "",
            f"Data Sources ({len(self.sources)}):",
        ]
        for source in self.sources:
            lines.append(
                f"  • {source.display_name}: {source.record_count} records "
                f"({source.percentage:.1f}%)"
            )
            if source.device_model:
                lines.append(
                    f"    Device: {source.device_manufacturer or 'unknown'} {source.device_model}"
                )
        lines.append("")

        if self.is_legitimate_multi_device:
            lines.append("✓ Likely legitimate multi-device usage")
        if self.time_overlap_ratio < self.config.high_overlap_threshold:
            lines.append(
                f"✓ Sources have low time overlap ({self.time_overlap_ratio * 100:.1f}%)"
            )
            lines.append("  This suggests complementary data, not duplicates")

        if self.explanation:
            lines += ["", "Explanation:", self.explanation]

        lines += ["", "Recommendation:", self.get_safe_recommendation()]
        return "\n".join(lines)


@dataclass
class ConflictDetectionResult:
    data_type: str
    sources: list[SourceRecord]
    conflicts: list[DataSourceConflict]
    total_records: int
    window: TimeRange | None = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def has_multiple_writers(self) -> bool:
        return len(self.sources) > 1

    @property
    def primary_source(self) -> SourceRecord | None:
        if not self.sources:
            return None
        return max(self.sources, key=lambda s: s.record_count)

    @property
    def secondary_sources(self) -> list[SourceRecord]:
        primary = self.primary_source
        if primary is None:
            return []
        return [s for s in self.sources if s.key != primary.key]

    @property
    def high_severity_conflicts(self) -> list[DataSourceConflict]:
        return [c for c in self.conflicts if c.is_high_severity]

    @property
    def warnings(self) -> list[DataSourceConflict]:
        return [c for c in self.conflicts if c.should_warn_user]


@dataclass
class ConflictSummary:
    """Conflict results across several data types."""

    results: dict[str, ConflictDetectionResult] = field(default_factory=dict)
    errors: dict[str, HealthSyncError] = field(default_factory=dict)
    analysis_time: datetime = field(default_factory=utc_now)

    @property
    def total_conflicts(self) -> int:
        return sum(len(r.conflicts) for r in self.results.values())

    @property
    def types_with_conflicts(self) -> list[str]:
        return [dt for dt, r in self.results.items() if r.has_conflicts]

    @property
    def all_high_severity_conflicts(self) -> list[DataSourceConflict]:
        return [c for r in self.results.values() for c in r.high_severity_conflicts]

    @property
    def has_any_conflicts(self) -> bool:
        return self.total_conflicts > 0

    @property
    def has_high_severity_conflicts(self) -> bool:
        return bool(self.all_high_severity_conflicts)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _gini(values: Sequence[float]) -> float:
    """Gini coefficient: 0 = perfectly equal, (n-1)/n = one holder has everything."""
    if len(values) < 2:
        return 0.0
    ordered = sorted(values)
    total = sum(ordered)
    if total == 0:
        return 0.0
    n = len(ordered)
    weighted = sum((i + 1) * v for i, v in enumerate(ordered))
    return (2 * weighted) / (n * total) - (n + 1) / n


def _balance(counts: Sequence[int]) -> float:
    """1.0 for an even split, 0.0 when one writer holds every record."""
    n = len(counts)
    if n < 2:
        return 0.0
    max_gini = (n - 1) / n
    return _clamp(1.0 - _gini([float(c) for c in counts]) / max_gini)


def _overlap_ratio(a: TimeRange | None, b: TimeRange | None) -> float:
    """Intersection over union of two covered ranges."""
    if a is None or b is None:
        return 0.0
    union = a.union(b)
    if union <= timedelta(0):
        return 1.0 if a.start == b.start else 0.0
    return _clamp(a.intersection(b) / union)


def _bucket_consistency(
    records_by_source: dict[tuple[str, str | None], list[RawRecord]],
    window: TimeRange,
    bucket: timedelta,
) -> float:
    """Share of occupied time buckets that two or more writers wrote into."""
    writers_per_bucket: dict[int, set] = defaultdict(set)
    for key, records in records_by_source.items():
        for record in records:
            first = int((record.timestamp - window.start) // bucket)
            last = int((record.end - window.start) // bucket)
            if record.end > record.timestamp and (record.end - window.start) % bucket == timedelta(0):
                last -= 1
            for index in range(first, max(first, last) + 1):
                writers_per_bucket[index].add(key)
    if not writers_per_bucket:
        return 0.0
    shared = sum(1 for writers in writers_per_bucket.values() if len(writers) >= 2)
    return shared / len(writers_per_bucket)


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class ConflictDetector:
    """Detects possible double-counting between writers of one data type.

    ``detect`` is pure and never raises on ambiguous input: records without
    values, zero-length intervals, or a single writer simply yield no
    conflict or low scores.
    """

    def __init__(self, config: ConflictDetectorConfig | None = None) -> None:
        self.config = config or ConflictDetectorConfig()

    def detect(
        self,
        data_type: DataType | str,
        records: Iterable[RawRecord],
        window: TimeRange | None = None,
    ) -> ConflictDetectionResult:
        """Analyse the writers of ``records`` for conflicts.

        Args:
            data_type: Data type the records belong to.
            records:   Raw records with source attribution.
            window:    Query window; defaults to the span of the records.

        Returns:
            Sources sorted by record count (descending) and zero or one conflict.
        """
        key = data_type_key(data_type)
        records = list(records)
        total = len(records)
        if total == 0:
            return ConflictDetectionResult(data_type=key, sources=[], conflicts=[], total_records=0, window=window)

        if window is None:
            window = TimeRange(
                start=min(r.timestamp for r in records),
                end=max(r.end for r in records),
            )

        grouped: dict[tuple[str, str | None], list[RawRecord]] = defaultdict(list)
        for record in records:
            grouped[(record.source_id, record.device_model)].append(record)

        sources = [self._build_source(k, recs, total) for k, recs in grouped.items()]
        sources.sort(key=lambda s: (-s.record_count, s.source_id, s.device_model or ""))

        conflicts: list[DataSourceConflict] = []
        if len(sources) > 1:
            conflicts.append(self._analyze(key, sources, grouped, total, window))

        logger.debug(
            "Conflict detection for %s: %d source(s), %d conflict(s), %d record(s)",
            key,
            len(sources),
            len(conflicts),
            total,
        )
        return ConflictDetectionResult(
            data_type=key,
            sources=sources,
            conflicts=conflicts,
            total_records=total,
            window=window,
        )

    async def detect_for_types(
        self,
        platform: HealthPlatform,
        data_types: Iterable[DataType | str],
        window: TimeRange,
        rate_limiter: RateLimiter | None = None,
    ) -> ConflictSummary:
        """Fetch raw records for each type and detect conflicts.

        A failed fetch is logged and reported in ``errors``; other types
        are still analysed.
        """
        limiter = rate_limiter or RateLimiter(name="conflicts")
        summary = ConflictSummary()
        for data_type in data_types:
            key = data_type_key(data_type)
            try:
                records = await limiter.execute(
                    lambda: platform.fetch_raw_records(key, window),
                    f"conflict scan {key}",
                )
            except HealthSyncError as exc:
                logger.error("Failed to fetch %s for conflict detection: %s", key, exc)
                summary.errors[key] = exc
                continue
            summary.results[key] = self.detect(key, records, window)
        return summary

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_warning_message(self, result: ConflictDetectionResult) -> str:
        if not result.has_conflicts:
            return "No conflicts detected. Data looks good!"

        conflict = result.conflicts[0]
        names = ", ".join(s.display_name for s in conflict.sources)
        if not conflict.should_warn_user:
            return (
                "INFO: Multiple data sources detected, but this is likely normal usage "
                f"({conflict.confidence_label.lower()} confidence of a real conflict)."
            )
        if conflict.is_high_severity:
            return (
                f"HIGH RISK: Multiple apps ({names}) are writing {result.data_type} data. "
                "This may cause significantly inflated totals."
            )
        return (
            f"WARNING: Multiple apps ({names}) are writing {result.data_type} data. "
            "This may cause double-counting."
        )

    def generate_report(self, result: ConflictDetectionResult) -> str:
        lines = [
            "Conflict Detection Report",
            f"Data Type: {result.data_type}",
        ]
        if result.window is not None:
            lines.append(
                f"Period: {result.window.start.isoformat()} to {result.window.end.isoformat()}"
            )
        lines += [f"Total Records: {result.total_records}", "", f"Data Sources ({len(result.sources)}):"]
        for source in result.sources:
            lines.append(f"  • {source.display_name}")
            lines.append(f"    Records: {source.record_count} ({source.percentage:.1f}%)")
            lines.append(f"    Platform app: {source.is_platform_owned}")
            if source.device_model:
                lines.append(
                    f"    Device: {source.device_manufacturer or 'unknown'} {source.device_model}"
                )
        lines.append("")

        if not result.has_conflicts:
            lines.append("No Conflicts Detected")
            return "\n".join(lines)

        lines.append(f"Conflicts Detected: {len(result.conflicts)}")
        for conflict in result.conflicts:
            lines += [
                "",
                "Conflict:",
                f"  Type: {conflict.type.value}",
                f"  Severity: {conflict.severity:.2f} ({conflict.severity_label})",
                f"  Confidence: {conflict.confidence:.2f} ({conflict.confidence_label})",
                f"  Warn user: {conflict.should_warn_user}",
                f"  Recommendation: {conflict.get_safe_recommendation()}",
            ]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_source(
        self,
        key: tuple[str, str | None],
        records: list[RawRecord],
        total: int,
    ) -> SourceRecord:
        source_id, device_model = key
        first = records[0]
        manual = sum(1 for r in records if r.is_manual)
        covered = TimeRange(
            start=min(r.timestamp for r in records),
            end=max(r.end for r in records),
        )
        return SourceRecord(
            source_id=source_id,
            device_model=device_model,
            device_manufacturer=next(
                (r.device_manufacturer for r in records if r.device_manufacturer), None
            ),
            app_name=first.app_name or next((r.app_name for r in records if r.app_name), None),
            is_platform_owned=source_id in self.config.platform_sources,
            is_manual=manual * 2 > len(records),
            record_count=len(records),
            percentage=len(records) / total * 100,
            time_range_covered=covered,
        )

    def _classify(self, sources: list[SourceRecord], overlap: float) -> ConflictType:
        cfg = self.config
        source_ids = {s.source_id for s in sources}
        models = {s.device_model for s in sources if s.device_model}
        if len(source_ids) == 1 and len(models) > 1:
            return ConflictType.MULTIPLE_DEVICES

        manual_flags = {s.is_manual for s in sources}
        if manual_flags == {True, False}:
            return ConflictType.MANUAL_VS_AUTOMATIC

        counts = [s.record_count for s in sources]
        if max(counts) > 0 and min(counts) / max(counts) >= cfg.sync_loop_similarity:
            if overlap >= cfg.high_overlap_threshold:
                return ConflictType.SYNC_LOOP

        return ConflictType.MULTIPLE_WRITERS

    def _analyze(
        self,
        data_type: str,
        sources: list[SourceRecord],
        grouped: dict[tuple[str, str | None], list[RawRecord]],
        total: int,
        window: TimeRange,
    ) -> DataSourceConflict:
        cfg = self.config

        overlap = max(
            _overlap_ratio(a.time_range_covered, b.time_range_covered)
            for a, b in combinations(sources, 2)
        )
        conflict_type = self._classify(sources, overlap)
        legitimate = conflict_type is ConflictType.MULTIPLE_DEVICES

        # severity: writer count, overlap, balance of the split
        source_factor = min((len(sources) - 1) / 2.0, 1.0)
        balance = _balance([s.record_count for s in sources])
        severity = _clamp(0.3 * source_factor + 0.4 * overlap + 0.3 * balance)

        # confidence: sample size, overlap, bucket co-occurrence
        sample_factor = min(total / max(cfg.sample_saturation, 1), 1.0)
        consistency = _bucket_consistency(grouped, window, timedelta(minutes=cfg.bucket_minutes))
        confidence = 0.4 * sample_factor + 0.3 * overlap + 0.3 * consistency
        if conflict_type is ConflictType.SYNC_LOOP:
            confidence += 0.1
        if legitimate:
            confidence *= 0.5
        if total < cfg.min_sample_size:
            confidence *= total / cfg.min_sample_size
        confidence = _clamp(confidence)

        conflict = DataSourceConflict(
            data_type=data_type,
            sources=sources,
            severity=round(severity, 4),
            confidence=round(confidence, 4),
            type=conflict_type,
            time_overlap_ratio=round(overlap, 4),
            is_legitimate_multi_device=legitimate,
            total_records=total,
            window=window,
            config=cfg,
        )
        conflict.explanation = self._explain(conflict, consistency)
        return conflict

    def _explain(self, conflict: DataSourceConflict, consistency: float) -> str:
        if conflict.type is ConflictType.SYNC_LOOP:
            text = (
                "Multiple apps have very similar record counts over the same period, "
                "suggesting they may be copying data back and forth."
            )
        elif conflict.type is ConflictType.MULTIPLE_DEVICES:
            text = (
                "The same app is writing from multiple devices. "
                "This is normal if you use both a phone and a watch."
            )
        elif conflict.type is ConflictType.MANUAL_VS_AUTOMATIC:
            text = "A mix of manual entries and automatic tracking was detected."
        else:
            text = f"Multiple different apps are writing {conflict.data_type} data."

        if sum(1 for s in conflict.sources if s.is_platform_owned) >= 2:
            text += " More than one of them is a platform health app."
        text += f" {consistency * 100:.0f}% of active time slots have more than one writer."
        if conflict.is_low_confidence:
            text += " However, confidence is low - this may be normal usage."
        return text
