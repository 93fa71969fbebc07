"""HealthSync resilience and synchronization core.

Aggregates health metrics from a shared, platform-owned store that many apps
and devices write to, and keeps that aggregation trustworthy when the
platform rate-limits, expires its change-feed tokens, or the OS refuses to
run background work.

Subpackages:
    adapters/ — Platform adapters and raw-error classification
    sync/     — Tokens, incremental fetch, background scheduling, device table

Core modules:
    base                — HealthPlatform ABC and canonical data models
    errors              — Typed error kinds seen by the core
    rate_limiter        — Retry with exponential backoff and circuit breaker
    conflicts           — Multi-source double-counting detection
    aggregate_validator — Platform aggregate vs. raw-sample cross-check
    storage             — Durable key-value stores for sync state
    config_loader       — Load/validate/hot-reload sync_config.yaml
    engine              — HealthSyncEngine, the object that wires it together
"""

from src.healthsync.base import (
    ChangesResponse,
    DataType,
    FullSyncProvider,
    HealthPlatform,
    PlatformAggregate,
    RawRecord,
    TimeRange,
)
from src.healthsync.config_loader import SyncConfig, get_sync_config

__all__ = [
    "HealthPlatform",
    "FullSyncProvider",
    "DataType",
    "RawRecord",
    "PlatformAggregate",
    "ChangesResponse",
    "TimeRange",
    "SyncConfig",
    "get_sync_config",
]
