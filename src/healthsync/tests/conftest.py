"""Shared fixtures and fakes for HealthSync tests."""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone

import pytest

from src.healthsync.base import (
    ChangesResponse,
    HealthPlatform,
    PlatformAggregate,
    RawRecord,
    TimeRange,
)
from src.healthsync.config_loader import SyncConfig, load_sync_config
from src.healthsync.errors import TokenInvalidError
from src.healthsync.rate_limiter import RateLimiter, RateLimiterConfig
from src.healthsync.storage import InMemoryKeyValueStore
from src.healthsync.sync.changes import ChangesEngine, PlatformFullSyncProvider
from src.healthsync.sync.token_store import SyncTokenStore

# Canonical "now" for every test
TEST_NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Time fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock returning a fixed UTC time until advanced."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeSleep:
    """Records requested delays and moves the monotonic clock instead of waiting."""

    def __init__(self, monotonic: FakeMonotonic | None = None) -> None:
        self.calls: list[float] = []
        self._monotonic = monotonic

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._monotonic is not None:
            self._monotonic.advance(seconds)


# ---------------------------------------------------------------------------
# Platform fake
# ---------------------------------------------------------------------------


class FakePlatform(HealthPlatform):
    """In-memory platform with a change feed and scriptable failures."""

    PLATFORM_ID = "fake"

    def __init__(self) -> None:
        self.records: dict[str, list[RawRecord]] = defaultdict(list)
        self.aggregates: dict[str, PlatformAggregate] = {}
        self.pending_changes: dict[str, list[RawRecord]] = defaultdict(list)
        self.failures: dict[str, list[BaseException]] = defaultdict(list)
        self.calls: Counter = Counter()
        self.valid_tokens: set[str] = set()
        self._token_seq = 0

    def fail_next(self, method: str, *errors: BaseException) -> None:
        self.failures[method].extend(errors)

    def add_changes(self, data_type: str, records: list[RawRecord]) -> None:
        self.pending_changes[data_type].extend(records)

    def invalidate_tokens(self) -> None:
        self.valid_tokens.clear()

    def _maybe_fail(self, method: str) -> None:
        self.calls[method] += 1
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def _issue_token(self) -> str:
        self._token_seq += 1
        token = f"token-{self._token_seq}"
        self.valid_tokens.add(token)
        return token

    async def fetch_raw_records(self, data_type: str, time_range: TimeRange) -> list[RawRecord]:
        self._maybe_fail("fetch_raw_records")
        return [
            r for r in self.records[data_type]
            if time_range.start <= r.timestamp <= time_range.end
        ]

    async def fetch_platform_aggregate(
        self, data_type: str, time_range: TimeRange
    ) -> PlatformAggregate | None:
        self._maybe_fail("fetch_platform_aggregate")
        return self.aggregates.get(data_type)

    async def fetch_changes_since(self, data_type: str, token: str) -> ChangesResponse:
        self._maybe_fail("fetch_changes_since")
        if token not in self.valid_tokens:
            raise TokenInvalidError("Changes token expired", data_type=data_type)
        changes = self.pending_changes.pop(data_type, [])
        next_token = self._issue_token() if changes else token
        return ChangesResponse(records=changes, next_token=next_token)

    async def request_initial_token(self, data_type: str) -> str:
        self._maybe_fail("request_initial_token")
        return self._issue_token()


class InterruptibleStore(InMemoryKeyValueStore):
    """Memory store whose next write can be made to fail with ``CancelledError``."""

    def __init__(self) -> None:
        super().__init__()
        self.cancel_next_put = False

    async def put(self, key: str, value: dict) -> None:
        if self.cancel_next_put:
            self.cancel_next_put = False
            raise asyncio.CancelledError()
        await super().put(key, value)


def make_records(
    source_id: str,
    count: int,
    start: datetime = TEST_NOW - timedelta(days=7),
    span: timedelta = timedelta(days=7),
    value: float | None = 10.0,
    **fields,
) -> list[RawRecord]:
    """``count`` records from one writer spread evenly across ``span``."""
    step = span / count if count > 1 else timedelta(0)
    return [
        RawRecord(source_id=source_id, timestamp=start + step * i, value=value, **fields)
        for i in range(count)
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config."""
    return load_sync_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def sleeper(monotonic: FakeMonotonic) -> FakeSleep:
    return FakeSleep(monotonic)


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def limiter(sleeper: FakeSleep, monotonic: FakeMonotonic) -> RateLimiter:
    config = RateLimiterConfig(
        max_retries=3, initial_delay=0.1, max_delay=1.0, circuit_threshold=5, circuit_reset_seconds=60
    )
    return RateLimiter(config, sleep=sleeper, clock=monotonic, name="test")


@pytest.fixture
def token_store(store: InMemoryKeyValueStore) -> SyncTokenStore:
    return SyncTokenStore(store)


@pytest.fixture
def changes_engine(
    platform: FakePlatform,
    token_store: SyncTokenStore,
    limiter: RateLimiter,
    clock: FakeClock,
) -> ChangesEngine:
    return ChangesEngine(
        platform,
        token_store,
        rate_limiter=limiter,
        fallback=PlatformFullSyncProvider(platform, limiter),
        clock=clock,
    )
