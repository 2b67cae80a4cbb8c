from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.events.broadcaster import EventBroadcaster
from flowwatch.control_plane.instances.connector_inmemory import InMemoryConnector
from flowwatch.control_plane.instances.registry import InstanceRegistry
from flowwatch.shared.secrets import CredentialCipher


class FakeClock:
    """Wall clock for datetime-based components."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic seconds for the analysis queue's retry timing."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def db() -> FlowwatchDB:
    database = FlowwatchDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher("unit-test-passphrase")


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def connector() -> InMemoryConnector:
    return InMemoryConnector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def registry(
    db: FlowwatchDB,
    connector: InMemoryConnector,
    cipher: CredentialCipher,
    broadcaster: EventBroadcaster,
) -> InstanceRegistry:
    return InstanceRegistry(
        db=db,
        connector=connector,
        cipher=cipher,
        broadcaster=broadcaster,
        unreachable_threshold=3,
        probe_concurrency=2,
        probe_timeout_s=1.0,
    )
