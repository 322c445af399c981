"""Shared fixtures for visitor sync tests.

Provides:
- Retry policies whose backoff sleeps return immediately
- The Contoso sync configuration (contoso.com internal, rooms excluded)
- An engine wired to an in-memory store and a recording notifier
"""

from __future__ import annotations

import pytest

from src.visitor_sync.config import SyncConfig
from src.visitor_sync.schemas import AttendeeKind, MeetingSnapshot
from src.visitor_sync.sync.engine import ReconciliationEngine
from src.visitor_sync.sync.retry import RetryPolicy
from tests.helpers import (
    FIXED_NOW,
    InMemoryRecordStore,
    RecordingNotifier,
    RecordingSleep,
    attendee,
    make_snapshot,
)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fast_retry(sleep) -> RetryPolicy:
    """Default retry tuning with a sleep that returns immediately."""
    return RetryPolicy(max_retries=3, base_delay_ms=1000, multiplier=2.0, sleep=sleep)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(internal_domains=("contoso.com",), exclude_resources=True)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine(store, notifier, sync_config) -> ReconciliationEngine:
    return ReconciliationEngine(store, notifier, sync_config, clock=lambda: FIXED_NOW)


@pytest.fixture
def visitor_with_room_snapshot() -> MeetingSnapshot:
    """One internal attendee, one visitor, one room."""
    return make_snapshot(
        attendees=[
            attendee("alice@contoso.com", "Alice"),
            attendee("bob@fabrikam.com", "Bob"),
            attendee("room101@contoso.com", "Room 101", AttendeeKind.RESOURCE),
        ]
    )
