"""
Shared fixtures for casework-core tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from casework_core.audit import AuditLogger, InMemoryAuditStore
from casework_core.operational import RecordingOperationalChannel
from casework_core.security import InMemoryAccessPatternTracker


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def business_noon() -> datetime:
    """Today at 12:00 UTC, inside default business hours."""
    return datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)


@pytest.fixture
def clock(business_noon) -> FakeClock:
    return FakeClock(business_noon)


@pytest.fixture
def store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def channel() -> RecordingOperationalChannel:
    return RecordingOperationalChannel()


@pytest.fixture
def audit_logger(store, channel) -> AuditLogger:
    return AuditLogger(store, error_channel=channel, base_delay=0.001, max_delay=0.01)


@pytest.fixture
def tracker() -> InMemoryAccessPatternTracker:
    return InMemoryAccessPatternTracker()
