"""
Shared fixtures for the barrier engine tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from regime_barriers.config import EngineSettings
from regime_barriers.registry import RegimeConfigStore
from regime_barriers.logging_module import InMemoryAuditLog


# London session, so the session factor is 1.0
NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 1.0) -> datetime:
        self.now = self.now + timedelta(hours=hours)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def store(settings, audit):
    return RegimeConfigStore(settings, audit_sink=audit)
