"""
Pytest configuration and shared fixtures for the cache tests.
"""
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from reliefhub.cache import QueryCacheManager, RequestPolicy, ResourcePolicy


class FakeClock:
    """Controllable UTC clock for staleness and GC windows."""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Sleep replacement that records delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def manager(clock: FakeClock, sleeper: RecordingSleep) -> QueryCacheManager:
    """Isolated cache manager with a fake clock and instant retries."""
    return QueryCacheManager(clock=clock, sleep=sleeper)


@pytest.fixture
def short_policy() -> ResourcePolicy:
    """60s staleness, 1h GC, three retries without delay."""
    return ResourcePolicy(
        stale_after_seconds=60,
        gc_after_seconds=3600,
        request=RequestPolicy(max_retries=3, retry_delay=lambda attempt: 0),
    )
