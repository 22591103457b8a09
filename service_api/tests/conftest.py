"""
Shared fixtures for API service tests.
"""

import pytest

from service_api.app.caching.cache_manager import CacheManager


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Simulated time source."""
    return FakeClock()


@pytest.fixture
def cache_manager(clock):
    """CacheManager driven by the simulated clock."""
    return CacheManager(clock=clock)
