import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from luggage_cache.cache import CacheStore, InMemoryPersistence  # noqa: E402
from luggage_cache.monitor import PerformanceMonitor  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(clock, persistence):
    cache = CacheStore(max_size_bytes=1000, persistence=persistence, clock=clock)
    try:
        yield cache
    finally:
        cache.close()


@pytest.fixture
def monitor(clock):
    return PerformanceMonitor(clock=clock)
