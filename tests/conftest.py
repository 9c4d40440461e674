"""
Shared fixtures: a controllable clock and in-memory cache wiring.
"""
import pytest

from tiercache.cache import CacheOrchestrator, MemoryStore, SingleFlightLock


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store driven by the fake clock."""
    return MemoryStore(clock=clock)


@pytest.fixture
def orchestrator(store):
    """Orchestrator whose lock never sleeps for real."""
    lock = SingleFlightLock(store, max_wait=0.5, poll_interval=0.1, sleep=lambda _: None)
    return CacheOrchestrator(store, lock=lock)
