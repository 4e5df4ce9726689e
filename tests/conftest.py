import pytest

from ratekeeper.core.service import RateLimiterService
from ratekeeper.core.storage.memory import InMemoryBackend
from ratekeeper.core.strategies.registry import build_strategies


class FakeClock:
    """Manually advanced time source, starting at the epoch."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, now: float) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryBackend:
    """Create a fresh in-memory backend for each test."""
    return InMemoryBackend(clock=clock)


@pytest.fixture
def service(backend: InMemoryBackend, clock: FakeClock) -> RateLimiterService:
    return RateLimiterService(build_strategies(backend, clock=clock), clock=clock)
