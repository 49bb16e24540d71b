"""Shared fixtures: in-memory store driven by a controllable clock."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from fixly_state.core.config import Settings
from fixly_state.core.kv import KVClient, MemoryBackend
from fixly_state.services.otp import OTPManager
from fixly_state.services.rate_limiter import RateLimiter
from fixly_state.services.response_cache import ResponseCache


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
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def kv(backend, settings, clock):
    return KVClient(backend, settings, clock=clock)


@pytest.fixture
def down_backend(clock):
    """Backend whose every round-trip fails with a connection error."""
    backend = MemoryBackend(clock=clock)
    backend.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    return backend


@pytest.fixture
def down_kv(down_backend, settings, clock):
    return KVClient(down_backend, settings, clock=clock)


@pytest.fixture
def limiter(kv, settings, clock):
    return RateLimiter(kv, settings, clock=clock)


@pytest.fixture
def otp(kv, settings, clock):
    return OTPManager(kv, settings, clock=clock)


@pytest.fixture
def cache(kv, settings):
    return ResponseCache(kv, settings)
