"""
Shared fixtures for cache tests.
"""

import pytest
import pytest_asyncio

from helpers import FakeClock
from shared.config import CacheConfig
from shared.retry import RetryPolicy, fixed_backoff
from swr_cache.policy import FetchPolicy
from swr_cache.signals import MemoryPressure, NetworkConnectivity, WindowVisibility
from swr_cache.store import Store


@pytest.fixture
def clock():
    """Fake monotonic clock starting at 0."""
    return FakeClock()


@pytest.fixture
def config():
    """Configuration isolated from the environment, without retry delays."""
    return CacheConfig(
        _env_file=None,
        retry_max_attempts=1,
        retry_base_delay=0.0,
        retry_jitter=0.0,
        enable_metrics=False
    )


@pytest.fixture
def policy():
    """Single-attempt policy with immediate staleness."""
    return FetchPolicy(retry=RetryPolicy(max_attempts=1, backoff=fixed_backoff(0)))


@pytest.fixture
def connectivity():
    return NetworkConnectivity()


@pytest.fixture
def visibility():
    return WindowVisibility()


@pytest.fixture
def memory_pressure():
    return MemoryPressure()


@pytest_asyncio.fixture
async def store(config, clock, connectivity, visibility, memory_pressure):
    """Store wired to fake signals and the fake clock."""
    store = Store(
        config,
        receiver="client",
        connectivity=connectivity,
        visibility=visibility,
        memory_pressure=memory_pressure,
        clock=clock
    )
    yield store
    await store.close()
