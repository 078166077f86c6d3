"""
Test helpers for cache tests.
"""

import asyncio
from typing import Callable

from swr_cache.entries import EntryState
from swr_cache.handle import ObserverHandle


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_for_state(handle: ObserverHandle,
                         predicate: Callable[[EntryState], bool],
                         timeout: float = 1.0) -> EntryState:
    """Wait until the handle reports a state matching ``predicate``."""

    async def _wait():
        async for state in handle.changes():
            if predicate(state):
                return state

    return await asyncio.wait_for(_wait(), timeout)


async def drain(iterations: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(iterations):
        await asyncio.sleep(0)
