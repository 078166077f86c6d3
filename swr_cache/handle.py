"""
Observer handles returned by ``Store.attach``.
"""

import asyncio
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, List, Optional

from .entries import Entry, EntryState
from .keys import EntryKind, Key

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .store import Store


class ObserverHandle:
    """One subscriber of an entry.

    Holds a read-only view of the entry plus the capability to release it.
    Releasing is idempotent; the store starts the keep-alive timer when the
    last handle of an entry is released.
    """

    def __init__(self,
                 store: "Store",
                 entry: Entry,
                 listener: Optional[Callable[[EntryState], None]] = None):
        self._store = store
        self._entry = entry
        self._listener = listener
        self._released = False
        self._queues: List[asyncio.Queue] = []
        entry.add_listener(self._on_state)

    @property
    def key(self) -> Key:
        return self._entry.key

    @property
    def kind(self) -> EntryKind:
        return self._entry.kind

    @property
    def entry(self) -> Entry:
        return self._entry

    @property
    def state(self) -> EntryState:
        return self._entry.state

    @property
    def data(self) -> Any:
        return self._entry.state.data

    @property
    def released(self) -> bool:
        return self._released

    def _on_state(self, state: EntryState) -> None:
        for queue in list(self._queues):
            queue.put_nowait(state)
        if self._listener is not None:
            self._listener(state)

    async def changes(self) -> AsyncIterator[EntryState]:
        """Yield the current state, then every new state until release or eviction."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            state = self._entry.state
            yield state
            if state.is_evicted or self._released:
                return
            while True:
                state = await queue.get()
                if state is None:
                    return
                yield state
                if state.is_evicted:
                    return
        finally:
            self._queues.remove(queue)

    async def settle(self) -> EntryState:
        """Wait for the in-flight fetch, if any, and return the resulting state."""
        return await self._entry.settle()

    async def refetch(self) -> EntryState:
        return await self._store.refetch_entry(self._entry)

    async def load_more(self) -> EntryState:
        return await self._store.load_more_entry(self._entry)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._entry.remove_listener(self._on_state)
        for queue in self._queues:
            queue.put_nowait(None)
        self._store.release_entry(self._entry)

    def __enter__(self) -> "ObserverHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ObserverHandle(key={self.key!s}, kind={self.kind.value}, released={self._released})"
