"""
Cache store: the registry of entries and the orchestration around it.

The store owns every entry, counts observers, runs keep-alive timers,
deduplicates fetches through the entries and reacts to environment signals.
It is bound to the event loop it is first used on; signal notifiers may call
in from other threads and are marshalled onto that loop.
"""

import asyncio
import math
import time
from typing import Any, Callable, Dict, List, Optional, Set, Union

from shared.config import CacheConfig, get_config
from shared.errors import (
    ErrorRecord, KeyConflictError, MissingFetchFunctionError, ProgrammerError, StoreClosedError
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .entries import ENTRY_TYPES, Entry, EntryState, InfiniteQueryEntry, MutationEntry, SubscriptionEntry
from .handle import ObserverHandle
from .keys import EntryDef, EntryKind, Key, KeyTarget, MutationDef
from .policy import FetchPolicy
from .signals import (
    ConnectivityEvent, MemoryPressure, MemoryPressureLevel, NetworkConnectivity,
    VisibilityEvent, WindowVisibility
)


StatePredicate = Callable[[EntryState], bool]


class Store:
    """In-memory stale-while-revalidate cache."""

    def __init__(self,
                 config: Optional[CacheConfig] = None,
                 *,
                 receiver: Any = None,
                 connectivity: Optional[NetworkConnectivity] = None,
                 visibility: Optional[WindowVisibility] = None,
                 memory_pressure: Optional[MemoryPressure] = None,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_error: Optional[Callable[[ErrorRecord], None]] = None):
        self.config = config or get_config()
        self.receiver = receiver
        self.connectivity = connectivity
        self.visibility = visibility
        self.memory_pressure = memory_pressure
        if metrics is None and self.config.enable_metrics:
            metrics = MetricsCollector()
        self.metrics = metrics
        self._clock = clock
        self._on_error = on_error

        self.default_policy = FetchPolicy.from_config(self.config)
        self.mutation_policy = FetchPolicy.for_mutations(self.config)

        self._entries: Dict[Key, Entry] = {}
        self._gc_handles: Dict[Key, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._connectivity_state = ConnectivityEvent.AVAILABLE
        self._visibility_state = VisibilityEvent.FOREGROUND
        self._listening = False
        self._closed = False

        self.logger = get_logger("swr_cache.store")

    # ----- registry -----

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Key) -> bool:
        return key in self._entries

    def entry(self, key: Key) -> Optional[Entry]:
        return self._entries.get(key)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError("Store is closed")

    def _resolve_policy(self, definition: EntryDef, policy: Optional[FetchPolicy]) -> FetchPolicy:
        if policy is not None:
            return policy
        if definition.policy is not None:
            return definition.policy
        if definition.kind is EntryKind.MUTATION:
            return self.mutation_policy
        return self.default_policy

    def _get_or_create(self, definition: EntryDef, policy: Optional[FetchPolicy]) -> Entry:
        self._ensure_open()

        key = definition.key
        if not callable(getattr(definition, "fetch", None)):
            raise MissingFetchFunctionError(
                "Entry definition has no callable fetch function",
                {"key": str(key), "kind": definition.kind.value}
            )

        entry = self._entries.get(key)
        if entry is not None:
            if entry.kind is not definition.kind:
                raise KeyConflictError(
                    "Key is already registered for another entry kind",
                    {"key": str(key), "registered": entry.kind.value, "requested": definition.kind.value}
                )
            return entry

        self._loop = asyncio.get_running_loop()
        entry_type = ENTRY_TYPES[definition.kind]
        entry = entry_type(
            definition,
            self._resolve_policy(definition, policy),
            receiver=self.receiver,
            clock=self._clock,
            metrics=self.metrics,
            on_error=self._on_error
        )
        self._entries[key] = entry

        if self.metrics:
            self.metrics.increment_gauge("entries", kind=entry.kind.value)
        self.logger.debug("Entry created", key=str(key), kind=entry.kind.value)

        if len(self._entries) == 1:
            self._start_listening()
        return entry

    def _evict(self, entry: Entry, reason: str) -> Optional[asyncio.Task]:
        self._cancel_gc(entry.key)
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        else:
            return None

        task = entry.evict()
        if self.metrics:
            self.metrics.record_eviction(reason)
            self.metrics.decrement_gauge("entries", kind=entry.kind.value)
        self.logger.debug("Entry removed", key=str(entry.key), reason=reason)

        if not self._entries:
            self._stop_listening()
        return task

    # ----- observers -----

    def attach(self,
               definition: EntryDef,
               policy: Optional[FetchPolicy] = None,
               *,
               listener: Optional[Callable[[EntryState], None]] = None) -> ObserverHandle:
        """Observe the entry of ``definition``, creating it if absent.

        Returns immediately with the current state; a fetch is scheduled when
        the data is absent, stale or invalidated. Must be called from the event
        loop that runs the store.
        """
        entry = self._get_or_create(definition, policy)
        self._cancel_gc(entry.key)
        entry.observer_count += 1
        handle = ObserverHandle(self, entry, listener)
        self.logger.debug("Observer attached", key=str(entry.key), observers=entry.observer_count)
        entry.activate()
        return handle

    def detach(self, handle: ObserverHandle) -> None:
        handle.release()

    def release_entry(self, entry: Entry) -> None:
        if self._entries.get(entry.key) is not entry:
            return
        entry.observer_count = max(0, entry.observer_count - 1)
        self.logger.debug("Observer detached", key=str(entry.key), observers=entry.observer_count)
        if entry.observer_count == 0:
            self._schedule_gc(entry)

    # ----- keep-alive -----

    def _schedule_gc(self, entry: Entry) -> None:
        self._cancel_gc(entry.key)
        gc_time = entry.policy.gc_time
        if math.isinf(gc_time):
            return
        if gc_time == 0:
            self._evict(entry, reason="gc")
            return
        self._gc_handles[entry.key] = self._loop.call_later(gc_time, self._expire, entry)

    def _cancel_gc(self, key: Key) -> None:
        handle = self._gc_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _expire(self, entry: Entry) -> None:
        self._gc_handles.pop(entry.key, None)
        if entry.observer_count == 0:
            self._evict(entry, reason="gc")

    def gc(self, level: Union[MemoryPressureLevel, str] = MemoryPressureLevel.HIGH) -> int:
        """Evict unobserved entries now.

        ``LOW`` only evicts entries whose keep-alive has already elapsed;
        ``HIGH`` evicts every unobserved entry regardless of its remaining
        keep-alive. Returns the number of evicted entries.
        """
        level = MemoryPressureLevel(level)
        now = self._loop.time() if self._loop is not None else 0.0

        victims: List[Entry] = []
        for key, entry in self._entries.items():
            if entry.observer_count > 0:
                continue
            if level is MemoryPressureLevel.LOW:
                handle = self._gc_handles.get(key)
                if handle is None or handle.when() > now:
                    continue
            victims.append(entry)

        for entry in victims:
            self._evict(entry, reason=f"memory_{level.value}")

        if victims:
            self.logger.info("Memory sweep evicted entries", level=level.value, evicted=len(victims))
        return len(victims)

    # ----- revalidation -----

    def _select(self,
                target: KeyTarget,
                *,
                active: Optional[bool] = None,
                predicate: Optional[StatePredicate] = None,
                queries_only: bool = True) -> List[Entry]:
        """Entries matching ``target``, narrowed by observation and state.

        ``active=True`` keeps observed entries, ``active=False`` unobserved
        ones and ``None`` both. ``predicate`` receives the current state.
        """
        selected = []
        for entry in list(self._entries.values()):
            if queries_only and not entry.revalidates:
                continue
            if entry.kind is EntryKind.MUTATION or not entry.key.matches(target):
                continue
            if active is not None and (entry.observer_count > 0) is not active:
                continue
            if predicate is not None and not predicate(entry.state):
                continue
            selected.append(entry)
        return selected

    def invalidate(self,
                   target: KeyTarget,
                   *,
                   active: Optional[bool] = None,
                   predicate: Optional[StatePredicate] = None) -> int:
        """Mark matching queries invalidated and refetch the observed ones.

        ``target`` is a ``Key`` or a namespace prefix. Unobserved entries
        fetch on their next attach; a fetch they have in flight is dropped.
        Returns the number of matched entries.
        """
        entries = self._select(target, active=active, predicate=predicate)
        for entry in entries:
            entry.invalidate()
            if entry.observer_count > 0:
                entry.revalidate(force=True, reason="invalidate")

        self.logger.debug("Invalidated entries", target=str(target), matched=len(entries))
        return len(entries)

    def remove(self,
               target: KeyTarget,
               *,
               active: Optional[bool] = None,
               predicate: Optional[StatePredicate] = None) -> int:
        """Evict matching queries and subscriptions now.

        In-flight work is cancelled and observers see the evicted state; a
        later attach starts from scratch. Returns the number of removed entries.
        """
        entries = self._select(target, active=active, predicate=predicate, queries_only=False)
        for entry in entries:
            self._evict(entry, reason="remove")

        self.logger.debug("Removed entries", target=str(target), removed=len(entries))
        return len(entries)

    def resume(self, target: KeyTarget, *, predicate: Optional[StatePredicate] = None) -> int:
        """Lift the failure pause of matching queries.

        Observed entries refetch immediately. Returns the number of entries
        that were paused.
        """
        resumed = sum(
            1 for entry in self._select(target, predicate=predicate) if entry.resume()
        )
        self.logger.debug("Resumed entries", target=str(target), resumed=resumed)
        return resumed

    async def refetch(self, key: Key) -> Optional[EntryState]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return await self.refetch_entry(entry)

    async def refetch_entry(self, entry: Entry) -> EntryState:
        """Force a new fetch superseding any in-flight one, and wait for it."""
        if entry.revalidates:
            entry.revalidate(force=True, reason="refetch")
            return await entry.settle()
        if isinstance(entry, SubscriptionEntry):
            entry.restart()
            return entry.state
        raise ProgrammerError("Mutations cannot be refetched", {"key": str(entry.key)})

    async def load_more(self, key: Key) -> Optional[EntryState]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return await self.load_more_entry(entry)

    async def load_more_entry(self, entry: Entry) -> EntryState:
        if not isinstance(entry, InfiniteQueryEntry):
            raise ProgrammerError("load_more requires an infinite query", {"key": str(entry.key)})
        return await entry.load_more()

    def restart(self, key: Key) -> bool:
        """Resubscribe a subscription entry. Returns False when absent."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if not isinstance(entry, SubscriptionEntry):
            raise ProgrammerError("restart requires a subscription", {"key": str(key)})
        entry.restart()
        return True

    # ----- one-shot operations -----

    async def mutate(self,
                     definition: MutationDef,
                     variables: Any = None,
                     policy: Optional[FetchPolicy] = None) -> EntryState:
        """Run a mutation once and return its settled state.

        Failures are returned in the state, not raised. Cancelling the caller
        cancels the mutation without rollback.
        """
        if definition.kind is not EntryKind.MUTATION:
            raise ProgrammerError("mutate requires a mutation definition", {"key": str(definition.key)})

        handle = self.attach(definition, policy)
        entry: MutationEntry = handle.entry
        task = self._spawn(entry.mutate(variables))
        try:
            state = await task
        finally:
            handle.release()

        if state.is_success:
            for target in definition.invalidates:
                self.invalidate(target)
        return state

    async def prefetch(self, definition: EntryDef, policy: Optional[FetchPolicy] = None) -> EntryState:
        """Warm the cache for a query without keeping it observed.

        Waits at most the policy's ``prefetch_window`` for the fetch; the
        fetch keeps running past the window.
        """
        if definition.kind not in (EntryKind.QUERY, EntryKind.INFINITE_QUERY):
            raise ProgrammerError("prefetch supports queries only", {"key": str(definition.key)})

        handle = self.attach(definition, policy)
        try:
            window = handle.entry.policy.prefetch_window
            try:
                return await asyncio.wait_for(handle.settle(), timeout=window or None)
            except asyncio.TimeoutError:
                self.logger.info("Prefetch window elapsed", key=str(handle.key), window=window)
                return handle.state
        finally:
            handle.release()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ----- direct cache access -----

    def get_state(self, key: Key) -> Optional[EntryState]:
        entry = self._entries.get(key)
        return entry.state if entry is not None else None

    def get_data(self, key: Key) -> Any:
        entry = self._entries.get(key)
        return entry.state.data if entry is not None else None

    def set_data(self, key: Key, data: Any) -> bool:
        """Overwrite the data of an existing query entry without fetching."""
        entry = self._entries.get(key)
        if entry is None or not entry.revalidates:
            return False
        entry.set_data(data)
        return True

    def update_data(self, key: Key, updater: Callable[[Any], Any]) -> bool:
        """Replace the data of a query entry with ``updater(data)``."""
        entry = self._entries.get(key)
        if entry is None or not entry.revalidates or not entry.state.has_data:
            return False
        entry.set_data(updater(entry.state.data))
        return True

    def stats(self) -> Dict[str, Any]:
        by_kind = {kind.value: 0 for kind in EntryKind}
        observed = 0
        in_flight = 0
        for entry in self._entries.values():
            by_kind[entry.kind.value] += 1
            if entry.observer_count:
                observed += 1
            if entry.in_flight:
                in_flight += 1
        return {
            "entries": len(self._entries),
            "observed": observed,
            "in_flight": in_flight,
            "pending_gc": len(self._gc_handles),
            "by_kind": by_kind,
            "closed": self._closed
        }

    # ----- signals -----

    def _start_listening(self) -> None:
        if self._listening:
            return
        self._listening = True
        if self.connectivity is not None:
            self.connectivity.add_observer(self._on_connectivity)
        if self.visibility is not None:
            self.visibility.add_observer(self._on_visibility)
        if self.memory_pressure is not None:
            self.memory_pressure.add_observer(self._on_memory_pressure)
        self.logger.debug("Subscribed to signals")

    def _stop_listening(self) -> None:
        if not self._listening:
            return
        self._listening = False
        if self.connectivity is not None:
            self.connectivity.remove_observer(self._on_connectivity)
        if self.visibility is not None:
            self.visibility.remove_observer(self._on_visibility)
        if self.memory_pressure is not None:
            self.memory_pressure.remove_observer(self._on_memory_pressure)
        self._cancel_reconnect()
        self.logger.debug("Unsubscribed from signals")

    def _post(self, callback: Callable[..., Any], *args) -> None:
        """Run ``callback`` on the store loop, inline when already on it."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def _on_connectivity(self, event: ConnectivityEvent) -> None:
        self._post(self._handle_connectivity, event)

    def _on_visibility(self, event: VisibilityEvent) -> None:
        self._post(self._handle_visibility, event)

    def _on_memory_pressure(self, level: MemoryPressureLevel) -> None:
        self._post(self._handle_memory_pressure, level)

    def _record_signal(self, signal: str, event: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("signals_total", signal=signal, event=event)

    def _handle_connectivity(self, event: ConnectivityEvent) -> None:
        previous, self._connectivity_state = self._connectivity_state, event
        self._record_signal("connectivity", event.value)
        if event is ConnectivityEvent.LOST:
            self._cancel_reconnect()
            return
        if previous is not ConnectivityEvent.LOST:
            return

        delay = self.config.reconnect_delay
        if delay:
            self._cancel_reconnect()
            self._reconnect_handle = self._loop.call_later(delay, self._revalidate_on_reconnect)
        else:
            self._revalidate_on_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _revalidate_on_reconnect(self) -> None:
        self._reconnect_handle = None
        count = 0
        for entry in self._observed():
            if not entry.policy.revalidate_on_reconnect:
                continue
            if entry.revalidates:
                entry.revalidate(reason="reconnect")
                count += 1
            elif isinstance(entry, SubscriptionEntry):
                entry.start(reason="reconnect")
                count += 1
        self.logger.info("Revalidating after reconnect", entries=count)

    def _handle_visibility(self, event: VisibilityEvent) -> None:
        previous, self._visibility_state = self._visibility_state, event
        self._record_signal("visibility", event.value)
        if event is not VisibilityEvent.FOREGROUND or previous is not VisibilityEvent.BACKGROUND:
            return

        count = 0
        for entry in self._observed():
            if entry.revalidates and entry.policy.revalidate_on_focus:
                entry.revalidate(reason="focus")
                count += 1
        self.logger.info("Revalidating after focus", entries=count)

    def _handle_memory_pressure(self, level: MemoryPressureLevel) -> None:
        self._record_signal("memory_pressure", level.value)
        self.gc(level)

    def _observed(self) -> List[Entry]:
        return [entry for entry in self._entries.values() if entry.observer_count > 0]

    # ----- lifecycle -----

    async def close(self) -> None:
        """Cancel every task and timer, evict all entries and detach from signals."""
        if self._closed:
            return
        self._closed = True

        pending: List[asyncio.Task] = []
        for entry in list(self._entries.values()):
            task = self._evict(entry, reason="close")
            if task is not None:
                pending.append(task)
        for task in list(self._tasks):
            task.cancel()
            pending.append(task)

        self._stop_listening()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info("Store closed", cancelled=len(pending))

    async def __aenter__(self) -> "Store":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
