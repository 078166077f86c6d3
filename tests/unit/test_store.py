"""
Unit tests for the cache store.
"""

import asyncio
import math
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from helpers import drain, wait_for_state
from shared.config import CacheConfig
from shared.errors import (
    KeyConflictError, MissingFetchFunctionError, ProgrammerError, StoreClosedError
)
from shared.metrics import MetricsCollector
from swr_cache.entries import EntryStatus, FetchStatus
from swr_cache.keys import Key, MutationDef, QueryDef, SubscriptionDef
from swr_cache.policy import FetchPolicy
from swr_cache.signals import (
    ConnectivityEvent, MemoryPressureLevel, NetworkConnectivity, VisibilityEvent
)
from swr_cache.store import Store


USER = Key.of("users", 1)


def user_query(fetch=None, **policy):
    fetch = fetch or AsyncMock(return_value={"id": 1, "name": "A"})
    return QueryDef(USER, fetch, policy=FetchPolicy(**policy) if policy else None)


class TestRegistry:
    """Test cases for entry creation and lookup."""

    @pytest.mark.asyncio
    async def test_equal_keys_share_entry(self, store):
        first = store.attach(QueryDef(Key.of("users", 1), AsyncMock(return_value="A")))
        second = store.attach(QueryDef(Key("users", [1]), AsyncMock(return_value="B")))

        assert first.entry is second.entry
        assert first.entry.observer_count == 2
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_attach_returns_current_state(self, store):
        handle = store.attach(user_query())

        assert handle.state.status is EntryStatus.IDLE
        assert handle.state.fetch_status is FetchStatus.FETCHING

        state = await handle.settle()

        assert state.data == {"id": 1, "name": "A"}
        assert handle.data == {"id": 1, "name": "A"}

    @pytest.mark.asyncio
    async def test_key_conflict(self, store):
        store.attach(user_query())

        with pytest.raises(KeyConflictError):
            store.attach(SubscriptionDef(USER, AsyncMock()))

    @pytest.mark.asyncio
    async def test_missing_fetch_function(self, store):
        with pytest.raises(MissingFetchFunctionError):
            store.attach(QueryDef(USER, None))

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_closed_store_rejects_attach(self, config):
        store = Store(config)
        await store.close()

        with pytest.raises(StoreClosedError):
            store.attach(user_query())

        assert store.closed

    @pytest.mark.asyncio
    async def test_policy_resolution(self, store):
        explicit = FetchPolicy(stale_time=5)

        query = store.attach(QueryDef(Key.of("a"), AsyncMock()), explicit)
        default = store.attach(QueryDef(Key.of("b"), AsyncMock()))
        mutation = store.attach(MutationDef(Key.of("c"), AsyncMock()))

        assert query.entry.policy is explicit
        assert default.entry.policy is store.default_policy
        assert mutation.entry.policy is store.mutation_policy

    @pytest.mark.asyncio
    async def test_stats(self, store):
        store.attach(user_query())
        store.attach(MutationDef(Key.of("users/rename"), AsyncMock()))

        stats = store.stats()

        assert stats["entries"] == 2
        assert stats["observed"] == 2
        assert stats["in_flight"] == 1
        assert stats["by_kind"]["query"] == 1
        assert stats["by_kind"]["mutation"] == 1


class TestObservers:
    """Test cases for attach/detach and keep-alive."""

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, store):
        definition = user_query(gc_time=60)
        first = store.attach(definition)
        store.attach(definition)

        first.release()
        store.detach(first)

        assert first.released
        assert first.entry.observer_count == 1
        assert store.stats()["pending_gc"] == 0

    @pytest.mark.asyncio
    async def test_context_manager_releases(self, store):
        with store.attach(user_query(gc_time=60)) as handle:
            assert handle.entry.observer_count == 1

        assert handle.entry.observer_count == 0
        assert store.stats()["pending_gc"] == 1

    @pytest.mark.asyncio
    async def test_reattach_cancels_eviction(self, store):
        definition = user_query(gc_time=0.05)
        handle = store.attach(definition)
        await handle.settle()
        handle.release()

        again = store.attach(definition)
        await asyncio.sleep(0.1)

        assert again.entry is handle.entry
        assert USER in store

    @pytest.mark.asyncio
    async def test_infinite_gc_time(self, store):
        handle = store.attach(user_query(gc_time=math.inf))
        handle.release()

        assert store.stats()["pending_gc"] == 0
        assert USER in store

    @pytest.mark.asyncio
    async def test_detach_does_not_cancel_fetch(self, store):
        gate = asyncio.Event()

        async def fetch(receiver, user_id):
            await gate.wait()
            return "A"

        handle = store.attach(user_query(fetch, gc_time=60))
        handle.release()
        gate.set()
        state = await handle.entry.settle()

        assert state.data == "A"

    @pytest.mark.asyncio
    async def test_listener_and_changes(self, store):
        listener = MagicMock()
        handle = store.attach(user_query(), listener=listener)

        state = await wait_for_state(handle, lambda s: s.is_success)

        assert state.data == {"id": 1, "name": "A"}
        assert listener.call_args.args[0].is_success

    @pytest.mark.asyncio
    async def test_changes_end_on_eviction(self, store):
        handle = store.attach(user_query(gc_time=60))
        await handle.settle()
        seen = []

        async def collect():
            async for state in handle.changes():
                seen.append(state.status)

        collector = asyncio.ensure_future(collect())
        await drain()
        await store.close()
        await asyncio.wait_for(collector, 1.0)

        assert seen == [EntryStatus.SUCCESS, EntryStatus.EVICTED]

    @pytest.mark.asyncio
    async def test_changes_end_on_release(self, store):
        handle = store.attach(user_query(gc_time=60))
        await handle.settle()
        seen = []

        async def collect():
            async for state in handle.changes():
                seen.append(state.status)

        collector = asyncio.ensure_future(collect())
        await drain()
        handle.release()
        await asyncio.wait_for(collector, 1.0)

        assert seen == [EntryStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_listener_failure_is_contained(self, store):
        handle = store.attach(user_query(), listener=MagicMock(side_effect=RuntimeError("ui")))

        state = await handle.settle()

        assert state.is_success


class TestInvalidation:
    """Test cases for invalidate/refetch/prefetch."""

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self, store):
        observed_fetch = AsyncMock(return_value="A")
        idle_fetch = AsyncMock(return_value="B")
        other_fetch = AsyncMock(return_value="C")
        observed = store.attach(QueryDef(Key.of("users", 1), observed_fetch, policy=FetchPolicy(stale_time=60)))
        idle = store.attach(QueryDef(Key.of("users", 2), idle_fetch, policy=FetchPolicy(stale_time=60, gc_time=60)))
        other = store.attach(QueryDef(Key.of("posts", 1), other_fetch, policy=FetchPolicy(stale_time=60)))
        await asyncio.gather(observed.settle(), idle.settle(), other.settle())
        idle.release()

        matched = store.invalidate("users")
        await observed.settle()

        assert matched == 2
        assert observed_fetch.await_count == 2
        assert idle_fetch.await_count == 1
        assert other_fetch.await_count == 1
        assert store.get_state(Key.of("users", 2)).is_invalidated

        again = store.attach(QueryDef(Key.of("users", 2), idle_fetch))
        await again.settle()

        assert idle_fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_skips_mutations_and_subscriptions(self, store):
        store.attach(MutationDef(Key.of("users/rename"), AsyncMock()))

        assert store.invalidate("users") == 0

    @pytest.mark.asyncio
    async def test_invalidate_drops_fetch_of_unobserved_entry(self, store):
        gate = asyncio.Event()
        calls = []

        async def fetch(receiver, user_id):
            calls.append(user_id)
            await gate.wait()
            return {"id": user_id, "version": len(calls)}

        definition = user_query(fetch, stale_time=100, gc_time=60)
        handle = store.attach(definition)
        await drain()
        handle.release()

        store.invalidate("users")
        gate.set()
        state = await store.entry(USER).settle()

        assert state.is_invalidated
        assert state.fetch_status is FetchStatus.IDLE
        assert not state.has_data

        again = store.attach(definition)
        state = await again.settle()

        assert len(calls) == 2
        assert state.data == {"id": 1, "version": 2}
        assert not state.is_invalidated

    @pytest.mark.asyncio
    async def test_invalidate_supersedes_fetch_of_observed_entry(self, store):
        gate = asyncio.Event()
        calls = []

        async def fetch(receiver, user_id):
            calls.append(user_id)
            await gate.wait()
            return len(calls)

        handle = store.attach(user_query(fetch, stale_time=100))
        await drain()

        store.invalidate(USER)
        await drain()
        gate.set()
        state = await handle.settle()

        assert len(calls) == 2
        assert state.data == 2
        assert not state.is_invalidated

    @pytest.mark.asyncio
    async def test_invalidate_filters(self, store):
        observed_fetch = AsyncMock(return_value="A")
        idle_fetch = AsyncMock(return_value="B")
        observed = store.attach(QueryDef(Key.of("users", 1), observed_fetch, policy=FetchPolicy(stale_time=60)))
        idle = store.attach(QueryDef(Key.of("users", 2), idle_fetch, policy=FetchPolicy(stale_time=60, gc_time=60)))
        await asyncio.gather(observed.settle(), idle.settle())
        idle.release()

        assert store.invalidate("users", active=False) == 1
        assert not observed.state.is_invalidated
        assert store.get_state(Key.of("users", 2)).is_invalidated
        assert observed_fetch.await_count == 1

        assert store.invalidate("users", active=True, predicate=lambda state: state.data == "B") == 0
        assert store.invalidate("users", predicate=lambda state: state.data == "A") == 1
        await observed.settle()

        assert observed_fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_remove(self, store):
        fetch = AsyncMock(return_value="A")
        definition = user_query(fetch, stale_time=60, gc_time=60)
        handle = store.attach(definition)
        await handle.settle()
        store.attach(MutationDef(Key.of("users/rename"), AsyncMock()))

        assert store.remove("users", active=False) == 0
        assert store.remove("users") == 1

        assert USER not in store
        assert Key.of("users/rename") in store
        assert handle.state.status is EntryStatus.EVICTED
        assert store.stats()["pending_gc"] == 0

        handle.release()
        again = store.attach(definition)
        await again.settle()

        assert fetch.await_count == 2
        assert again.entry is not handle.entry

    @pytest.mark.asyncio
    async def test_remove_cancels_in_flight_fetch(self, store):
        gate = asyncio.Event()

        async def fetch(receiver, user_id):
            await gate.wait()
            return "late"

        handle = store.attach(user_query(fetch))
        await drain()
        entry = handle.entry

        assert store.remove(USER) == 1
        await drain()

        assert not entry.in_flight
        assert entry.state.data is None
        assert store.remove(USER) == 0

    @pytest.mark.asyncio
    async def test_resume_paused_entry(self, store, policy):
        fetch = AsyncMock(side_effect=[ConnectionError("down"), "A"])
        paused = policy.replace(pause_after=lambda error: 30.0)
        handle = store.attach(QueryDef(USER, fetch), paused)
        state = await handle.settle()

        assert state.fetch_status is FetchStatus.PAUSED
        assert store.resume(Key.of("users", 2)) == 0

        assert store.resume("users") == 1
        state = await handle.settle()

        assert fetch.await_count == 2
        assert state.status is EntryStatus.SUCCESS
        assert state.data == "A"
        assert store.resume("users") == 0

    @pytest.mark.asyncio
    async def test_resume_unobserved_entry_waits_for_attach(self, store, policy):
        fetch = AsyncMock(side_effect=[ConnectionError("down"), "A"])
        definition = QueryDef(USER, fetch)
        paused = policy.replace(pause_after=lambda error: 30.0, gc_time=60)
        handle = store.attach(definition, paused)
        await handle.settle()
        handle.release()

        assert store.resume("users") == 1

        state = store.get_state(USER)
        assert state.fetch_status is FetchStatus.IDLE
        assert state.unpause_at == 0.0
        assert fetch.await_count == 1

        state = await store.attach(definition).settle()

        assert state.data == "A"
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_refetch_fresh_entry(self, store):
        fetch = AsyncMock(side_effect=["A", "B"])
        handle = store.attach(user_query(fetch, stale_time=60))
        await handle.settle()

        state = await store.refetch(USER)

        assert state.data == "B"
        assert await store.refetch(Key.of("missing")) is None

    @pytest.mark.asyncio
    async def test_prefetch(self, store):
        state = await store.prefetch(user_query(gc_time=60))

        assert state.data == {"id": 1, "name": "A"}
        assert store.entry(USER).observer_count == 0
        assert store.stats()["pending_gc"] == 1

    @pytest.mark.asyncio
    async def test_prefetch_window(self, store):
        gate = asyncio.Event()

        async def fetch(receiver, user_id):
            await gate.wait()
            return "late"

        state = await store.prefetch(user_query(fetch, gc_time=60, prefetch_window=0.05))

        assert state.fetch_status is FetchStatus.FETCHING
        gate.set()
        assert (await store.entry(USER).settle()).data == "late"

    @pytest.mark.asyncio
    async def test_prefetch_requires_query(self, store):
        with pytest.raises(ProgrammerError):
            await store.prefetch(MutationDef(Key.of("m"), AsyncMock()))


class TestDataAccess:
    """Test cases for direct cache reads and writes."""

    @pytest.mark.asyncio
    async def test_get_set_update(self, store):
        handle = store.attach(user_query(stale_time=60))
        await handle.settle()

        assert store.set_data(USER, {"id": 1, "name": "B"})
        assert store.get_data(USER) == {"id": 1, "name": "B"}
        assert store.update_data(USER, lambda user: {**user, "name": "C"})
        assert handle.data["name"] == "C"

    @pytest.mark.asyncio
    async def test_writes_to_missing_keys(self, store):
        assert store.get_state(USER) is None
        assert store.get_data(USER) is None
        assert not store.set_data(USER, "x")
        assert not store.update_data(USER, lambda data: data)


class TestSignals:
    """Test cases for signal reactions."""

    @pytest.mark.asyncio
    async def test_subscribes_only_while_holding_entries(self, store, connectivity, visibility, memory_pressure):
        assert not connectivity.has_observers

        handle = store.attach(user_query(gc_time=0))

        assert connectivity.has_observers
        assert visibility.has_observers
        assert memory_pressure.has_observers

        handle.release()

        assert not connectivity.has_observers
        assert not memory_pressure.has_observers

    @pytest.mark.asyncio
    async def test_reconnect_revalidates_observed_stale_entries(self, store, connectivity):
        observed_fetch = AsyncMock(return_value="A")
        idle_fetch = AsyncMock(return_value="B")
        observed = store.attach(QueryDef(Key.of("users", 1), observed_fetch))
        idle = store.attach(QueryDef(Key.of("users", 2), idle_fetch, policy=FetchPolicy(gc_time=60)))
        await asyncio.gather(observed.settle(), idle.settle())
        idle.release()

        connectivity.notify(ConnectivityEvent.LOST)
        connectivity.notify(ConnectivityEvent.AVAILABLE)
        await observed.settle()

        assert observed_fetch.await_count == 2
        assert idle_fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_available_without_loss_is_ignored(self, store, connectivity):
        fetch = AsyncMock(return_value="A")
        handle = store.attach(user_query(fetch))
        await handle.settle()

        connectivity.notify(ConnectivityEvent.AVAILABLE)
        await drain()

        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_keeps_fresh_entries(self, store, connectivity):
        fetch = AsyncMock(return_value="A")
        handle = store.attach(user_query(fetch, stale_time=60))
        await handle.settle()

        connectivity.notify("lost")
        connectivity.notify("available")
        await drain()

        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_delay(self, clock, connectivity):
        config = CacheConfig(_env_file=None, reconnect_delay=0.05, retry_max_attempts=1, enable_metrics=False)
        fetch = AsyncMock(return_value="A")
        async with Store(config, connectivity=connectivity, clock=clock) as store:
            handle = store.attach(user_query(fetch))
            await handle.settle()

            connectivity.notify(ConnectivityEvent.LOST)
            connectivity.notify(ConnectivityEvent.AVAILABLE)
            await drain()

            assert fetch.await_count == 1

            await asyncio.sleep(0.1)
            await handle.settle()

            assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_focus_revalidates(self, store, visibility):
        fetch = AsyncMock(return_value="A")
        handle = store.attach(user_query(fetch))
        await handle.settle()

        visibility.notify(VisibilityEvent.BACKGROUND)
        visibility.notify(VisibilityEvent.FOREGROUND)
        await handle.settle()

        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_focus_disabled_by_policy(self, store, visibility):
        fetch = AsyncMock(return_value="A")
        handle = store.attach(user_query(fetch, revalidate_on_focus=False))
        await handle.settle()

        visibility.notify(VisibilityEvent.BACKGROUND)
        visibility.notify(VisibilityEvent.FOREGROUND)
        await drain()

        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_signal_from_another_thread(self, store, connectivity):
        fetch = AsyncMock(return_value="A")
        handle = store.attach(user_query(fetch))
        await handle.settle()
        loop = asyncio.get_running_loop()

        await loop.run_in_executor(None, connectivity.notify, ConnectivityEvent.LOST)
        await loop.run_in_executor(None, connectivity.notify, ConnectivityEvent.AVAILABLE)
        await drain()
        await handle.settle()

        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_memory_pressure_high(self, store, memory_pressure):
        observed = store.attach(QueryDef(Key.of("users", 1), AsyncMock(return_value="A")))
        idle = store.attach(QueryDef(Key.of("users", 2), AsyncMock(return_value="B"), policy=FetchPolicy(gc_time=60)))
        await asyncio.gather(observed.settle(), idle.settle())
        idle.release()

        memory_pressure.notify(MemoryPressureLevel.HIGH)

        assert Key.of("users", 1) in store
        assert Key.of("users", 2) not in store
        assert idle.state.status is EntryStatus.EVICTED
        assert store.stats()["pending_gc"] == 0

    @pytest.mark.asyncio
    async def test_memory_pressure_low_keeps_pending_entries(self, store, memory_pressure):
        idle = store.attach(user_query(gc_time=60))
        await idle.settle()
        idle.release()

        memory_pressure.notify(MemoryPressureLevel.LOW)

        assert USER in store
        assert store.gc(MemoryPressureLevel.HIGH) == 1


class TestLifecycle:
    """Test cases for store close and metrics."""

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, config, connectivity):
        gate = asyncio.Event()

        async def fetch(receiver, user_id):
            await gate.wait()

        store = Store(config, connectivity=connectivity)
        handle = store.attach(user_query(fetch))
        task = handle.entry.task

        await store.close()

        assert task.cancelled()
        assert len(store) == 0
        assert not connectivity.has_observers
        assert handle.state.status is EntryStatus.EVICTED

    @pytest.mark.asyncio
    async def test_error_relay(self, config):
        on_error = MagicMock()
        async with Store(config, on_error=on_error) as store:
            handle = store.attach(user_query(AsyncMock(side_effect=ConnectionError("down"))))
            await handle.settle()

        record = on_error.call_args.args[0]
        assert record.key == "users[1]"
        assert record.code == "ConnectionError"

    @pytest.mark.asyncio
    async def test_metrics(self, config):
        registry = CollectorRegistry()
        gate = asyncio.Event()

        async def fetch(receiver, user_id):
            await gate.wait()
            return "A"

        async with Store(config, metrics=MetricsCollector(registry=registry)) as store:
            definition = user_query(fetch, gc_time=0)
            first = store.attach(definition)
            second = store.attach(definition)
            gate.set()
            await first.settle()

            assert registry.get_sample_value("swr_cache_entries", {"kind": "query"}) == 1.0

            first.release()
            second.release()

        assert registry.get_sample_value(
            "swr_cache_fetch_total", {"kind": "query", "result": "success"}
        ) == 1.0
        assert registry.get_sample_value("swr_cache_dedupe_joins_total", {"kind": "query"}) == 1.0
        assert registry.get_sample_value("swr_cache_evictions_total", {"reason": "gc"}) == 1.0
        assert registry.get_sample_value("swr_cache_entries", {"kind": "query"}) == 0.0

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, config):
        store = Store(config)

        assert store.metrics is None
        await store.close()

    @pytest.mark.asyncio
    async def test_signal_metrics(self, config):
        registry = CollectorRegistry()
        connectivity = NetworkConnectivity()
        async with Store(config, connectivity=connectivity, metrics=MetricsCollector(registry=registry)) as store:
            store.attach(user_query(gc_time=60))
            connectivity.notify(ConnectivityEvent.LOST)

        assert registry.get_sample_value(
            "swr_cache_signals_total", {"signal": "connectivity", "event": "lost"}
        ) == 1.0
