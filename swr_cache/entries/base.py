"""
Entry state machine shared by every variant.

An entry owns the lifecycle of one cached value. State is an immutable
``EntryState`` snapshot replaced on every transition; listeners receive each
new snapshot synchronously. All transitions happen on the event loop that
owns the store, and at most one fetch task is active per entry: a new trigger
either joins the running task or supersedes it (the superseded task is
cancelled and its outcome discarded).
"""

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, ClassVar, Generic, List, Optional, TypeVar

from shared.errors import ErrorKind, ErrorRecord, classify_error, to_error_record
from shared.logging import bind_fetch_context, get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryError, call_with_retry

from ..keys import EntryDef, EntryKind, Key, Pages
from ..policy import FetchPolicy


T = TypeVar("T")

Clock = Callable[[], float]
Listener = Callable[["EntryState"], None]
ErrorSink = Callable[[ErrorRecord], None]


class EntryStatus(str, Enum):
    IDLE = "idle"
    SUCCESS = "success"
    FAILURE = "failure"
    EVICTED = "evicted"


class FetchStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PAUSED = "paused"


@dataclass(frozen=True)
class EntryState(Generic[T]):
    """Read-only snapshot of an entry."""

    data: Optional[T] = None
    has_data: bool = False
    data_updated_at: float = 0.0
    error: Optional[BaseException] = None
    error_kind: Optional[ErrorKind] = None
    error_updated_at: float = 0.0
    status: EntryStatus = EntryStatus.IDLE
    fetch_status: FetchStatus = FetchStatus.IDLE
    retry_count: int = 0
    stale_at: float = 0.0
    unpause_at: float = 0.0
    is_invalidated: bool = False
    is_placeholder: bool = False
    next_param: Any = None

    @property
    def is_idle(self) -> bool:
        return self.status is EntryStatus.IDLE

    @property
    def is_success(self) -> bool:
        return self.status is EntryStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status is EntryStatus.FAILURE

    @property
    def is_evicted(self) -> bool:
        return self.status is EntryStatus.EVICTED

    @property
    def is_fetching(self) -> bool:
        return self.fetch_status is FetchStatus.FETCHING

    @property
    def pages(self) -> Pages:
        return self.data or ()

    @property
    def has_more(self) -> bool:
        return self.next_param is not None

    def is_stale(self, now: float) -> bool:
        return not self.has_data or now >= self.stale_at

    def is_paused(self, now: float) -> bool:
        return self.fetch_status is FetchStatus.PAUSED and now < self.unpause_at


async def resolve(value: Any) -> Any:
    """Await ``value`` when a callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class Entry(ABC):
    """Base class of the four entry variants."""

    kind: ClassVar[EntryKind]
    revalidates: ClassVar[bool] = False

    def __init__(self,
                 definition: EntryDef,
                 policy: FetchPolicy,
                 *,
                 receiver: Any = None,
                 clock: Clock = time.monotonic,
                 metrics: Optional[MetricsCollector] = None,
                 on_error: Optional[ErrorSink] = None):
        self.definition = definition
        self.key: Key = definition.key
        self.policy = policy
        self.observer_count = 0
        self._receiver = receiver
        self._clock = clock
        self._metrics = metrics
        self._on_error = on_error
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._settled_at: Optional[float] = None
        self.logger = get_logger(f"swr_cache.entries.{self.kind.value}")
        self._state: EntryState = self._initial_state()

    def _initial_state(self) -> EntryState:
        return EntryState()

    @abstractmethod
    def activate(self) -> Optional[asyncio.Task]:
        """React to a new observer."""

    @property
    def state(self) -> EntryState:
        return self._state

    @property
    def is_evicted(self) -> bool:
        return self._state.is_evicted

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task if self.in_flight else None

    def now(self) -> float:
        return self._clock()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ----- transitions -----

    def _set_state(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        self._notify()

    def _reset_state(self) -> None:
        self._state = EntryState()
        self._notify()

    def _notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                self.logger.error(
                    "State listener failed",
                    key=str(self.key),
                    error=str(exc),
                    exc_info=True
                )

    def _mark_fetching(self) -> None:
        self._set_state(fetch_status=FetchStatus.FETCHING, retry_count=0)

    def _mark_idle(self) -> None:
        self._set_state(fetch_status=FetchStatus.IDLE)

    def _mark_success(self, data: Any, **extra) -> None:
        now = self.now()
        updated_at = max(now, self._state.data_updated_at)
        self._settled_at = now
        self._set_state(
            data=data,
            has_data=True,
            data_updated_at=updated_at,
            error=None,
            error_kind=None,
            status=EntryStatus.SUCCESS,
            fetch_status=FetchStatus.IDLE,
            retry_count=0,
            stale_at=self.policy.stale_deadline(updated_at),
            unpause_at=0.0,
            is_invalidated=False,
            is_placeholder=False,
            **extra
        )

    def _mark_failure(self, error: BaseException, attempts: int) -> None:
        now = self.now()
        self._settled_at = now
        unpause_at = self.policy.pause_deadline(error, now)
        self._set_state(
            error=error,
            error_kind=classify_error(error),
            error_updated_at=max(now, self._state.error_updated_at),
            status=EntryStatus.FAILURE,
            fetch_status=FetchStatus.PAUSED if unpause_at is not None else FetchStatus.IDLE,
            retry_count=max(0, attempts - 1),
            unpause_at=unpause_at or 0.0
        )

    def _mark_retry(self, generation: int, error: BaseException, attempt: int, delay: float) -> None:
        if generation != self._generation:
            return
        if self._metrics:
            self._metrics.increment_counter("fetch_retries_total", kind=self.kind.value)
        self._set_state(retry_count=attempt)

    def _report(self, error: BaseException, attempts: int) -> None:
        record = to_error_record(error, key=str(self.key), attempts=attempts)
        self.logger.warning(
            "Fetch failed",
            key=str(self.key),
            error_kind=record.kind.value,
            code=record.code,
            attempts=attempts,
            error=record.message
        )
        if self._on_error is None:
            return
        try:
            self._on_error(record)
        except Exception as exc:
            self.logger.error("Error relay failed", key=str(self.key), error=str(exc), exc_info=True)

    async def _callback(self, name: str, callback: Optional[Callable[..., Any]], *args) -> None:
        if callback is None:
            return
        try:
            await resolve(callback(*args))
        except Exception as exc:
            self.logger.error(
                "Callback failed",
                key=str(self.key),
                callback=name,
                error=str(exc),
                exc_info=True
            )

    # ----- fetch tasks -----

    def _launch(self,
                call: Callable[[], Awaitable[Any]],
                apply: Callable[[Any], None],
                *,
                supersede: bool = False,
                reason: str = "fetch") -> Optional[asyncio.Task]:
        """Start a fetch task, or join the active one unless ``supersede`` is set."""
        if self.is_evicted:
            return None

        current = self._task
        if current is not None and not current.done():
            if not supersede:
                if self._metrics:
                    self._metrics.increment_counter("dedupe_joins_total", kind=self.kind.value)
                self.logger.debug("Joined in-flight fetch", key=str(self.key), reason=reason)
                return current
            self.logger.debug("Superseding in-flight fetch", key=str(self.key), reason=reason)
            current.cancel()

        self._generation += 1
        generation = self._generation
        self._mark_fetching()
        self._task = asyncio.get_running_loop().create_task(
            self._run(generation, call, apply, reason)
        )
        self.logger.debug("Fetch started", key=str(self.key), reason=reason)
        return self._task

    async def _run(self,
                   generation: int,
                   call: Callable[[], Awaitable[Any]],
                   apply: Callable[[Any], None],
                   reason: str) -> None:
        bind_fetch_context(str(self.key), reason)
        started = time.perf_counter()
        outcome = "success"
        try:
            result = await call_with_retry(
                call,
                self.policy.retry,
                on_retry=partial(self._mark_retry, generation),
                name=self.kind.value
            )
            if generation == self._generation:
                apply(result)
        except asyncio.CancelledError:
            outcome = "cancelled"
            if generation == self._generation and not self.is_evicted:
                self._mark_idle()
            raise
        except RetryError as exc:
            outcome = "failure"
            if generation == self._generation:
                self._mark_failure(exc.last_exception, exc.attempts)
                self._report(exc.last_exception, exc.attempts)
        except Exception as exc:
            outcome = "failure"
            if generation == self._generation:
                self._mark_failure(exc, 1)
                self._report(exc, 1)
        finally:
            if self._metrics:
                self._metrics.record_fetch(self.kind.value, outcome, time.perf_counter() - started)

    async def settle(self) -> EntryState:
        """Wait until no fetch task is active, following supersessions."""
        while True:
            task = self._task
            if task is None or task.done():
                return self._state
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    def cancel(self) -> Optional[asyncio.Task]:
        """Cancel the active task silently. Returns it so callers can await its end."""
        task = self._task
        self._generation += 1
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    def evict(self) -> Optional[asyncio.Task]:
        """Move to the terminal state. No transition happens afterwards."""
        task = self.cancel()
        self._set_state(status=EntryStatus.EVICTED, fetch_status=FetchStatus.IDLE)
        self._listeners.clear()
        self.logger.debug("Entry evicted", key=str(self.key))
        return task

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(key={self.key!s}, status={self._state.status.value}, "
            f"observers={self.observer_count})"
        )
