"""
Mutation entries: side effects run once per call, never deduplicated.
"""

import asyncio
import time
from functools import partial
from typing import Any, Optional

from shared.logging import bind_fetch_context
from shared.retry import RetryError, call_with_retry

from ..keys import EntryKind
from .base import Entry, EntryState, resolve


class MutationEntry(Entry):
    """Runs a ``MutationDef``. Calls on the same entry are serialized."""

    kind = EntryKind.MUTATION

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = asyncio.Lock()

    def activate(self) -> Optional[asyncio.Task]:
        return None

    async def mutate(self, variables: Any) -> EntryState:
        """Run the mutation with ``variables`` and return the settled state."""
        async with self._lock:
            return await self._execute(variables)

    async def _execute(self, variables: Any) -> EntryState:
        definition = self.definition
        receiver = self._receiver

        self._generation += 1
        generation = self._generation
        bind_fetch_context(str(self.key), "mutate")
        self._mark_fetching()
        started = time.perf_counter()

        context = None
        applied = False
        try:
            if definition.on_mutate is not None:
                context = await resolve(definition.on_mutate(variables))
                applied = True
            data = await call_with_retry(
                lambda: definition.mutate(receiver, variables),
                self.policy.retry,
                on_retry=partial(self._mark_retry, generation),
                name=self.kind.value
            )
        except asyncio.CancelledError:
            self._record("cancelled", started)
            if not self.is_evicted:
                self._mark_idle()
            raise
        except RetryError as exc:
            error, attempts = exc.last_exception, exc.attempts
        except Exception as exc:
            error, attempts = exc, 1
        else:
            self._record("success", started)
            self._mark_success(data)
            await self._callback("on_success", definition.on_success, data, variables, context)
            return self._state

        self._record("failure", started)
        self._mark_failure(error, attempts)
        self._report(error, attempts)
        if applied:
            await self._callback("rollback", definition.rollback, variables, context)
        await self._callback("on_error", definition.on_error, error, variables, context)
        return self._state

    def _record(self, outcome: str, started: float) -> None:
        if self._metrics:
            self._metrics.record_fetch(self.kind.value, outcome, time.perf_counter() - started)

    def reset(self) -> None:
        """Forget the last result. Ignored while a mutation is running."""
        if self.is_evicted or self._lock.locked():
            return
        self._reset_state()
