"""
Query entries: one request, one cached response.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple

from ..keys import EntryKind
from .base import Entry, EntryState, EntryStatus, FetchStatus


class QueryEntry(Entry):
    """Cached result of a ``QueryDef``."""

    kind = EntryKind.QUERY
    revalidates = True

    def _initial_state(self) -> EntryState:
        supplier = getattr(self.definition, "initial_data", None)
        data = supplier() if supplier is not None else None
        if data is None:
            return EntryState()

        # Placeholder data is shown immediately but is stale from the start
        now = self.now()
        return EntryState(
            data=data,
            has_data=True,
            data_updated_at=now,
            stale_at=now,
            status=EntryStatus.SUCCESS,
            is_placeholder=True
        )

    def should_fetch(self) -> bool:
        """Whether a non-forced trigger would start a fetch now."""
        state = self._state
        now = self.now()

        if state.is_failure and state.is_paused(now):
            return False
        if state.is_invalidated or state.is_placeholder or not state.has_data:
            return True
        if not state.is_stale(now):
            return False

        window = self.policy.dedupe_window
        if window and self._settled_at is not None and now - self._settled_at < window:
            return False
        return True

    def activate(self) -> Optional[asyncio.Task]:
        return self.revalidate(reason="attach")

    def revalidate(self, *, force: bool = False, reason: str = "revalidate") -> Optional[asyncio.Task]:
        """Fetch when needed.

        A non-forced call joins the in-flight task, or does nothing while the
        data is fresh. A forced call always starts a new task and supersedes
        the in-flight one.
        """
        if self.is_evicted:
            return None

        if not force and not self.in_flight and not self.should_fetch():
            self.logger.debug("Fetch skipped", key=str(self.key), reason=reason)
            return None

        call, apply = self._revalidation()
        return self._launch(call, apply, supersede=force, reason=reason)

    def _revalidation(self) -> Tuple[Callable[[], Awaitable[Any]], Callable[[Any], None]]:
        definition = self.definition
        receiver = self._receiver
        params = self.key.params

        async def call():
            return await definition.fetch(receiver, *params)

        return call, self._mark_success

    def invalidate(self) -> None:
        """Mark the data for refetch regardless of staleness.

        An in-flight fetch is cancelled so its outcome cannot clear the mark.
        """
        if self.is_evicted:
            return
        changes = dict(is_invalidated=True)
        if self.cancel() is not None:
            # The running fetch started before the invalidation; its result is dropped
            changes.update(fetch_status=FetchStatus.IDLE)
        self._set_state(**changes)

    def resume(self) -> bool:
        """Lift a failure pause and refetch when observed.

        Returns False when the entry was not paused.
        """
        if self.is_evicted or self._state.fetch_status is not FetchStatus.PAUSED:
            return False
        self._set_state(fetch_status=FetchStatus.IDLE, unpause_at=0.0)
        self.logger.debug("Entry resumed", key=str(self.key))
        if self.observer_count > 0:
            self.revalidate(force=True, reason="resume")
        return True

    def set_data(self, data: Any) -> None:
        """Replace the data without fetching."""
        if self.is_evicted:
            return

        state = self._state
        now = self.now()
        updated_at = max(now, state.data_updated_at)
        changes = dict(
            data=data,
            has_data=True,
            data_updated_at=updated_at,
            is_placeholder=False
        )
        if state.is_idle:
            changes.update(status=EntryStatus.SUCCESS, stale_at=self.policy.stale_deadline(updated_at))
        self._set_state(**changes)
