"""
Subscription entries: a long-lived stream whose latest item is the data.
"""

import asyncio
from typing import Any, Optional

from ..keys import EntryKind
from .base import Entry, EntryStatus, FetchStatus


class SubscriptionEntry(Entry):
    """Consumes the stream of a ``SubscriptionDef`` while observed.

    The stream is resubscribed under the retry policy when it fails, and
    cancelled when the entry is evicted. The fetch status is ``FETCHING``
    only until the first item arrives; ``is_active`` tells whether the
    stream is still open.
    """

    kind = EntryKind.SUBSCRIPTION

    @property
    def is_active(self) -> bool:
        return self.in_flight

    def activate(self) -> Optional[asyncio.Task]:
        return self.start()

    def start(self, reason: str = "attach") -> Optional[asyncio.Task]:
        """Open the stream unless it is already being consumed."""
        if self.in_flight:
            return self._task
        return self._launch(self._consume, self._complete, reason=reason)

    def restart(self) -> Optional[asyncio.Task]:
        """Close the current stream and subscribe again."""
        return self._launch(self._consume, self._complete, supersede=True, reason="restart")

    async def _consume(self) -> None:
        stream = self.definition.subscribe(self._receiver, *self.key.params)
        try:
            async for item in stream:
                self._receive(item)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _receive(self, item: Any) -> None:
        updated_at = max(self.now(), self._state.data_updated_at)
        self._set_state(
            data=item,
            has_data=True,
            data_updated_at=updated_at,
            error=None,
            error_kind=None,
            status=EntryStatus.SUCCESS,
            fetch_status=FetchStatus.IDLE,
            retry_count=0,
            stale_at=self.policy.stale_deadline(updated_at)
        )

    def _complete(self, _result: Any) -> None:
        self.logger.debug("Stream completed", key=str(self.key))
        self._mark_idle()
