"""
Infinite query entries: an ordered list of pages grown on demand.
"""

from typing import Sequence

from ..keys import EntryKind, Page, Pages
from .base import EntryState
from .query import QueryEntry


class InfiniteQueryEntry(QueryEntry):
    """Cached pages of an ``InfiniteQueryDef``.

    Every revalidation refetches only the first page and truncates the rest;
    ``load_more`` appends one page at a time.
    """

    kind = EntryKind.INFINITE_QUERY

    def _initial_state(self) -> EntryState:
        return EntryState()

    def _revalidation(self):
        definition = self.definition
        receiver = self._receiver
        params = self.key.params

        async def call():
            param = definition.initial_param()
            data = await definition.fetch(receiver, param, *params)
            return Page(data, param)

        def apply(page: Page) -> None:
            self._apply_pages((page,))

        return call, apply

    def _apply_pages(self, pages: Pages) -> None:
        self._mark_success(pages, next_param=self.definition.load_more_param(pages))

    async def load_more(self) -> EntryState:
        """Fetch the next page, then return the settled state.

        Waits for any in-flight fetch first. Without data this behaves like a
        revalidation; with no next parameter it returns without fetching.
        """
        await self.settle()
        if self.is_evicted:
            return self._state

        state = self._state
        if not state.has_data:
            self.revalidate(reason="load_more")
            return await self.settle()

        param = state.next_param
        if param is None:
            self.logger.debug("No more pages", key=str(self.key), pages=len(state.pages))
            return state

        definition = self.definition
        receiver = self._receiver
        params = self.key.params

        async def call():
            data = await definition.fetch(receiver, param, *params)
            return Page(data, param)

        def apply(page: Page) -> None:
            self._apply_pages(self._state.pages + (page,))

        self._launch(call, apply, reason="load_more")
        return await self.settle()

    def set_data(self, data: Sequence[Page]) -> None:
        if self.is_evicted:
            return
        pages = tuple(data)
        super().set_data(pages)
        self._set_state(next_param=self.definition.load_more_param(pages))

    @property
    def pages(self) -> Pages:
        return self._state.pages
