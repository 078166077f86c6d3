"""
Entry variants managed by the store.
"""

from .base import Entry, EntryState, EntryStatus, FetchStatus
from .infinite import InfiniteQueryEntry
from .mutation import MutationEntry
from .query import QueryEntry
from .subscription import SubscriptionEntry

ENTRY_TYPES = {
    entry_type.kind: entry_type
    for entry_type in (QueryEntry, InfiniteQueryEntry, MutationEntry, SubscriptionEntry)
}

__all__ = [
    "ENTRY_TYPES",
    "Entry",
    "EntryState",
    "EntryStatus",
    "FetchStatus",
    "InfiniteQueryEntry",
    "MutationEntry",
    "QueryEntry",
    "SubscriptionEntry",
]
