"""
Stale-while-revalidate cache for asyncio applications.

- keys: keys and entry definitions (query, infinite query, mutation, subscription)
- policy: fetch policies
- entries: per-key state machines
- store: registry, keep-alive and signal handling
- signals: connectivity, visibility and memory pressure notifiers
"""

from .entries import EntryState, EntryStatus, FetchStatus
from .handle import ObserverHandle
from .keys import (
    EntryKind, InfiniteQueryDef, Key, MutationDef, Page, QueryDef, SubscriptionDef, flatten_pages
)
from .policy import FetchPolicy
from .signals import (
    ConnectivityEvent, MemoryPressure, MemoryPressureLevel, NetworkConnectivity,
    SignalNotifier, VisibilityEvent, WindowVisibility
)
from .store import Store

__all__ = [
    "ConnectivityEvent",
    "EntryKind",
    "EntryState",
    "EntryStatus",
    "FetchPolicy",
    "FetchStatus",
    "InfiniteQueryDef",
    "Key",
    "MemoryPressure",
    "MemoryPressureLevel",
    "MutationDef",
    "NetworkConnectivity",
    "ObserverHandle",
    "Page",
    "QueryDef",
    "SignalNotifier",
    "Store",
    "SubscriptionDef",
    "VisibilityEvent",
    "WindowVisibility",
    "flatten_pages",
]
