"""
Keys and entry definitions.

A ``Key`` is the identity of a cacheable unit: a namespace plus an ordered
tuple of parameters, compared and hashed by value. Definitions bind a key to
the function that produces its data and to the policy that governs it; there
is one definition type per entry variant.
"""

from dataclasses import dataclass
from enum import Enum
from typing import (
    Any, AsyncIterator, Awaitable, Callable, ClassVar, Generic, Hashable,
    List, Optional, Sequence, Tuple, TypeVar, Union, TYPE_CHECKING
)

from shared.errors import InvalidKeyError

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .policy import FetchPolicy


T = TypeVar("T")
P = TypeVar("P")
V = TypeVar("V")


class EntryKind(str, Enum):
    """Closed set of entry variants."""
    QUERY = "query"
    INFINITE_QUERY = "infinite_query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class Key:
    """Structural identity of a cache entry."""

    namespace: str
    params: Tuple[Hashable, ...] = ()

    def __post_init__(self):
        if not isinstance(self.namespace, str) or not self.namespace:
            raise InvalidKeyError(
                "Key namespace must be a non-empty string",
                {"namespace": repr(self.namespace)}
            )

        params = self.params
        if isinstance(params, list):
            params = tuple(params)
        if not isinstance(params, tuple):
            raise InvalidKeyError(
                "Key parameters must be an ordered sequence",
                {"namespace": self.namespace, "params": repr(params)}
            )
        try:
            hash(params)
        except TypeError as exc:
            raise InvalidKeyError(
                "Key parameters must be hashable",
                {"namespace": self.namespace, "params": repr(params)}
            ) from exc

        object.__setattr__(self, "params", params)

    @classmethod
    def of(cls, namespace: str, *params: Hashable) -> "Key":
        return cls(namespace, params)

    def matches(self, target: Union["Key", str]) -> bool:
        """True for an equal key, or when ``target`` is a prefix of the namespace."""
        if isinstance(target, Key):
            return self == target
        return self.namespace.startswith(target)

    def __str__(self) -> str:
        if not self.params:
            return self.namespace
        return f"{self.namespace}{list(self.params)}"


KeyTarget = Union[Key, str]


@dataclass(frozen=True)
class Page(Generic[T, P]):
    """One fetched page of an infinite query and the parameter that produced it."""
    data: T
    param: P


Pages = Tuple[Page, ...]


def flatten_pages(pages: Sequence[Page]) -> List[Any]:
    """Concatenate list-shaped page data in fetch order."""
    items: List[Any] = []
    for page in pages:
        items.extend(page.data)
    return items


@dataclass(frozen=True)
class QueryDef(Generic[T]):
    """A single request/response query.

    ``fetch`` is awaited as ``fetch(receiver, *key.params)``.
    """

    key: Key
    fetch: Callable[..., Awaitable[T]]
    policy: Optional["FetchPolicy"] = None
    initial_data: Optional[Callable[[], Optional[T]]] = None

    kind: ClassVar[EntryKind] = EntryKind.QUERY


@dataclass(frozen=True)
class InfiniteQueryDef(Generic[T, P]):
    """A paginated query.

    ``fetch`` is awaited as ``fetch(receiver, page_param, *key.params)``.
    ``load_more_param(pages)`` returns the parameter of the next page, or
    ``None`` when there are no more pages.
    """

    key: Key
    fetch: Callable[..., Awaitable[T]]
    initial_param: Callable[[], P]
    load_more_param: Callable[[Pages], Optional[P]]
    policy: Optional["FetchPolicy"] = None

    kind: ClassVar[EntryKind] = EntryKind.INFINITE_QUERY


@dataclass(frozen=True)
class MutationDef(Generic[T, V]):
    """A side-effecting operation run once per ``Store.mutate`` call.

    ``mutate`` is awaited as ``mutate(receiver, variables)``. Callbacks may be
    plain functions or coroutine functions:

    - ``on_mutate(variables) -> context`` runs before the mutation; use it to
      apply optimistic updates.
    - ``rollback(variables, context)`` runs when the mutation fails after
      ``on_mutate`` completed.
    - ``on_success(data, variables, context)`` / ``on_error(error, variables, context)``
      run at the corresponding transitions.

    ``invalidates`` lists keys or namespace prefixes invalidated after success.
    """

    key: Key
    mutate: Callable[..., Awaitable[T]]
    policy: Optional["FetchPolicy"] = None
    on_mutate: Optional[Callable[[V], Any]] = None
    on_success: Optional[Callable[[T, V, Any], Any]] = None
    on_error: Optional[Callable[[BaseException, V, Any], Any]] = None
    rollback: Optional[Callable[[V, Any], Any]] = None
    invalidates: Tuple[KeyTarget, ...] = ()

    kind: ClassVar[EntryKind] = EntryKind.MUTATION

    @property
    def fetch(self) -> Callable[..., Awaitable[T]]:
        return self.mutate


@dataclass(frozen=True)
class SubscriptionDef(Generic[T]):
    """A long-lived stream.

    ``subscribe(receiver, *key.params)`` must return an async iterator; every
    item replaces the entry data.
    """

    key: Key
    subscribe: Callable[..., AsyncIterator[T]]
    policy: Optional["FetchPolicy"] = None

    kind: ClassVar[EntryKind] = EntryKind.SUBSCRIPTION

    @property
    def fetch(self) -> Callable[..., AsyncIterator[T]]:
        return self.subscribe


EntryDef = Union[QueryDef, InfiniteQueryDef, MutationDef, SubscriptionDef]
