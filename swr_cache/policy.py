"""
Fetch policies shared by every entry created from the same definition.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from shared.config import CacheConfig
from shared.errors import InvalidPolicyError
from shared.retry import RetryPolicy, exponential_backoff


PauseFn = Callable[[BaseException], Optional[float]]


@dataclass(frozen=True)
class FetchPolicy:
    """Immutable fetch configuration.

    Durations are seconds of monotonic time. ``stale_time`` may be
    ``math.inf`` for data that never goes stale, and ``gc_time`` may be
    ``math.inf`` to keep idle entries until memory pressure or close.
    """

    stale_time: float = 0.0
    gc_time: float = 300.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dedupe_window: float = 0.0
    prefetch_window: Optional[float] = 1.0
    revalidate_on_reconnect: bool = True
    revalidate_on_focus: bool = True
    pause_after: Optional[PauseFn] = None

    def __post_init__(self):
        for name in ("stale_time", "gc_time", "dedupe_window"):
            value = getattr(self, name)
            if value is None or math.isnan(value) or value < 0:
                raise InvalidPolicyError(
                    f"{name} must be a non-negative duration",
                    {"field": name, "value": value}
                )
        if self.prefetch_window is not None and self.prefetch_window < 0:
            raise InvalidPolicyError(
                "prefetch_window must be a non-negative duration",
                {"field": "prefetch_window", "value": self.prefetch_window}
            )

    def stale_deadline(self, updated_at: float) -> float:
        """Instant at which data updated at ``updated_at`` becomes stale."""
        return updated_at + self.stale_time

    def pause_deadline(self, error: BaseException, now: float) -> Optional[float]:
        """Instant until which auto-revalidation is paused after ``error``."""
        if self.pause_after is None:
            return None
        duration = self.pause_after(error)
        if duration is None or duration <= 0:
            return None
        return now + duration

    def replace(self, **changes) -> "FetchPolicy":
        return replace(self, **changes)

    @classmethod
    def from_config(cls, config: CacheConfig) -> "FetchPolicy":
        """Default policy for queries and subscriptions."""
        return cls(
            stale_time=config.stale_time,
            gc_time=config.gc_time,
            retry=RetryPolicy(
                max_attempts=config.retry_max_attempts,
                backoff=exponential_backoff(
                    base_delay=config.retry_base_delay,
                    multiplier=config.retry_multiplier,
                    max_delay=config.retry_max_delay,
                    jitter=config.retry_jitter
                )
            ),
            dedupe_window=config.dedupe_window,
            prefetch_window=config.prefetch_window or None,
            revalidate_on_reconnect=config.revalidate_on_reconnect,
            revalidate_on_focus=config.revalidate_on_focus
        )

    @classmethod
    def for_mutations(cls, config: CacheConfig) -> "FetchPolicy":
        """Default policy for mutations: short keep-alive, no retries unless configured."""
        return cls.from_config(config).replace(
            gc_time=config.mutation_gc_time,
            retry=RetryPolicy(
                max_attempts=config.mutation_retry_max_attempts,
                backoff=exponential_backoff(
                    base_delay=config.retry_base_delay,
                    multiplier=config.retry_multiplier,
                    max_delay=config.retry_max_delay,
                    jitter=config.retry_jitter
                )
            )
        )
