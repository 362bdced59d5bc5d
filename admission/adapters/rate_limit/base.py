"""Rate limiter interfaces.

The request coordinator depends on this abstraction (not a concrete
algorithm) so fixed window, sliding window and token bucket limiting are
interchangeable. Every implementation keeps its counters in a key store
and never holds state of its own between calls.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from admission.adapters.store.base import AbstractKeyStore


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window (bucket capacity for token bucket).
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when budget becomes available again.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters backed by a key store."""

    algorithm = "abstract"

    def __init__(
        self,
        store: AbstractKeyStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Key store holding the counters.
            clock: Time source function returning UNIX time in seconds.
        """
        self._store = store
        self._clock = clock

    @abstractmethod
    def allow(self, limit_key: str, *, limit: int, window_seconds: float) -> RateLimitResult:
        """Decide whether one more request for ``limit_key`` may proceed.

        Args:
            limit_key: Unique identifier (e.g., API key, user id, IP address).
            limit: Max requests per window.
            window_seconds: Window size in seconds.

        Returns:
            RateLimitResult describing whether it was allowed.

        Raises:
            ValueError: If arguments are invalid.
            StoreUnavailableError: If the key store cannot be reached.
        """
        raise NotImplementedError

    def _counter_key(self, limit_key: str, window_index: int | None = None) -> str:
        if window_index is None:
            return f"ratelimit:{self.algorithm}:{limit_key}"
        return f"ratelimit:{self.algorithm}:{limit_key}:{window_index}"

    @staticmethod
    def _validate(limit_key: str, limit: int, window_seconds: float) -> None:
        if not limit_key:
            raise ValueError("limit_key must be a non-empty string")
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    @staticmethod
    def _get_window_bounds(now: float, window_seconds: float) -> tuple[int, float, float]:
        """Compute fixed-window boundaries for a given timestamp.

        Returns:
            Tuple of (window_index, window_start, window_end) in epoch seconds.
        """
        window_index = int(now // window_seconds)
        window_start = window_index * window_seconds
        return window_index, window_start, window_start + window_seconds

    @staticmethod
    def _build_allowed_result(*, limit: int, remaining: int, reset_at: float) -> RateLimitResult:
        """Build a RateLimitResult for an allowed request."""
        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=remaining,
            reset_at=int(math.ceil(reset_at)),
            retry_after_seconds=None,
        )

    @staticmethod
    def _build_blocked_result(*, now: float, limit: int, remaining: int, reset_at: float) -> RateLimitResult:
        """Build a RateLimitResult for a blocked request."""
        retry_after = max(1, int(math.ceil(reset_at - now)))
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=remaining,
            reset_at=int(math.ceil(reset_at)),
            retry_after_seconds=retry_after,
        )
