"""Sliding-window rate limiter (weighted two-bucket approximation).

Instead of storing a timestamp log, the limiter keeps the fixed-window
counters of the current and the immediately preceding window and weights
the previous count by how much of it still overlaps the trailing window::

    effective = current + floor(previous * (1 - elapsed / window))

The weighted term is floored: a fraction of an earlier request never
blocks a whole new one. With this, a client sending ``limit`` evenly spread
requests per window is never throttled, while a burst straddling a window
boundary is cut to roughly ``limit`` admitted requests.
"""

from __future__ import annotations

import math

from admission.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult


class SlidingWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter approximating a continuously moving window."""

    algorithm = "sliding"

    def allow(self, limit_key: str, *, limit: int, window_seconds: float) -> RateLimitResult:
        self._validate(limit_key, limit, window_seconds)

        now = self._clock()
        window_index, window_start, window_end = self._get_window_bounds(now, window_seconds)

        # Counters live for two windows so they can serve as "previous".
        current = self._store.increment_with_expiry(
            self._counter_key(limit_key, window_index),
            1,
            2 * window_seconds,
        )
        raw_previous, found = self._store.get(self._counter_key(limit_key, window_index - 1))
        previous = int(raw_previous) if found and raw_previous is not None else 0

        elapsed_fraction = min(1.0, max(0.0, (now - window_start) / window_seconds))
        weighted_previous = math.floor(previous * (1.0 - elapsed_fraction))
        effective = current + weighted_previous
        remaining = max(0, limit - effective)

        if effective <= limit:
            return self._build_allowed_result(limit=limit, remaining=remaining, reset_at=window_end)
        return self._build_blocked_result(now=now, limit=limit, remaining=remaining, reset_at=window_end)
