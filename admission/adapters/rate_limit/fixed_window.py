"""Fixed-window rate limiter.

Notes:
- One store round trip per request (an atomic increment).
- A client can spend ``limit`` requests at the end of one window and
  ``limit`` more at the start of the next, i.e. up to ``2 * limit`` in a
  short span straddling the boundary. Use the sliding window limiter when
  that burst matters.
"""

from __future__ import annotations

from admission.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult


class FixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter counting requests per key in fixed time buckets.

    The bucket index is ``floor(now / window)``; its counter expires with the
    window, so no counter outlives its bucket.
    """

    algorithm = "fixed"

    def allow(self, limit_key: str, *, limit: int, window_seconds: float) -> RateLimitResult:
        """Count this request and decide whether it fits the current bucket.

        Denied requests are counted too; they do not change the outcome for
        the rest of the bucket.
        """
        self._validate(limit_key, limit, window_seconds)

        now = self._clock()
        window_index, _, reset_at = self._get_window_bounds(now, window_seconds)

        count = self._store.increment_with_expiry(
            self._counter_key(limit_key, window_index),
            1,
            window_seconds,
        )
        remaining = max(0, limit - count)

        if count <= limit:
            return self._build_allowed_result(limit=limit, remaining=remaining, reset_at=reset_at)
        return self._build_blocked_result(now=now, limit=limit, remaining=remaining, reset_at=reset_at)
