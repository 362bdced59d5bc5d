"""Token bucket rate limiter.

The bucket holds up to ``capacity`` tokens and refills continuously at
``refill_rate`` tokens per second; each admitted request takes one token.
An idle bucket therefore admits a burst of up to ``capacity`` requests.

State is a small JSON document updated through compare-and-swap, so
concurrent callers (threads or instances) never lose an update.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Callable

from admission.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from admission.adapters.store.base import ABSENT, AbstractKeyStore, _Absent

logger = logging.getLogger(__name__)

DEFAULT_MAX_CAS_ATTEMPTS = 16


class TokenBucketRateLimiter(AbstractRateLimiter):
    """Rate limiter using a refilling token bucket per key.

    When ``capacity`` or ``refill_rate`` are not configured they are derived
    per call from ``limit`` and ``limit / window_seconds``.
    """

    algorithm = "token-bucket"

    def __init__(
        self,
        store: AbstractKeyStore,
        *,
        capacity: int | None = None,
        refill_rate: float | None = None,
        max_cas_attempts: int = DEFAULT_MAX_CAS_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Key store holding bucket state.
            capacity: Maximum tokens in the bucket.
            refill_rate: Tokens added per second.
            max_cas_attempts: Swap attempts before a contended call is denied.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If capacity, refill_rate or max_cas_attempts are invalid.
        """
        super().__init__(store, clock=clock)

        if capacity is not None and capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate is not None and refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        if max_cas_attempts < 1:
            raise ValueError("max_cas_attempts must be >= 1")

        self._capacity = capacity
        self._refill_rate = refill_rate
        self._max_cas_attempts = max_cas_attempts

    def allow(self, limit_key: str, *, limit: int, window_seconds: float) -> RateLimitResult:
        self._validate(limit_key, limit, window_seconds)

        capacity = float(self._capacity or limit)
        refill_rate = self._refill_rate or limit / window_seconds
        key = self._counter_key(limit_key)
        # An expired bucket is indistinguishable from a full one.
        ttl = capacity / refill_rate + 1.0

        for _ in range(self._max_cas_attempts):
            now = self._clock()
            raw, found = self._store.get(key)
            expected: bytes | _Absent = raw if found and raw is not None else ABSENT
            tokens, last_refill_at = self._decode(raw if found else None, capacity, now)

            elapsed = max(0.0, now - last_refill_at)
            tokens = min(capacity, tokens + elapsed * refill_rate)
            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0

            state = json.dumps({"tokens": tokens, "ts": now}).encode()
            if self._store.compare_and_swap(key, expected, state, ttl):
                return self._build_result(allowed, tokens, capacity, refill_rate, now)

        logger.warning(
            "rate_limit.contended",
            extra={"algorithm": self.algorithm, "attempts": self._max_cas_attempts},
        )
        return self._build_blocked_result(now=now, limit=int(capacity), remaining=0, reset_at=now + 1.0 / refill_rate)

    @staticmethod
    def _decode(raw: bytes | None, capacity: float, now: float) -> tuple[float, float]:
        if raw is None:
            return capacity, now
        state = json.loads(raw)
        return float(state["tokens"]), float(state["ts"])

    def _build_result(
        self,
        allowed: bool,
        tokens: float,
        capacity: float,
        refill_rate: float,
        now: float,
    ) -> RateLimitResult:
        remaining = int(math.floor(tokens))
        reset_at = now + (1.0 - tokens) / refill_rate if tokens < 1.0 else now
        if allowed:
            return self._build_allowed_result(limit=int(capacity), remaining=remaining, reset_at=reset_at)
        return self._build_blocked_result(now=now, limit=int(capacity), remaining=remaining, reset_at=reset_at)
