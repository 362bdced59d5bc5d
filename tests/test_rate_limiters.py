"""Unit tests for the fixed window, sliding window and token bucket limiters."""

import threading

import pytest

from admission.adapters.rate_limit.base import RateLimitResult
from admission.adapters.rate_limit.factory import create_rate_limiter
from admission.adapters.rate_limit.fixed_window import FixedWindowRateLimiter
from admission.adapters.rate_limit.sliding_window import SlidingWindowRateLimiter
from admission.adapters.rate_limit.token_bucket import TokenBucketRateLimiter
from admission.adapters.store.in_memory import InMemoryKeyStore
from admission.core.errors import ValidationAppError


def _burst(limiter, count: int, *, limit: int = 10, window: float = 60) -> list[RateLimitResult]:
    return [limiter.allow("ip:1.2.3.4", limit=limit, window_seconds=window) for _ in range(count)]


class TestFixedWindow:
    def test_allows_up_to_limit_then_blocks(self, memory_store, clock) -> None:
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        results = _burst(limiter, 4, limit=3)

        assert [r.allowed for r in results] == [True, True, True, False]
        assert results[2].remaining == 0
        blocked = results[3]
        assert blocked.retry_after_seconds is not None
        assert blocked.retry_after_seconds > 0

    def test_reset_at_is_start_of_next_bucket(self, memory_store, clock) -> None:
        clock.set(1_030.0)
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        result = limiter.allow("k", limit=5, window_seconds=60)

        assert result.reset_at == 1_080
        assert result.remaining == 4
        assert result.retry_after_seconds is None

    def test_resets_on_new_window(self, memory_store, clock) -> None:
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        assert limiter.allow("k", limit=1, window_seconds=10).allowed is True
        assert limiter.allow("k", limit=1, window_seconds=10).allowed is False

        clock.advance(10)
        assert limiter.allow("k", limit=1, window_seconds=10).allowed is True

    def test_boundary_burst_allows_twice_the_limit(self, memory_store, clock) -> None:
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        clock.set(59.9)
        before = _burst(limiter, 10)
        clock.set(60.1)
        after = _burst(limiter, 10)

        assert all(r.allowed for r in before + after)

    def test_isolated_by_key(self, memory_store, clock) -> None:
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        assert limiter.allow("k1", limit=1, window_seconds=60).allowed is True
        assert limiter.allow("k1", limit=1, window_seconds=60).allowed is False
        assert limiter.allow("k2", limit=1, window_seconds=60).allowed is True

    def test_counter_key_layout(self, memory_store, clock) -> None:
        clock.set(125.0)
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)

        limiter.allow("user:42", limit=5, window_seconds=60)

        assert memory_store.get("ratelimit:fixed:user:42:2") == (b"1", True)

    def test_counter_expires_with_window(self, memory_store, clock) -> None:
        limiter = FixedWindowRateLimiter(memory_store, clock=clock)
        clock.set(0.0)
        limiter.allow("k", limit=5, window_seconds=60)

        clock.set(60.0)
        assert memory_store.get("ratelimit:fixed:k:0") == (None, False)


class TestSlidingWindow:
    def test_steady_rate_at_limit_is_never_denied(self, memory_store, clock) -> None:
        limiter = SlidingWindowRateLimiter(memory_store, clock=clock)

        for window in range(1, 6):
            for slot in range(10):
                clock.set(window * 60 + 3 + slot * 6)
                result = limiter.allow("k", limit=10, window_seconds=60)
                assert result.allowed, f"denied in window {window}, slot {slot}"

    def test_boundary_burst_is_cut_to_about_the_limit(self, memory_store, clock) -> None:
        limiter = SlidingWindowRateLimiter(memory_store, clock=clock)

        clock.set(59.9)
        before = _burst(limiter, 10)
        clock.set(60.1)
        after = _burst(limiter, 10)

        allowed = sum(r.allowed for r in before + after)
        assert all(r.allowed for r in before)
        assert allowed == 11
        assert sum(not r.allowed for r in after) == 9

    def test_fixed_window_allows_what_sliding_window_denies(self, clock) -> None:
        fixed = FixedWindowRateLimiter(InMemoryKeyStore(clock=clock), clock=clock)
        sliding = SlidingWindowRateLimiter(InMemoryKeyStore(clock=clock), clock=clock)

        outcomes = {}
        for name, limiter in (("fixed", fixed), ("sliding", sliding)):
            clock.set(59.9)
            results = _burst(limiter, 10)
            clock.set(60.1)
            results += _burst(limiter, 10)
            outcomes[name] = sum(r.allowed for r in results)

        assert outcomes["fixed"] == 20
        assert outcomes["sliding"] < outcomes["fixed"]

    def test_previous_window_weight_decays(self, memory_store, clock) -> None:
        limiter = SlidingWindowRateLimiter(memory_store, clock=clock)
        clock.set(0.0)
        _burst(limiter, 10)

        # Halfway through the next window half of the previous count still applies.
        clock.set(90.0)
        results = _burst(limiter, 6)

        assert [r.allowed for r in results] == [True] * 5 + [False]

    def test_reports_end_of_current_window(self, memory_store, clock) -> None:
        clock.set(130.0)
        limiter = SlidingWindowRateLimiter(memory_store, clock=clock)

        result = limiter.allow("k", limit=10, window_seconds=60)

        assert result.reset_at == 180
        assert result.remaining == 9


class TestTokenBucket:
    def test_burst_then_one_per_second(self, memory_store, clock) -> None:
        limiter = TokenBucketRateLimiter(memory_store, capacity=5, refill_rate=1.0, clock=clock)

        burst = _burst(limiter, 6, limit=5)
        assert [r.allowed for r in burst] == [True] * 5 + [False]
        assert burst[5].retry_after_seconds == 1

        for _ in range(3):
            clock.advance(1)
            assert limiter.allow("ip:1.2.3.4", limit=5, window_seconds=60).allowed is True
            assert limiter.allow("ip:1.2.3.4", limit=5, window_seconds=60).allowed is False

    def test_idle_bucket_refills_only_to_capacity(self, memory_store, clock) -> None:
        limiter = TokenBucketRateLimiter(memory_store, capacity=5, refill_rate=1.0, clock=clock)
        _burst(limiter, 5, limit=5)

        clock.advance(3_600)

        assert [r.allowed for r in _burst(limiter, 6, limit=5)] == [True] * 5 + [False]

    def test_denied_calls_still_advance_refill_clock(self, memory_store, clock) -> None:
        limiter = TokenBucketRateLimiter(memory_store, capacity=1, refill_rate=1.0, clock=clock)
        assert limiter.allow("k", limit=1, window_seconds=1).allowed is True

        clock.advance(0.5)
        denied = limiter.allow("k", limit=1, window_seconds=1)
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.reset_at == 1_001

        clock.advance(0.5)
        assert limiter.allow("k", limit=1, window_seconds=1).allowed is True

    def test_derives_capacity_and_rate_from_limit(self, memory_store, clock) -> None:
        limiter = TokenBucketRateLimiter(memory_store, clock=clock)

        results = _burst(limiter, 3, limit=2, window=10)
        assert [r.allowed for r in results] == [True, True, False]
        assert results[0].limit == 2

        clock.advance(5)  # 0.2 tokens/s
        assert limiter.allow("ip:1.2.3.4", limit=2, window_seconds=10).allowed is True

    def test_concurrent_callers_never_overdraw(self) -> None:
        store = InMemoryKeyStore()
        limiter = TokenBucketRateLimiter(store, capacity=50, refill_rate=0.001, max_cas_attempts=1_000)
        allowed: list[bool] = []
        lock = threading.Lock()

        def _call() -> None:
            result = limiter.allow("shared", limit=50, window_seconds=60)
            with lock:
                allowed.append(result.allowed)

        threads = [threading.Thread(target=_call) for _ in range(100)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(allowed) == 50

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"capacity": 0},
            {"refill_rate": 0},
            {"max_cas_attempts": 0},
        ],
    )
    def test_invalid_constructor_args(self, memory_store, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(memory_store, **kwargs)


@pytest.mark.parametrize(
    "limiter_cls",
    [FixedWindowRateLimiter, SlidingWindowRateLimiter, TokenBucketRateLimiter],
)
def test_invalid_allow_args(memory_store, limiter_cls) -> None:
    limiter = limiter_cls(memory_store)

    with pytest.raises(ValueError):
        limiter.allow("", limit=1, window_seconds=60)
    with pytest.raises(ValueError):
        limiter.allow("k", limit=0, window_seconds=60)
    with pytest.raises(ValueError):
        limiter.allow("k", limit=1, window_seconds=0)


@pytest.mark.parametrize(
    ("algorithm", "expected_cls"),
    [
        ("fixed", FixedWindowRateLimiter),
        ("sliding", SlidingWindowRateLimiter),
        ("token-bucket", TokenBucketRateLimiter),
        ("Token-Bucket", TokenBucketRateLimiter),
    ],
)
def test_factory_selects_algorithm(memory_store, algorithm: str, expected_cls) -> None:
    assert isinstance(create_rate_limiter(algorithm, memory_store), expected_cls)


def test_factory_rejects_unknown_algorithm(memory_store) -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        create_rate_limiter("leaky-bucket", memory_store)

    assert exc_info.value.code == "rate_limit_unknown_algorithm"
