"""Tests for the request coordinator (rate limit stage, then idempotency stage)."""

import asyncio
import time

import pytest

from admission.adapters.rate_limit.fixed_window import FixedWindowRateLimiter
from admission.adapters.store.in_memory import InMemoryKeyStore
from admission.core.errors import (
    HandlerExecutionFailedError,
    IdempotencyKeyConflictError,
    RateLimitExceededError,
    StoreUnavailableError,
    ValidationAppError,
)
from admission.core.logging import clear_request_id, get_request_id, set_request_id
from admission.services.idempotency_service import HandlerResponse, IdempotencyCoordinator
from admission.services.request_coordinator import (
    AdmissionRequest,
    RequestCoordinator,
    render_rate_limit_headers,
)


class DownStore(InMemoryKeyStore):
    """Store whose every operation fails as if the backend were unreachable."""

    def _down(self, *args, **kwargs):
        raise StoreUnavailableError(code="store_unavailable", message="Key store is unavailable")

    get = _down
    compare_and_swap = _down
    increment_with_expiry = _down


def _build(store, clock, *, limit: int = 2, **kwargs) -> RequestCoordinator:
    return RequestCoordinator(
        FixedWindowRateLimiter(store, clock=clock),
        IdempotencyCoordinator(store, pending_wait_timeout_seconds=0, clock=clock),
        limit=limit,
        window_seconds=60,
        clock=clock,
        **kwargs,
    )


def _handler(calls: list, status_code: int = 201, body: bytes = b"created"):
    def handler() -> HandlerResponse:
        calls.append(1)
        return HandlerResponse(status_code=status_code, body=body)

    return handler


def test_admits_and_attaches_rate_limit_headers(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock)
    calls: list = []

    outcome = coordinator.handle(AdmissionRequest(limit_key="ip:1.2.3.4", method="GET"), _handler(calls))

    assert calls == [1]
    assert outcome.status_code == 201
    assert outcome.replayed is False
    assert outcome.rate_limit.remaining == 1
    assert dict(outcome.headers)["X-RateLimit-Limit"] == "2"
    assert dict(outcome.headers)["X-RateLimit-Remaining"] == "1"
    assert dict(outcome.headers)["X-RateLimit-Reset"] == "1020"
    assert "Retry-After" not in dict(outcome.headers)


def test_headers_can_be_disabled(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, include_headers=False)

    outcome = coordinator.handle(AdmissionRequest(limit_key="ip:1.2.3.4", method="GET"), _handler([]))

    assert outcome.headers == []
    assert outcome.rate_limit.allowed is True


def test_rate_limit_blocks_before_idempotency(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=1)
    calls: list = []
    coordinator.handle(AdmissionRequest(limit_key="user:42", method="GET"), _handler(calls))

    request = AdmissionRequest(limit_key="user:42", idempotency_key="key-1", request_hash="hash-a")
    with pytest.raises(RateLimitExceededError) as exc_info:
        coordinator.handle(request, _handler(calls))

    exc = exc_info.value
    assert calls == [1]
    assert exc.status_code == 429
    assert exc.details["scope"] == "user"
    assert exc.details["limit"] == 1
    assert exc.details["retry_after"] == 20
    assert exc.headers["Retry-After"] == "20"
    assert exc.headers["X-RateLimit-Remaining"] == "0"
    # No idempotency record was created for the rejected request.
    assert memory_store.get("idem:key-1") == (None, False)


def test_mutating_request_with_key_is_deduplicated(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=10)
    calls: list = []
    request = AdmissionRequest(limit_key="ip:1.2.3.4", method="POST", idempotency_key="key-1", request_hash="hash-a")

    first = coordinator.handle(request, _handler(calls))
    second = coordinator.handle(request, _handler(calls))

    assert calls == [1]
    assert first.replayed is False
    assert second.replayed is True
    assert second.body == b"created"
    # Replays still consume rate limit budget.
    assert dict(second.headers)["X-RateLimit-Remaining"] == "8"


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"method": "GET", "idempotency_key": "key-1", "request_hash": "hash-a"},
        {"method": "POST"},
        {"method": "POST", "idempotency_key": "key-1", "request_hash": "hash-a", "mutating": False},
        {"method": "POST", "idempotency_key": "", "request_hash": "hash-a"},
    ],
)
def test_non_idempotent_requests_call_handler_directly(memory_store, clock, request_kwargs: dict) -> None:
    coordinator = _build(memory_store, clock, limit=10)
    calls: list = []
    request = AdmissionRequest(limit_key="ip:1.2.3.4", **request_kwargs)

    coordinator.handle(request, _handler(calls))
    coordinator.handle(request, _handler(calls))

    assert calls == [1, 1]
    assert memory_store.get("idem:key-1") == (None, False)


def test_missing_request_hash_is_rejected(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock)

    with pytest.raises(ValidationAppError) as exc_info:
        coordinator.handle(AdmissionRequest(limit_key="ip:1", idempotency_key="key-1"), _handler([]))

    assert exc_info.value.code == "missing_request_hash"


def test_idempotency_errors_carry_rate_limit_headers(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=10)
    coordinator.handle(
        AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-a"),
        _handler([]),
    )

    with pytest.raises(IdempotencyKeyConflictError) as exc_info:
        coordinator.handle(
            AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-b"),
            _handler([]),
        )

    assert exc_info.value.headers["X-RateLimit-Limit"] == "10"


def test_handler_failure_surfaces_with_headers(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=10)

    def _boom() -> HandlerResponse:
        raise RuntimeError("boom")

    with pytest.raises(HandlerExecutionFailedError) as exc_info:
        coordinator.handle(AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="h"), _boom)

    assert exc_info.value.status_code == 500
    assert "X-RateLimit-Remaining" in exc_info.value.headers


class TestStoreOutage:
    def test_rate_limit_fails_open_by_default(self, clock) -> None:
        coordinator = _build(DownStore(clock=clock), clock, limit=5)
        calls: list = []

        outcome = coordinator.handle(AdmissionRequest(limit_key="ip:1", method="GET"), _handler(calls))

        assert calls == [1]
        assert outcome.rate_limit.allowed is True
        assert outcome.rate_limit.remaining == 5

    def test_rate_limit_can_fail_closed(self, clock) -> None:
        coordinator = _build(DownStore(clock=clock), clock, rate_limit_fail_open=False)
        calls: list = []

        with pytest.raises(StoreUnavailableError):
            coordinator.handle(AdmissionRequest(limit_key="ip:1", method="GET"), _handler(calls))

        assert calls == []

    def test_idempotency_fails_closed_by_default(self, clock) -> None:
        coordinator = _build(DownStore(clock=clock), clock)
        calls: list = []
        request = AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-a")

        with pytest.raises(StoreUnavailableError) as exc_info:
            coordinator.handle(request, _handler(calls))

        assert calls == []
        assert exc_info.value.status_code == 503

    def test_idempotency_can_fail_open(self, clock) -> None:
        coordinator = _build(DownStore(clock=clock), clock, idempotency_fail_open=True)
        calls: list = []
        request = AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-a")

        outcome = coordinator.handle(request, _handler(calls))

        assert calls == [1]
        assert outcome.replayed is False


def test_handle_async_deduplicates(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=10)
    calls: list = []

    async def _handler_async() -> HandlerResponse:
        calls.append(1)
        return HandlerResponse(status_code=201, body=b"async")

    request = AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-a")

    async def _scenario():
        first = await coordinator.handle_async(request, _handler_async)
        second = await coordinator.handle_async(request, _handler_async)
        return first, second

    first, second = asyncio.run(_scenario())

    assert calls == [1]
    assert second.replayed is True
    assert second.body == b"async"


class SlowStore(InMemoryKeyStore):
    """In-memory store whose counter round trip blocks like a slow network call."""

    def __init__(self, *, delay: float, **kwargs) -> None:
        super().__init__(**kwargs)
        self.delay = delay
        self.seen_request_ids: list = []

    def increment_with_expiry(self, key: str, delta: int, ttl_if_new: float) -> int:
        self.seen_request_ids.append(get_request_id())
        time.sleep(self.delay)
        return super().increment_with_expiry(key, delta, ttl_if_new)


def test_handle_async_keeps_event_loop_responsive(clock) -> None:
    coordinator = _build(SlowStore(delay=0.3, clock=clock), clock, limit=10)

    async def _handler_async() -> HandlerResponse:
        return HandlerResponse(status_code=200, body=b"ok")

    async def _ticker(done: asyncio.Event) -> float:
        largest_gap = 0.0
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(0.05)
            now = time.monotonic()
            largest_gap = max(largest_gap, now - last)
            last = now
        return largest_gap

    async def _scenario():
        done = asyncio.Event()

        async def _admit():
            try:
                return await coordinator.handle_async(
                    AdmissionRequest(limit_key="ip:1", method="GET"), _handler_async
                )
            finally:
                done.set()

        return await asyncio.gather(_admit(), _ticker(done))

    outcome, largest_gap = asyncio.run(_scenario())

    assert outcome.status_code == 200
    assert largest_gap < 0.15


def test_handle_async_store_calls_see_request_id(clock) -> None:
    store = SlowStore(delay=0, clock=clock)
    coordinator = _build(store, clock, limit=10)

    async def _handler_async() -> HandlerResponse:
        return HandlerResponse(status_code=200, body=b"ok")

    async def _scenario():
        set_request_id("req-42")
        try:
            await coordinator.handle_async(AdmissionRequest(limit_key="ip:1", method="GET"), _handler_async)
        finally:
            clear_request_id()

    asyncio.run(_scenario())

    assert store.seen_request_ids == ["req-42"]


def test_repeated_response_headers_are_kept(memory_store, clock) -> None:
    coordinator = _build(memory_store, clock, limit=10)
    request = AdmissionRequest(limit_key="ip:1", idempotency_key="key-1", request_hash="hash-a")

    def handler() -> HandlerResponse:
        return HandlerResponse(
            status_code=201,
            body=b"created",
            headers=[
                ("Set-Cookie", "session=abc; Path=/"),
                ("Set-Cookie", "theme=dark; Path=/"),
                ("X-RateLimit-Remaining", "stale"),
            ],
        )

    first = coordinator.handle(request, handler)
    second = coordinator.handle(request, handler)

    for outcome in (first, second):
        cookies = [value for name, value in outcome.headers if name == "Set-Cookie"]
        assert cookies == ["session=abc; Path=/", "theme=dark; Path=/"]
        remaining = [value for name, value in outcome.headers if name == "X-RateLimit-Remaining"]
        assert len(remaining) == 1
    assert dict(second.headers)["X-RateLimit-Remaining"] == "8"
    assert second.replayed is True


def test_render_rate_limit_headers_for_blocked_result(memory_store, clock) -> None:
    limiter = FixedWindowRateLimiter(memory_store, clock=clock)
    limiter.allow("k", limit=1, window_seconds=60)
    blocked = limiter.allow("k", limit=1, window_seconds=60)

    headers = render_rate_limit_headers(blocked)

    assert headers == {
        "X-RateLimit-Limit": "1",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "1020",
        "Retry-After": "20",
    }
