"""Request coordinator sequencing rate limiting and idempotent execution.

This is the single entry point the HTTP layer calls per inbound request:

1. Rate limiting gates first, before any side-effecting work (including
   idempotency record creation). A denied request never reaches stage 2.
2. Mutating requests carrying an idempotency key run through the
   idempotency coordinator; everything else calls the handler directly.
3. Rate limit metadata is attached to the outcome and to any application
   error raised along the way.

Store outages follow explicit policies: the rate limit path fails open by
default (availability), the idempotency path fails closed (safety).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from admission.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from admission.core.errors import AppError, RateLimitExceededError, StoreUnavailableError, ValidationAppError
from admission.services.idempotency_service import (
    AsyncHandler,
    Handler,
    IdempotencyCoordinator,
    IdempotentResponse,
)
from admission.utils.concurrency import run_blocking
from admission.utils.hashing import hash_for_logging

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class AdmissionRequest:
    """What the coordinator needs to know about an inbound request.

    Attributes:
        limit_key: Namespaced caller identity (e.g. ``api_key:...``, ``ip:...``).
        method: HTTP method, used to classify mutating requests.
        idempotency_key: Value of the Idempotency-Key header, if any.
        request_hash: Digest of the logical request payload.
        mutating: Explicit classification overriding the method.
    """

    limit_key: str
    method: str = "POST"
    idempotency_key: str | None = None
    request_hash: str | None = None
    mutating: bool | None = None

    @property
    def is_mutating(self) -> bool:
        if self.mutating is not None:
            return self.mutating
        return self.method.upper() in MUTATING_METHODS


@dataclass(frozen=True)
class AdmissionOutcome:
    """Final response plus the rate limit decision that admitted it."""

    status_code: int
    body: bytes
    headers: list[tuple[str, str]]
    rate_limit: RateLimitResult
    replayed: bool = False


def render_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Render X-RateLimit-* headers (and Retry-After when blocked)."""

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if not result.allowed and result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


def _limit_scope(limit_key: str) -> str:
    scope, sep, _ = limit_key.partition(":")
    return scope if sep else "key"


class RequestCoordinator:
    """Composes a rate limiter and an idempotency coordinator.

    Holds configuration only; all state lives in the stores behind the two
    collaborators.
    """

    def __init__(
        self,
        rate_limiter: AbstractRateLimiter,
        idempotency: IdempotencyCoordinator,
        *,
        limit: int,
        window_seconds: float,
        rate_limit_fail_open: bool = True,
        idempotency_fail_open: bool = False,
        include_headers: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._idempotency = idempotency
        self._limit = limit
        self._window_seconds = window_seconds
        self._rate_limit_fail_open = rate_limit_fail_open
        self._idempotency_fail_open = idempotency_fail_open
        self._include_headers = include_headers
        self._clock = clock

    def handle(self, request: AdmissionRequest, handler: Handler) -> AdmissionOutcome:
        """Admit and execute one request.

        Args:
            request: Request classification and identity.
            handler: Performs the business operation.

        Returns:
            AdmissionOutcome with the response and rendered headers.

        Raises:
            RateLimitExceededError: The limiting key is over budget.
            AppError: Any idempotency or handler error, with rate limit headers.
        """
        rate = self.check_rate_limit(request.limit_key)
        headers = self._headers(rate)

        idempotency_key = self._idempotency_key(request)
        try:
            if idempotency_key is not None:
                response = self._execute_idempotent(idempotency_key, request, handler)
            else:
                response = self._as_response(handler())
        except AppError as exc:
            exc.headers = {**headers, **(exc.headers or {})}
            raise

        return self._outcome(response, rate, headers)

    async def handle_async(self, request: AdmissionRequest, handler: AsyncHandler) -> AdmissionOutcome:
        """Coroutine variant of :meth:`handle` for async handlers.

        The rate limit check runs in the default thread pool, like every store
        round trip on this path, so the event loop keeps serving other requests.
        """
        rate = await run_blocking(self.check_rate_limit, request.limit_key)
        headers = self._headers(rate)

        idempotency_key = self._idempotency_key(request)
        try:
            if idempotency_key is not None:
                response = await self._execute_idempotent_async(idempotency_key, request, handler)
            else:
                response = self._as_response(await handler())
        except AppError as exc:
            exc.headers = {**headers, **(exc.headers or {})}
            raise

        return self._outcome(response, rate, headers)

    def check_rate_limit(self, limit_key: str) -> RateLimitResult:
        """Run the rate limit stage alone.

        Raises:
            RateLimitExceededError: The limiting key is over budget.
            StoreUnavailableError: The store is down and the policy is fail-closed.
        """
        key_hash = hash_for_logging(limit_key)
        scope = _limit_scope(limit_key)

        try:
            result = self._rate_limiter.allow(
                limit_key,
                limit=self._limit,
                window_seconds=self._window_seconds,
            )
        except StoreUnavailableError:
            if not self._rate_limit_fail_open:
                raise
            logger.warning(
                "rate_limit.fail_open",
                extra={"key_type": scope, "key_hash": key_hash},
            )
            return RateLimitResult(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                reset_at=int(self._clock() + self._window_seconds),
                retry_after_seconds=None,
            )

        if result.allowed:
            logger.info(
                "rate_limit.allowed",
                extra={
                    "key_type": scope,
                    "key_hash": key_hash,
                    "limit": result.limit,
                    "remaining": result.remaining,
                    "window_s": self._window_seconds,
                },
            )
            return result

        retry_after = result.retry_after_seconds or 0
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_type": scope,
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "window_s": self._window_seconds,
                "retry_after_s": retry_after,
            },
        )
        raise RateLimitExceededError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Try again later.",
            details={
                "scope": scope,
                "reset_at": result.reset_at,
                "retry_after": retry_after,
                "limit": result.limit,
            },
            headers=self._headers(result) or None,
        )

    @staticmethod
    def _idempotency_key(request: AdmissionRequest) -> str | None:
        if request.is_mutating and request.idempotency_key:
            return request.idempotency_key
        return None

    def _require_hash(self, request: AdmissionRequest) -> str:
        if not request.request_hash:
            raise ValidationAppError(
                code="missing_request_hash",
                message="Idempotent requests need a request hash",
            )
        return request.request_hash

    def _execute_idempotent(
        self,
        idempotency_key: str,
        request: AdmissionRequest,
        handler: Handler,
    ) -> IdempotentResponse:
        request_hash = self._require_hash(request)
        try:
            return self._idempotency.execute(idempotency_key, request_hash, handler)
        except StoreUnavailableError:
            if not self._idempotency_fail_open:
                raise
            self._log_idempotency_fail_open(idempotency_key)
        return self._as_response(handler())

    async def _execute_idempotent_async(
        self,
        idempotency_key: str,
        request: AdmissionRequest,
        handler: AsyncHandler,
    ) -> IdempotentResponse:
        request_hash = self._require_hash(request)
        try:
            return await self._idempotency.execute_async(idempotency_key, request_hash, handler)
        except StoreUnavailableError:
            if not self._idempotency_fail_open:
                raise
            self._log_idempotency_fail_open(idempotency_key)
        return self._as_response(await handler())

    @staticmethod
    def _log_idempotency_fail_open(idempotency_key: str) -> None:
        logger.warning(
            "idempotency.fail_open",
            extra={"idempotency_key_hash": hash_for_logging(idempotency_key)},
        )

    @staticmethod
    def _as_response(response) -> IdempotentResponse:
        return IdempotentResponse(
            status_code=response.status_code,
            body=response.body,
            headers=list(response.headers),
            replayed=False,
        )

    def _headers(self, result: RateLimitResult) -> dict[str, str]:
        if not self._include_headers:
            return {}
        return render_rate_limit_headers(result)

    @staticmethod
    def _outcome(response: IdempotentResponse, rate: RateLimitResult, headers: dict[str, str]) -> AdmissionOutcome:
        rendered = {name.lower() for name in headers}
        merged = [(name, value) for name, value in response.headers if name.lower() not in rendered]
        return AdmissionOutcome(
            status_code=response.status_code,
            body=response.body,
            headers=merged + list(headers.items()),
            rate_limit=rate,
            replayed=response.replayed,
        )
