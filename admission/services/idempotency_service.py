"""Idempotency coordinator guaranteeing at-most-once handler execution.

The first caller to claim an idempotency key (an atomic compare-and-swap
from absent to a pending record) becomes the owner and runs the handler.
Every other caller with the same key either replays the stored outcome,
waits for the owner to finish, or is rejected because it reused the key
for a different request.

Pending policy:
- Duplicates of an in-flight request wait up to ``pending_wait_timeout_seconds``
  and re-read the record every ``poll_interval_seconds`` (woken early when
  the store notifies on change). After the deadline they get a retryable
  ``PendingTimeoutError``. A timeout of 0 answers "still processing" at once.
- The pending record is an advisory claim, not a lock. If the owner dies it
  stays pending until its TTL elapses and the key becomes claimable again.

Failures are terminal too: a handler that raises leaves a ``failed`` record
and retries with the same key replay that failure instead of re-executing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from admission.adapters.store.base import ABSENT, AbstractKeyStore
from admission.core.errors import (
    AppError,
    HandlerExecutionFailedError,
    IdempotencyKeyConflictError,
    PendingTimeoutError,
    StoreUnavailableError,
    ValidationAppError,
)
from admission.schemas.idempotency import IdempotencyRecord, IdempotencyStatus
from admission.utils.concurrency import run_blocking
from admission.utils.hashing import hash_for_logging

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
MAX_IDEMPOTENCY_KEY_LENGTH = 255
# Terminal writes never shorten a record to less than this.
MIN_FINAL_TTL_SECONDS = 1.0
PENDING_RETRY_AFTER_SECONDS = 1


@dataclass(frozen=True)
class HandlerResponse:
    """What a wrapped handler produced.

    Headers are ordered ``(name, value)`` pairs so repeated headers such as
    ``Set-Cookie`` survive storage and replay.
    """

    status_code: int
    body: bytes = b""
    headers: list[tuple[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class IdempotentResponse:
    """Response returned by the coordinator, fresh or replayed."""

    status_code: int
    body: bytes
    headers: list[tuple[str, str]]
    replayed: bool


Handler = Callable[[], HandlerResponse]
AsyncHandler = Callable[[], Awaitable[HandlerResponse]]


class IdempotencyCoordinator:
    """Deduplicates mutating operations identified by an idempotency key.

    Holds no state of its own: every record lives in the injected key store,
    so several coordinators (threads, workers or instances) sharing a store
    cooperate correctly.
    """

    def __init__(
        self,
        store: AbstractKeyStore,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        pending_wait_timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.05,
        conflict_status_code: int = 409,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Key store holding idempotency records.
            ttl_seconds: Record lifetime, counted from the claim.
            pending_wait_timeout_seconds: Max wait on an in-flight duplicate.
            poll_interval_seconds: Re-read interval while waiting.
            conflict_status_code: HTTP status for key reuse with another payload.
            clock: Wall clock used for record timestamps.
            monotonic: Clock used for wait deadlines.

        Raises:
            ValueError: If any duration is invalid.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if pending_wait_timeout_seconds < 0:
            raise ValueError("pending_wait_timeout_seconds must be >= 0")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

        self._store = store
        self._ttl = ttl_seconds
        self._wait_timeout = pending_wait_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._conflict_status_code = conflict_status_code
        self._clock = clock
        self._monotonic = monotonic

    def execute(self, idempotency_key: str, request_hash: str, handler: Handler) -> IdempotentResponse:
        """Run ``handler`` at most once for ``idempotency_key``.

        Args:
            idempotency_key: Caller-supplied opaque key.
            request_hash: Digest of the logical request payload.
            handler: Performs the mutating operation.

        Returns:
            IdempotentResponse with the fresh or replayed outcome.

        Raises:
            ValidationAppError: If the key or hash is malformed.
            IdempotencyKeyConflictError: Key already used with another payload.
            HandlerExecutionFailedError: Handler raised, now or on the first run.
            PendingTimeoutError: The in-flight owner did not finish in time.
            StoreUnavailableError: The key store cannot be reached.
        """
        self._validate(idempotency_key, request_hash)
        store_key = self._store_key(idempotency_key)
        deadline = self._monotonic() + self._wait_timeout

        while True:
            claim = self._try_claim(store_key, idempotency_key, request_hash)
            if claim is not None:
                return self._run_owner(store_key, claim, handler)

            record = self._read(store_key)
            if record is None:
                # Expired between the claim attempt and the read.
                continue

            response = self._resolve_existing(idempotency_key, request_hash, record)
            if response is not None:
                return response

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                raise self._pending_timeout(idempotency_key)
            self._store.wait_for_change(store_key, min(remaining, self._poll_interval))

    async def execute_async(
        self,
        idempotency_key: str,
        request_hash: str,
        handler: AsyncHandler,
    ) -> IdempotentResponse:
        """Coroutine variant of :meth:`execute` for async handlers.

        Store round trips run in the default thread pool so a slow or remote
        store never stalls the event loop. Waiting on an in-flight duplicate
        polls with ``asyncio.sleep``, so cancelling the waiting task simply
        stops the wait.
        """
        self._validate(idempotency_key, request_hash)
        store_key = self._store_key(idempotency_key)
        deadline = self._monotonic() + self._wait_timeout

        while True:
            claim = await run_blocking(self._try_claim, store_key, idempotency_key, request_hash)
            if claim is not None:
                return await self._run_owner_async(store_key, claim, handler)

            record = await run_blocking(self._read, store_key)
            if record is None:
                continue

            response = self._resolve_existing(idempotency_key, request_hash, record)
            if response is not None:
                return response

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                raise self._pending_timeout(idempotency_key)
            await asyncio.sleep(min(remaining, self._poll_interval))

    def get_record(self, idempotency_key: str) -> IdempotencyRecord | None:
        """Return the current record for a key, if any."""
        return self._read(self._store_key(idempotency_key))

    @staticmethod
    def _store_key(idempotency_key: str) -> str:
        return f"idem:{idempotency_key}"

    @staticmethod
    def _validate(idempotency_key: str, request_hash: str) -> None:
        if not idempotency_key or len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValidationAppError(
                code="invalid_idempotency_key",
                message=f"Idempotency-Key must be 1 to {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                details={"hint": "Send a unique opaque value (e.g. a UUID) per logical operation"},
            )
        if not request_hash:
            raise ValidationAppError(
                code="invalid_request_hash",
                message="request_hash must be a non-empty string",
            )

    def _try_claim(
        self,
        store_key: str,
        idempotency_key: str,
        request_hash: str,
    ) -> tuple[IdempotencyRecord, bytes] | None:
        now = self._clock()
        pending = IdempotencyRecord(
            idempotency_key=idempotency_key,
            request_hash=request_hash,
            status=IdempotencyStatus.PENDING,
            created_at=now,
            expires_at=now + self._ttl,
        )
        raw = pending.to_bytes()
        if not self._store.compare_and_swap(store_key, ABSENT, raw, self._ttl):
            return None

        logger.info(
            "idempotency.claimed",
            extra={"idempotency_key_hash": hash_for_logging(idempotency_key), "ttl_s": self._ttl},
        )
        return pending, raw

    def _read(self, store_key: str) -> IdempotencyRecord | None:
        raw, found = self._store.get(store_key)
        if not found or raw is None:
            return None
        return IdempotencyRecord.from_bytes(raw)

    def _resolve_existing(
        self,
        idempotency_key: str,
        request_hash: str,
        record: IdempotencyRecord,
    ) -> IdempotentResponse | None:
        """Replay, reject or (by returning None) signal that the owner is still running."""
        key_hash = hash_for_logging(idempotency_key)

        if record.request_hash != request_hash:
            logger.warning(
                "idempotency.conflict",
                extra={"idempotency_key_hash": key_hash, "status": record.status.value},
            )
            error = IdempotencyKeyConflictError(
                code="idempotency_key_conflict",
                message="Idempotency key was already used with a different request payload",
                details={
                    "conflicting_key": idempotency_key,
                    "hint": "Use a new Idempotency-Key for a different request",
                },
            )
            error.status_code = self._conflict_status_code
            raise error

        if record.status is IdempotencyStatus.COMPLETED:
            logger.info(
                "idempotency.replayed",
                extra={"idempotency_key_hash": key_hash, "status_code": record.response_code},
            )
            return IdempotentResponse(
                status_code=record.response_code or 200,
                body=record.response_body,
                headers=list(record.response_headers),
                replayed=True,
            )

        if record.status is IdempotencyStatus.FAILED:
            logger.info(
                "idempotency.replayed_failure",
                extra={"idempotency_key_hash": key_hash, "error_code": record.error_code},
            )
            raise self._failure_error(record, replayed=True)

        return None

    def _run_owner(
        self,
        store_key: str,
        claim: tuple[IdempotencyRecord, bytes],
        handler: Handler,
    ) -> IdempotentResponse:
        try:
            response = handler()
        except BaseException as exc:
            failed = self._record_failure(store_key, claim, exc)
            if isinstance(exc, Exception):
                raise self._failure_error(failed, replayed=False) from exc
            raise
        return self._record_success(store_key, claim, response)

    async def _run_owner_async(
        self,
        store_key: str,
        claim: tuple[IdempotencyRecord, bytes],
        handler: AsyncHandler,
    ) -> IdempotentResponse:
        try:
            response = await handler()
        except BaseException as exc:
            # Cancellation included: a prompt retry must not wait for the TTL.
            failed = await run_blocking(self._record_failure, store_key, claim, exc)
            if isinstance(exc, Exception):
                raise self._failure_error(failed, replayed=False) from exc
            raise
        return await run_blocking(self._record_success, store_key, claim, response)

    def _record_success(
        self,
        store_key: str,
        claim: tuple[IdempotencyRecord, bytes],
        response: HandlerResponse,
    ) -> IdempotentResponse:
        pending, _ = claim
        completed = pending.model_copy(
            update={
                "status": IdempotencyStatus.COMPLETED,
                "response_code": response.status_code,
                "response_body": response.body,
                "response_headers": list(response.headers),
            }
        )
        self._finalize(store_key, claim, completed)
        logger.info(
            "idempotency.completed",
            extra={
                "idempotency_key_hash": hash_for_logging(pending.idempotency_key),
                "status_code": response.status_code,
            },
        )
        return IdempotentResponse(
            status_code=response.status_code,
            body=response.body,
            headers=list(response.headers),
            replayed=False,
        )

    def _record_failure(
        self,
        store_key: str,
        claim: tuple[IdempotencyRecord, bytes],
        exc: BaseException,
    ) -> IdempotencyRecord:
        pending, _ = claim
        if isinstance(exc, AppError):
            status_code, error_code, message = exc.status_code, exc.code, exc.message
        elif isinstance(exc, Exception):
            status_code, error_code, message = 500, "handler_execution_failed", "Handler execution failed"
        else:
            status_code, error_code, message = 500, "handler_cancelled", "Handler was cancelled before completing"

        failed = pending.model_copy(
            update={
                "status": IdempotencyStatus.FAILED,
                "response_code": status_code,
                "error_code": error_code,
                "error_message": message,
            }
        )
        logger.warning(
            "idempotency.failed",
            extra={
                "idempotency_key_hash": hash_for_logging(pending.idempotency_key),
                "error_code": error_code,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        self._finalize(store_key, claim, failed)
        return failed

    def _finalize(
        self,
        store_key: str,
        claim: tuple[IdempotencyRecord, bytes],
        final: IdempotencyRecord,
    ) -> None:
        """Replace our pending record with the terminal one.

        Swaps from the exact pending bytes so a record re-claimed by another
        owner after our TTL ran out is never overwritten. The request hash
        and expiry carry over from the claim.
        """
        pending, pending_raw = claim
        key_hash = hash_for_logging(pending.idempotency_key)
        ttl = max(pending.expires_at - self._clock(), MIN_FINAL_TTL_SECONDS)
        final_raw = final.to_bytes()

        try:
            if self._store.compare_and_swap(store_key, pending_raw, final_raw, ttl):
                return
            if self._store.compare_and_swap(store_key, ABSENT, final_raw, ttl):
                logger.warning("idempotency.finalized_after_expiry", extra={"idempotency_key_hash": key_hash})
                return
        except StoreUnavailableError:
            # The handler already ran; its result still goes back to the caller.
            logger.error(
                "idempotency.finalize_failed",
                extra={"idempotency_key_hash": key_hash, "status": final.status.value},
            )
            return

        logger.warning("idempotency.finalize_superseded", extra={"idempotency_key_hash": key_hash})

    @staticmethod
    def _failure_error(record: IdempotencyRecord, *, replayed: bool) -> HandlerExecutionFailedError:
        error = HandlerExecutionFailedError(
            code="handler_execution_failed",
            message=record.error_message or "Handler execution failed",
            details={
                "idempotency_key": record.idempotency_key,
                "replayed": replayed,
                "context": {"error_code": record.error_code},
            },
        )
        error.status_code = record.response_code or 500
        return error

    def _pending_timeout(self, idempotency_key: str) -> PendingTimeoutError:
        retry_after = PENDING_RETRY_AFTER_SECONDS
        logger.info(
            "idempotency.pending_timeout",
            extra={
                "idempotency_key_hash": hash_for_logging(idempotency_key),
                "wait_timeout_s": self._wait_timeout,
            },
        )
        return PendingTimeoutError(
            code="idempotency_request_in_progress",
            message="A request with this idempotency key is still being processed. Retry later.",
            details={"idempotency_key": idempotency_key, "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
