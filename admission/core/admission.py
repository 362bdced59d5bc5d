"""HTTP boundary for the request admission core.

This module wires the request coordinator into the FastAPI request cycle.

Design goals:
- Minimal coupling: routes know nothing about rate limits or idempotency;
  the middleware wraps the downstream route as the coordinator's handler.
- Injected state: the coordinator is built once per app by the app factory
  and read from ``app.state`` (no module-level limiter or cache).
- Safe keys: raw API keys and idempotency keys are only ever logged hashed.

Limiting key: X-API-Key when present, else X-User-ID, else the client IP.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from admission.adapters.rate_limit.factory import create_rate_limiter
from admission.adapters.store.base import AbstractKeyStore
from admission.core.config import AdmissionSettings
from admission.core.errors import AppError
from admission.core.exception_handlers import build_error_response
from admission.services.idempotency_service import HandlerResponse, IdempotencyCoordinator
from admission.services.request_coordinator import AdmissionRequest, RequestCoordinator
from admission.utils.hashing import compute_request_hash

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"

# Per-response headers that must not be stored and replayed.
_UNCACHED_HEADERS = frozenset(
    {
        "content-length",
        "date",
        "server",
        "x-request-id",
        "x-request-duration-ms",
        "x-ratelimit-limit",
        "x-ratelimit-remaining",
        "x-ratelimit-reset",
        "retry-after",
    }
)


def build_request_coordinator(admission_settings: AdmissionSettings, store: AbstractKeyStore) -> RequestCoordinator:
    """Assemble limiter, idempotency coordinator and request coordinator on one store."""

    rate_limiter = create_rate_limiter(
        admission_settings.algorithm,
        store,
        bucket_capacity=admission_settings.bucket_capacity,
        refill_rate=admission_settings.refill_rate,
    )
    idempotency = IdempotencyCoordinator(
        store,
        ttl_seconds=admission_settings.idempotency_ttl_seconds,
        pending_wait_timeout_seconds=admission_settings.pending_wait_timeout_seconds,
        poll_interval_seconds=admission_settings.pending_poll_interval_seconds,
        conflict_status_code=admission_settings.conflict_status_code,
    )
    return RequestCoordinator(
        rate_limiter,
        idempotency,
        limit=admission_settings.limit,
        window_seconds=admission_settings.window_seconds,
        rate_limit_fail_open=admission_settings.rate_limit_fail_open,
        idempotency_fail_open=admission_settings.idempotency_fail_open,
        include_headers=admission_settings.include_headers,
    )


def build_limit_key(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Build the namespaced limiting key for the current request.

    Args:
        request: FastAPI request.
        trust_forwarded_for: Use the first X-Forwarded-For hop as client IP.

    Returns:
        str: ``api_key:...``, ``user:...`` or ``ip:...``.
    """

    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"api_key:{api_key}"

    user_id = request.headers.get("X-User-ID")
    if user_id:
        return f"user:{user_id}"

    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"


def build_admission_request(
    request: Request,
    body: bytes,
    *,
    trust_forwarded_for: bool = False,
) -> AdmissionRequest:
    """Classify an HTTP request for the coordinator."""

    idempotency_key = request.headers.get(IDEMPOTENCY_HEADER) or None
    request_hash = None
    if idempotency_key:
        request_hash = compute_request_hash(
            request.method,
            request.url.path,
            body,
            query=request.url.query,
        )
    return AdmissionRequest(
        limit_key=build_limit_key(request, trust_forwarded_for=trust_forwarded_for),
        method=request.method,
        idempotency_key=idempotency_key,
        request_hash=request_hash,
    )


async def admission_middleware(request: Request, call_next) -> Response:
    """Run every non-exempt request through the request coordinator.

    The downstream route becomes the handler: its response is buffered so
    it can be stored for replay. Admission errors (429, 409, 503, handler
    failures) are rendered here because middleware errors bypass the
    app's exception handlers.
    """

    coordinator: RequestCoordinator | None = getattr(request.app.state, "request_coordinator", None)
    admission_settings: AdmissionSettings | None = getattr(request.app.state, "admission_settings", None)

    if (
        coordinator is None
        or admission_settings is None
        or not admission_settings.enabled
        or request.url.path in admission_settings.exempt_paths
    ):
        return await call_next(request)

    body = await request.body()
    admission_request = build_admission_request(
        request,
        body,
        trust_forwarded_for=admission_settings.trust_forwarded_for,
    )

    async def handler() -> HandlerResponse:
        downstream = await call_next(request)
        content = b"".join([chunk async for chunk in downstream.body_iterator])
        # items() keeps repeated fields such as Set-Cookie.
        headers = [
            (name, value)
            for name, value in downstream.headers.items()
            if name.lower() not in _UNCACHED_HEADERS
        ]
        return HandlerResponse(status_code=downstream.status_code, body=content, headers=headers)

    try:
        outcome = await coordinator.handle_async(admission_request, handler)
    except AppError as exc:
        return build_error_response(exc)

    response = Response(content=outcome.body, status_code=outcome.status_code)
    for name, value in outcome.headers:
        response.headers.append(name, value)
    if outcome.replayed:
        response.headers[REPLAYED_HEADER] = "true"
    return response
