"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a correlation id (taken from the
incoming header or generated) so admission decisions logged deep inside
the coordinators can be tied back to one request.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from admission.core.config import settings
from admission.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a request id for the request lifetime and echo it back.

    Adds the request id header (``LOG_REQUEST_ID_HEADER``, default
    ``X-Request-ID``) and ``X-Request-Duration-ms`` to the response, and
    clears the context afterwards to prevent leaks between requests.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
