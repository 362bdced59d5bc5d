"""Application factory for the FastAPI app.

Centralizes app construction (store, coordinators, middleware, handlers,
routers) so every app instance gets its own injected admission state.
Host services pass their business routers in; the admission layer wraps
them without the routes knowing.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from fastapi import APIRouter, FastAPI

from admission.adapters.store.base import AbstractKeyStore
from admission.adapters.store.factory import create_key_store
from admission.api.routes import health_router
from admission.core.admission import admission_middleware, build_request_coordinator
from admission.core.config import Settings, settings
from admission.core.exception_handlers import setup_exception_handlers
from admission.core.logging import configure_logging
from admission.core.middleware import request_id_middleware
from admission.core.openapi import apply_openapi_customizations


def create_app(
    app_settings: Settings | None = None,
    *,
    store: AbstractKeyStore | None = None,
    routers: Iterable[APIRouter] = (),
    api_prefix: str = "/v1",
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to use; defaults to the global settings.
        store: Key store to use instead of the configured backend.
        routers: Business routers mounted under ``api_prefix``.
        api_prefix: Path prefix for business routers.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    cfg = app_settings or settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    key_store = store or create_key_store(cfg.store)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        key_store.close()

    app = FastAPI(
        title="Request Admission API",
        description=(
            "Rate limiting (fixed window, sliding window or token bucket) and "
            "Idempotency-Key deduplication for mutating requests, backed by an "
            "in-memory or Redis key store."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.key_store = key_store
    app.state.admission_settings = cfg.admission
    app.state.request_coordinator = build_request_coordinator(cfg.admission, key_store)

    # Middleware: the last one added runs first, so request ids are bound
    # before admission decisions are logged.
    app.middleware("http")(admission_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    for router in routers:
        app.include_router(router, prefix=api_prefix)
    app.include_router(health_router)

    apply_openapi_customizations(app, conflict_status_code=cfg.admission.conflict_status_code)

    return app
