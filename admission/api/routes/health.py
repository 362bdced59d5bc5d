from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check: the process is up."""

    return {"status": "ok"}


@router.get("/health/ready")
def readiness_check(request: Request) -> JSONResponse:
    """Readiness check: the key store backing admission is reachable.

    Returns 503 when the store does not answer a ping, so load balancers can
    take the instance out of rotation.
    """

    store = getattr(request.app.state, "key_store", None)
    backend = getattr(store, "backend_name", "none")
    if store is not None and not store.ping():
        return JSONResponse(status_code=503, content={"status": "unavailable", "store": backend})
    return JSONResponse(status_code=200, content={"status": "ok", "store": backend})
