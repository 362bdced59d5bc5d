from __future__ import annotations

from admission.api.routes.health import router as health_router

__all__ = ["health_router"]
