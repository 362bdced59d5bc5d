"""OpenAPI customization for the admission layer.

The admission middleware adds behaviour FastAPI cannot see from route
signatures, so the generated schema is patched to document it:
- ``Idempotency-Key`` header on mutating operations
- 429 (rate limited) and idempotency error responses
- X-RateLimit-* response headers
- Health endpoints exempt from all of the above
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_MUTATING = {"post", "put", "patch", "delete"}

_RATE_LIMIT_HEADERS = {
    "X-RateLimit-Limit": {"description": "Requests allowed per window", "schema": {"type": "integer"}},
    "X-RateLimit-Remaining": {"description": "Requests left in the window", "schema": {"type": "integer"}},
    "X-RateLimit-Reset": {"description": "UNIX time the budget resets", "schema": {"type": "integer"}},
}

_IDEMPOTENCY_PARAMETER = {
    "name": "Idempotency-Key",
    "in": "header",
    "required": False,
    "description": (
        "Opaque client-generated key. Retries with the same key and payload "
        "replay the first response instead of executing again."
    ),
    "schema": {"type": "string", "maxLength": 255},
}


def _error_response(description: str, *, retry_after: bool = False) -> Dict[str, Any]:
    headers: Dict[str, Any] = dict(_RATE_LIMIT_HEADERS)
    if retry_after:
        headers["Retry-After"] = {"description": "Seconds to wait before retrying", "schema": {"type": "integer"}}
    return {
        "description": description,
        "headers": headers,
        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/AdmissionError"}}},
    }


def apply_openapi_customizations(app: FastAPI, *, conflict_status_code: int = 409) -> None:
    """Patch FastAPI's OpenAPI generation with admission behaviour."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        schemas = components.setdefault("schemas", {})
        schemas.setdefault(
            "AdmissionError",
            {
                "type": "object",
                "properties": {
                    "error": {
                        "type": "object",
                        "properties": {
                            "code": {"type": "string"},
                            "message": {"type": "string"},
                            "request_id": {"type": "string", "nullable": True},
                            "details": {"type": "object"},
                        },
                        "required": ["code", "message"],
                    }
                },
            },
        )

        tags = schema.setdefault("tags", [])
        if "Health" not in {t.get("name") for t in tags}:
            tags.append({"name": "Health", "description": "Liveness and readiness checks."})

        for path, methods in schema.get("paths", {}).items():
            if path.startswith("/health"):
                continue
            for method, operation in methods.items():
                if not isinstance(operation, dict):
                    continue
                responses = operation.setdefault("responses", {})
                responses.setdefault("429", _error_response("Rate limit exceeded", retry_after=True))
                if method in _MUTATING:
                    parameters = operation.setdefault("parameters", [])
                    if not any(p.get("name") == "Idempotency-Key" for p in parameters):
                        parameters.append(dict(_IDEMPOTENCY_PARAMETER))
                    responses.setdefault(
                        str(conflict_status_code),
                        _error_response(
                            "Idempotency key reused with a different payload, or the original "
                            "request is still in progress",
                        ),
                    )

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
