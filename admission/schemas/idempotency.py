"""Idempotency record schema.

Records are stored in the key store as JSON. ``response_body`` is raw bytes
and travels base64-encoded.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class IdempotencyStatus(str, Enum):
    """Lifecycle state of an idempotency record."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyRecord(BaseModel):
    """Stored outcome of one logical operation, keyed by its idempotency key.

    ``request_hash`` is fixed at claim time and never rewritten.
    """

    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    idempotency_key: str = Field(..., description="Caller-supplied opaque key")
    request_hash: str = Field(..., description="Digest of the logical request payload")
    status: IdempotencyStatus = Field(IdempotencyStatus.PENDING, description="Lifecycle state")
    response_code: int | None = Field(None, description="Status code produced by the handler")
    response_body: bytes = Field(b"", description="Body produced by the handler")
    response_headers: list[tuple[str, str]] = Field(
        default_factory=list,
        description="Headers to replay as ordered (name, value) pairs",
    )
    error_code: str | None = Field(None, description="Machine-readable failure code (failed only)")
    error_message: str | None = Field(None, description="Failure message (failed only)")
    created_at: float = Field(..., description="UNIX time the key was claimed")
    expires_at: float = Field(..., description="UNIX time after which the record is absent")

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_bytes(cls, raw: bytes) -> "IdempotencyRecord":
        return cls.model_validate_json(raw)
