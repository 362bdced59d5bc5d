"""Stable digests for request fingerprints and log-safe key hashes."""

from __future__ import annotations

from hashlib import sha256


def compute_request_hash(method: str, path: str, body: bytes | None, *, query: str = "") -> str:
    """Build a stable fingerprint of the logical request payload.

    Used to detect an idempotency key reused for a different request.

    Args:
        method: HTTP method.
        path: Request path.
        body: Raw request body bytes.
        query: Raw query string.

    Returns:
        Hex-encoded SHA-256 digest string.
    """

    hasher = sha256()
    hasher.update(method.upper().encode())
    hasher.update(b"\n")
    hasher.update(path.encode())
    hasher.update(b"\n")
    hasher.update(query.encode())
    hasher.update(b"\n")
    if body:
        hasher.update(body)
    return hasher.hexdigest()


def hash_for_logging(value: str) -> str:
    """Hash a key for logging without exposing it."""
    return sha256(value.encode()).hexdigest()[:16]
