"""Redis-backed key store.

Suitable for deployments where multiple application instances share rate
limit counters and idempotency records. Expiry uses Redis' native TTLs.

Atomicity per operation:
- claim from absent: ``SET key value NX PX ttl``
- value-to-value swap: ``WATCH`` / ``MULTI`` optimistic transaction
- counters: ``MULTI { SET key 0 NX PX ttl; INCRBY key delta }``

Any Redis error (connection loss, READONLY replica, OOM, auth) surfaces as
``StoreUnavailableError`` so callers apply their outage policy.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import redis
from redis.exceptions import RedisError, WatchError

from admission.adapters.store.base import AbstractKeyStore, _Absent
from admission.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Optimistic transaction attempts before a contended swap reports failure.
MAX_WATCH_ATTEMPTS = 16


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, int(ttl_seconds * 1000))


class RedisKeyStore(AbstractKeyStore):
    """Key store on top of a synchronous ``redis.Redis`` client.

    Waiting for a pending key falls back to sleeping between reads; Redis
    keyspace notifications are not assumed to be enabled.
    """

    backend_name = "redis"

    def __init__(self, client: Any, *, key_prefix: str = "") -> None:
        """Initialize the store.

        Args:
            client: ``redis.Redis`` instance (or a compatible fake). Must not
                use ``decode_responses=True``; values are raw bytes.
            key_prefix: Optional prefix prepended to every key.
        """
        self._client = client
        self._key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0, key_prefix: str = "") -> "RedisKeyStore":
        """Build a store from a Redis connection URL."""

        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=False,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except RedisError as exc:
            logger.error(
                "store.unavailable",
                extra={
                    "backend": self.backend_name,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                },
            )
            raise StoreUnavailableError(
                code="store_unavailable",
                message="Key store is unavailable",
                details={"backend": self.backend_name, "operation": operation},
            ) from exc

    def get(self, key: str) -> tuple[bytes | None, bool]:
        value = self._call("get", lambda: self._client.get(self._key(key)))
        if value is None:
            return None, False
        return value, True

    def compare_and_swap(
        self,
        key: str,
        expected: bytes | _Absent,
        new_value: bytes,
        ttl_seconds: float,
    ) -> bool:
        full_key = self._key(key)
        ttl_ms = _ttl_ms(ttl_seconds)

        if isinstance(expected, _Absent):
            created = self._call(
                "compare_and_swap",
                lambda: self._client.set(full_key, new_value, px=ttl_ms, nx=True),
            )
            return bool(created)

        def _swap() -> bool:
            with self._client.pipeline() as pipe:
                for _ in range(MAX_WATCH_ATTEMPTS):
                    try:
                        pipe.watch(full_key)
                        current = pipe.get(full_key)
                        if current != expected:
                            pipe.unwatch()
                            return False
                        pipe.multi()
                        pipe.set(full_key, new_value, px=ttl_ms)
                        pipe.execute()
                        return True
                    except WatchError:
                        # Key changed between WATCH and EXEC; re-evaluate.
                        continue
            logger.warning(
                "store.swap_contended",
                extra={"backend": self.backend_name, "attempts": MAX_WATCH_ATTEMPTS},
            )
            return False

        return self._call("compare_and_swap", _swap)

    def increment_with_expiry(self, key: str, delta: int, ttl_if_new: float) -> int:
        full_key = self._key(key)
        ttl_ms = _ttl_ms(ttl_if_new)

        def _increment() -> int:
            with self._client.pipeline(transaction=True) as pipe:
                pipe.set(full_key, 0, px=ttl_ms, nx=True)
                pipe.incrby(full_key, delta)
                _, count = pipe.execute()
            return int(count)

        return self._call("increment_with_expiry", _increment)

    def delete(self, key: str) -> None:
        self._call("delete", lambda: self._client.delete(self._key(key)))

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self._client.close()
