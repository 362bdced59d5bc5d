"""In-memory key store.

Notes:
- Per-process only: running multiple workers gives each worker its own
  counters and idempotency records. Use the Redis store for shared state.
- Thread-safe: a single lock guards all entries, and a condition variable
  on that lock wakes callers waiting for a key to change.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from admission.adapters.store.base import AbstractKeyStore, _Absent

logger = logging.getLogger(__name__)


@dataclass
class KeyEntry:
    """Container for stored values with expiration metadata."""

    value: bytes
    expires_at: float | None


class InMemoryKeyStore(AbstractKeyStore):
    """Thread-safe, in-memory key store with TTL expiry.

    Expired entries are purged lazily on access and swept in bulk at most once
    per ``sweep_interval_seconds`` during writes.
    """

    backend_name = "memory"

    def __init__(
        self,
        *,
        sweep_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            sweep_interval_seconds: Minimum time between bulk sweeps.
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._entries: dict[str, KeyEntry] = {}
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._last_sweep = clock()
        self._hits = 0
        self._misses = 0
        self._expirations = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemoryKeyStore(size={len(self._entries)}, hits={self._hits}, "
            f"misses={self._misses}, expirations={self._expirations})"
        )

    def get(self, key: str) -> tuple[bytes | None, bool]:
        with self._lock:
            entry = self._live_entry_locked(key, self._clock())
            if entry is None:
                self._misses += 1
                return None, False
            self._hits += 1
            return entry.value, True

    def compare_and_swap(
        self,
        key: str,
        expected: bytes | _Absent,
        new_value: bytes,
        ttl_seconds: float,
    ) -> bool:
        with self._lock:
            now = self._clock()
            self._maybe_sweep_locked(now)
            entry = self._live_entry_locked(key, now)

            if isinstance(expected, _Absent):
                if entry is not None:
                    return False
            elif entry is None or entry.value != expected:
                return False

            self._entries[key] = KeyEntry(value=new_value, expires_at=self._expiry(now, ttl_seconds))
            self._changed.notify_all()
            return True

    def increment_with_expiry(self, key: str, delta: int, ttl_if_new: float) -> int:
        with self._lock:
            now = self._clock()
            self._maybe_sweep_locked(now)
            entry = self._live_entry_locked(key, now)

            if entry is None:
                count = delta
                self._entries[key] = KeyEntry(value=str(count).encode(), expires_at=self._expiry(now, ttl_if_new))
            else:
                count = int(entry.value) + delta
                entry.value = str(count).encode()

            self._changed.notify_all()
            return count

    def delete(self, key: str) -> None:
        with self._lock:
            if self._entries.pop(key, None) is not None:
                self._changed.notify_all()

    def wait_for_change(self, key: str, timeout: float) -> None:
        if timeout <= 0:
            return
        with self._changed:
            self._changed.wait(timeout)

    def sweep_expired(self) -> int:
        """Purge every expired entry.

        Returns:
            Number of entries removed.
        """

        with self._lock:
            return self._sweep_locked(self._clock())

    def clear(self) -> None:
        """Remove all entries and reset counters."""

        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._expirations = 0
            self._changed.notify_all()

    def stats(self) -> dict[str, int]:
        """Return lightweight store metrics without exposing values."""

        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "expirations": self._expirations,
            }

    @staticmethod
    def _expiry(now: float, ttl_seconds: float | None) -> float | None:
        if ttl_seconds is None:
            return None
        return now + ttl_seconds

    def _live_entry_locked(self, key: str, now: float) -> KeyEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= now:
            del self._entries[key]
            self._expirations += 1
            return None
        return entry

    def _maybe_sweep_locked(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        removed = self._sweep_locked(now)
        if removed:
            logger.debug(
                "store.swept",
                extra={"removed": removed, "size": len(self._entries)},
            )

    def _sweep_locked(self, now: float) -> int:
        self._last_sweep = now
        expired_keys = [
            k for k, entry in self._entries.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired_keys:
            del self._entries[key]
        self._expirations += len(expired_keys)
        return len(expired_keys)
