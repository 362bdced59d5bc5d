"""Key store interface.

Both the rate limiters and the idempotency coordinator depend on this
abstraction (not a concrete backend), and every mutation they make is a
single call on it. Implementations must make each operation atomic for
concurrent callers on the same key, whether those are threads in one
process or separate service instances sharing a networked store.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Final


class _Absent:
    """Sentinel type for "the key does not exist" in compare-and-swap."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Final = _Absent()


class AbstractKeyStore(ABC):
    """Atomic key-value store with per-key expiry.

    Values are opaque bytes. An entry whose TTL elapsed is logically absent
    and is never returned.
    """

    backend_name = "abstract"

    @abstractmethod
    def get(self, key: str) -> tuple[bytes | None, bool]:
        """Read a key.

        Args:
            key: Store key.

        Returns:
            Tuple of (value, found). ``value`` is None when not found.
        """
        raise NotImplementedError

    @abstractmethod
    def compare_and_swap(
        self,
        key: str,
        expected: bytes | _Absent,
        new_value: bytes,
        ttl_seconds: float,
    ) -> bool:
        """Replace the value only if it currently equals ``expected``.

        Args:
            key: Store key.
            expected: Current value required for the swap, or ``ABSENT`` to
                require that the key does not exist.
            new_value: Value to write.
            ttl_seconds: Expiry applied to the written value.

        Returns:
            True if the swap happened.
        """
        raise NotImplementedError

    @abstractmethod
    def increment_with_expiry(self, key: str, delta: int, ttl_if_new: float) -> int:
        """Atomically add ``delta`` to an integer counter.

        A missing counter is created with ``ttl_if_new``; an existing one keeps
        its TTL.

        Returns:
            The counter value after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""
        raise NotImplementedError

    def wait_for_change(self, key: str, timeout: float) -> None:
        """Block up to ``timeout`` seconds or until ``key`` is written.

        Stores without change notification simply sleep; callers must re-read
        the key afterwards either way.
        """
        if timeout > 0:
            time.sleep(timeout)

    def ping(self) -> bool:
        """Return whether the backend is reachable."""
        return True

    def close(self) -> None:
        """Release backend resources."""
