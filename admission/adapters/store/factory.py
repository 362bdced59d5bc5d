"""Factory for key store instances."""

from admission.adapters.store.base import AbstractKeyStore
from admission.adapters.store.in_memory import InMemoryKeyStore
from admission.adapters.store.redis_store import RedisKeyStore
from admission.core.config import StoreSettings
from admission.core.errors import ValidationAppError


def create_key_store(store_settings: StoreSettings) -> AbstractKeyStore:
    """Instantiate the configured key store backend.

    Args:
        store_settings: Resolved store settings.

    Returns:
        AbstractKeyStore: Configured store instance.

    Raises:
        ValidationAppError: If backend-specific requirements are not met.
    """
    backend = store_settings.backend.lower()

    if backend == "memory":
        return InMemoryKeyStore(sweep_interval_seconds=store_settings.sweep_interval_seconds)

    if backend == "redis":
        if not store_settings.redis_url:
            raise ValidationAppError(
                code="store_missing_redis_url",
                message="Redis store backend requires STORE_REDIS_URL environment variable",
            )
        return RedisKeyStore.from_url(
            store_settings.redis_url,
            socket_timeout=store_settings.socket_timeout_seconds,
        )

    raise ValidationAppError(
        code="store_unknown_backend",
        message=f"Unknown key store backend: '{backend}'. Supported backends: memory, redis",
    )
