"""Factory pattern for creating rate limiter instances."""

from admission.adapters.rate_limit.base import AbstractRateLimiter
from admission.adapters.rate_limit.fixed_window import FixedWindowRateLimiter
from admission.adapters.rate_limit.sliding_window import SlidingWindowRateLimiter
from admission.adapters.rate_limit.token_bucket import TokenBucketRateLimiter
from admission.adapters.store.base import AbstractKeyStore
from admission.core.errors import ValidationAppError


def create_rate_limiter(
    algorithm: str,
    store: AbstractKeyStore,
    *,
    bucket_capacity: int | None = None,
    refill_rate: float | None = None,
) -> AbstractRateLimiter:
    """Instantiate the configured rate limiting algorithm.

    Args:
        algorithm: One of ``fixed``, ``sliding`` or ``token-bucket``.
        store: Key store shared by the limiter's counters.
        bucket_capacity: Token bucket capacity (token-bucket only).
        refill_rate: Token bucket refill rate per second (token-bucket only).

    Returns:
        AbstractRateLimiter: Limiter exposing the common ``allow`` signature.

    Raises:
        ValidationAppError: If the algorithm is unknown.
    """
    name = algorithm.lower()

    if name == "fixed":
        return FixedWindowRateLimiter(store)

    if name == "sliding":
        return SlidingWindowRateLimiter(store)

    if name == "token-bucket":
        return TokenBucketRateLimiter(store, capacity=bucket_capacity, refill_rate=refill_rate)

    raise ValidationAppError(
        code="rate_limit_unknown_algorithm",
        message=(
            f"Unknown rate limit algorithm: '{algorithm}'. "
            "Supported algorithms: fixed, sliding, token-bucket"
        ),
    )
