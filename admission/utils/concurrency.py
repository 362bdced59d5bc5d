"""Run blocking key store calls without stalling the event loop."""

from __future__ import annotations

import asyncio
import contextvars
import functools
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_blocking(fn: Callable[..., T], *args: Any) -> T:
    """Run ``fn(*args)`` in the default thread pool and await its result.

    The caller's context is copied into the worker thread so the bound
    request id still reaches log records emitted there.

    Args:
        fn: Synchronous callable (typically a store round trip).
        *args: Positional arguments for ``fn``.

    Returns:
        Whatever ``fn`` returns; exceptions propagate unchanged.
    """
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return await loop.run_in_executor(None, functools.partial(ctx.run, fn, *args))
