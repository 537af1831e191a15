from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from docvault.logging import get_logger
from docvault.service.errors import UnavailableError
from docvault.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 2
MAX_RETRIES_HARD_CAP = 3
# Initial backoff; quadruples each retry (100ms, 400ms, 1.6s)
DEFAULT_BACKOFF_MS = 100


class StorageUnavailable(Exception):
    """Raised by storage backends when the object store cannot be reached."""


TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    StoreUnavailable,
    StorageUnavailable,
    ConnectionError,
)


async def _attempt(
    func: Callable[..., Union[T, Awaitable[T]]], args: tuple, kwargs: dict, timeout: float
) -> T:
    if inspect.iscoroutinefunction(func):
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    # Blocking store drivers run off the event loop
    return await asyncio.wait_for(
        asyncio.to_thread(func, *args, **kwargs), timeout=timeout
    )


async def call_with_retry(
    label: str,
    func: Callable[..., Union[T, Awaitable[T]]],
    *args: Any,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_ms: int = DEFAULT_BACKOFF_MS,
    **kwargs: Any,
) -> T:
    """Call ``func`` with a per-attempt timeout and bounded retries.

    Only transient failures are retried; anything else propagates on the
    first attempt. When the retry budget is spent the last failure is
    surfaced as ``UnavailableError``.
    """
    retries = max(0, min(max_retries, MAX_RETRIES_HARD_CAP))
    last_error: Optional[BaseException] = None
    attempt = 0
    started = time.monotonic()

    while attempt <= retries:
        try:
            return await _attempt(func, args, kwargs, timeout_seconds)
        except TRANSIENT_ERRORS as exc:
            last_error = exc
            logger.warning(
                "downstream_call_failed",
                call=label,
                attempt=attempt + 1,
                max_retries=retries,
                error_type=type(exc).__name__,
            )

        attempt += 1
        if attempt <= retries:
            sleep_ms = backoff_ms * (4 ** (attempt - 1))
            if sleep_ms > 0:
                await asyncio.sleep(sleep_ms / 1000.0)

    logger.error(
        "downstream_unavailable",
        call=label,
        attempts=attempt,
        elapsed_ms=int((time.monotonic() - started) * 1000),
        error_type=type(last_error).__name__ if last_error else None,
    )
    raise UnavailableError(
        "service temporarily unavailable", detail={"dependency": label.split(".")[0]}
    ) from last_error


async def fire_and_forget(
    label: str,
    func: Callable[..., Any],
    *args: Any,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    **kwargs: Any,
) -> bool:
    """Run a best-effort side effect; failures are logged, never raised.

    Returns whether the side effect completed.
    """
    try:
        await _attempt(func, args, kwargs, timeout_seconds)
        return True
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "side_effect_failed",
            call=label,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
