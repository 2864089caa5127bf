"""HTTP client utilities and helpers."""

from asyncio import sleep
from contextlib import asynccontextmanager
from functools import wraps

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

import httpx

from wallet_watcher.helpers.constants import (
    DEFAULT_TIMEOUT,
    MAX_CONNECTIONS,
    MAX_KEEPALIVE_CONNECTIONS,
    MAX_RETRIES,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from wallet_watcher.helpers.logging import get_logger


logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def retry_with_backoff(
    max_retries: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    log_errors: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async function with exponential backoff.

    Only exceptions matching ``retry_on`` are retried, anything else is raised
    on the first occurrence. RPCClient wraps its block fetch with
    ``retry_on=(RpcTransientError,)`` so a head that is not servable yet is
    fetched again after 1s, 2s, 4s...

    Args:
        max_retries: Attempts before the last error is raised
        base_delay: First delay in seconds, doubled per attempt
        max_delay: Upper bound of one delay
        retry_on: Exception types that trigger a retry
        log_errors: Log every failed attempt at warning level
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if log_errors and attempt < max_retries - 1:
                        logger.warning(
                            "%s failed (attempt %d/%d): %s",
                            func.__name__,
                            attempt + 1,
                            max_retries,
                            e,
                        )

                # Don't sleep after the last attempt
                if attempt < max_retries - 1:
                    delay = min(base_delay * (2**attempt), max_delay)
                    await sleep(delay)

            if last_exception:
                if log_errors:
                    logger.error(
                        "%s failed after %d attempts", func.__name__, max_retries
                    )
                raise last_exception

            # Only reachable with max_retries < 1
            msg = f"{func.__name__} failed without exception"
            raise RuntimeError(msg)

        return wrapper

    return decorator


def create_http_client(
    timeout: float = DEFAULT_TIMEOUT, **kwargs: Any
) -> httpx.AsyncClient:
    """Shared AsyncClient for RPC and Telegram calls, with pooled connections."""
    kwargs.setdefault(
        "limits",
        httpx.Limits(
            max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
            max_connections=MAX_CONNECTIONS,
        ),
    )
    return httpx.AsyncClient(timeout=timeout, **kwargs)


@asynccontextmanager
async def log_and_suppress_errors(
    operation_name: str,
    *,
    log_level: str = "warning",
) -> AsyncIterator[None]:
    """Log and swallow any error of a non-critical step, such as storing history.

    Args:
        operation_name: Shown as ``"<operation_name> failed: <error>"``
        log_level: Name of the logger method to use
    """
    try:
        yield
    except Exception as e:
        log_method = getattr(logger, log_level, logger.warning)
        log_method("%s failed: %s", operation_name, e)


__all__ = [
    "create_http_client",
    "log_and_suppress_errors",
    "retry_with_backoff",
]
