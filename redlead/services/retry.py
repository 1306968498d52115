"""Retry with exponential backoff.

Classification and looping are separate. ``retry`` owns the backoff loop
and retries every error unless the caller passes ``retry_if``;
``is_retryable_error`` is the classifier for transient HTTP failures.
"""

import asyncio
import errno
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from redlead.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERROR_CODES = {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"}
TRANSIENT_ERRNOS = {errno.ECONNRESET, errno.ETIMEDOUT, errno.ECONNREFUSED}


@dataclass
class RetryOptions:
    """Backoff configuration.

    Delay before retry k (1-indexed):
    min(initial_delay * backoff_multiplier ** (k - 1), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 10.0          # seconds
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        delay = self.initial_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay)


async def retry(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``fn`` until it succeeds or ``max_attempts`` is reached.

    ``on_retry(attempt, error)`` runs before each wait. An error for which
    ``retry_if`` returns False is raised immediately. After the last
    attempt the final error is raised unmodified.
    """
    opts = options or RetryOptions()

    for attempt in range(1, opts.max_attempts + 1):
        try:
            return await fn()
        except Exception as error:
            if retry_if is not None and not retry_if(error):
                logger.debug("Error is not retryable", attempt=attempt, error=str(error))
                raise

            if attempt >= opts.max_attempts:
                logger.error("Retry failed after all attempts",
                             attempts=opts.max_attempts, final_error=str(error))
                raise

            delay = opts.calculate_delay(attempt)
            logger.warning("Retry attempt", attempt=attempt,
                           max_attempts=opts.max_attempts,
                           next_retry_in=delay, error=str(error))

            if on_retry is not None:
                on_retry(attempt, error)

            await sleep(delay)

    raise ValueError("max_attempts must be at least 1")


def _status_code(error: BaseException) -> Optional[int]:
    response = getattr(error, "response", None)
    for source in (response, error):
        if source is None:
            continue
        for attr in ("status_code", "status"):
            value = getattr(source, attr, None)
            if isinstance(value, int):
                return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """True for transient network failures and HTTP 429 / 5xx."""
    if isinstance(error, (httpx.TransportError, ConnectionResetError,
                          ConnectionRefusedError, TimeoutError, socket.gaierror)):
        return True

    if getattr(error, "code", None) in TRANSIENT_ERROR_CODES:
        return True

    if isinstance(error, OSError) and error.errno in TRANSIENT_ERRNOS:
        return True

    status = _status_code(error)
    if status is None:
        return False
    return status == 429 or 500 <= status < 600


async def retry_http(
    fn: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """``retry`` for HTTP call sites: same loop and backoff, every error retried.

    Pass ``retry_if=is_retryable_error`` to give up at once on client errors.
    """
    return await retry(fn, options=options, on_retry=on_retry,
                       retry_if=retry_if, sleep=sleep)
