"""
Retry wrapper for outbound calls (Solana RPC, price feeds, spreadsheet proxy).

Each attempt runs under a timeout. Transient failures (rate limits,
connection errors, timeouts, 5xx) back off exponentially (1s, 2s, 4s); other
failures are retried too but surface as `RetryError` after the last attempt.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from services.api.logging_config import get_logger

logger = get_logger("retry")

T = TypeVar("T")

TRANSIENT_MARKERS = ("429", "rate limit", "connection", "timeout", "econnrefused", "enotfound", "blockhash not found")


class RetryError(Exception):
    """Raised when a call fails after all retries"""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


def is_transient(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        return code == 429 or code >= 500
    text = str(error).lower()
    return any(m in text for m in TRANSIENT_MARKERS)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    timeout: float = 10.0,
    description: str = "Call",
    base_delay: float = 1.0,
    on_attempt: Optional[Callable[[int, str], None]] = None,
) -> T:
    """
    Await `fn()` with automatic retry logic.

    Args:
        fn: Zero-argument coroutine factory (called once per attempt)
        max_retries: Maximum attempts (default: 3)
        timeout: Per-attempt timeout in seconds (default: 10)
        description: Human-readable description for logging
        base_delay: First backoff delay; doubles on each retry
        on_attempt: Optional callback called on each attempt: (attempt_num, status_msg)

    Returns:
        Whatever `fn()` returns

    Raises:
        RetryError: If the call fails on every attempt
    """
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries):
        status_msg = f"{description} (attempt {attempt + 1}/{max_retries})"
        logger.debug(status_msg)
        if on_attempt:
            on_attempt(attempt + 1, status_msg)

        try:
            return await asyncio.wait_for(fn(), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            transient = is_transient(e)
            logger.warning(f"{description} failed ({'transient' if transient else 'error'}): {e!r}")

            if attempt == max_retries - 1:
                break
            wait_time = base_delay * (2 ** attempt)
            if not transient:
                wait_time = min(wait_time, base_delay)
            await asyncio.sleep(wait_time)

    raise RetryError(
        f"{description} failed after {max_retries} attempts. Last error: {last_error!r}",
        last_error,
    )
