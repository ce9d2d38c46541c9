import logging
import asyncio
import ssl
from functools import wraps
from typing import Type, Tuple, Callable, Optional

import httpx

logger = logging.getLogger("Utils")

# Network errors, timeouts and transient HTTP failures
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.HTTPStatusError,
    httpx.NetworkError,         # ConnectError, ReadError, WriteError, ...
    httpx.RemoteProtocolError,  # Server disconnected, malformed responses
    ConnectionResetError,
    ConnectionAbortedError,
    ConnectionRefusedError,
    ssl.SSLError,
)

# Longest Retry-After we are willing to honour inside one request
MAX_RETRY_AFTER_SECONDS = 30.0


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return min(float(value), MAX_RETRY_AFTER_SECONDS)
    except ValueError:
        return None


def retry_delay(error: Exception, attempt: int, backoff_factor: float) -> Optional[float]:
    """
    Seconds to wait before the next attempt, or None when `error` must not be retried.

    Client errors other than 429 are final. Rate limits use the server's
    Retry-After when present, otherwise five times the normal backoff.
    """
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return _retry_after(error.response) or (backoff_factor ** attempt) * 5
        if status < 500:
            return None
    return backoff_factor ** attempt


def retry_on_error(
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = RETRYABLE_EXCEPTIONS,
):
    """
    Decorator to retry async API calls on transient failures.
    The last error is re-raised once `max_retries` attempts are used up.
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    wait_time = retry_delay(e, attempt, backoff_factor)
                    if wait_time is None or attempt == max_retries - 1:
                        raise
                    logger.warning(f"Transient error in {func.__name__}: {e}. Retrying in {wait_time}s...")
                    await asyncio.sleep(wait_time)
        return wrapper
    return decorator


def format_database_id(database_id: str) -> str:
    """Format a 32-character Notion id as a dashed UUID; other values pass through."""
    if not database_id:
        return database_id
    clean = database_id.replace("-", "")
    if len(clean) == 32:
        return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"
    return database_id
