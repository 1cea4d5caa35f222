"""
Retry helpers for Microsoft Graph calls.

Transient failures (5xx, connection/timeouts) are retried with exponential
backoff; permanent errors (4xx) fail immediately. Throttling (429) is not
handled here: Graph tells us exactly how long to wait through Retry-After,
see parse_retry_after and GraphClient.request.
"""

import time
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional, Type, TypeVar, Tuple
from functools import wraps

logger = logging.getLogger("sp5s.retry")

T = TypeVar('T')


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""
    pass


def _status_code_of(error: Exception) -> Optional[int]:
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def exponential_backoff_retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 32.0,
    exponential_base: float = 2.0,
    transient_error_codes: Tuple[int, ...] = (500, 502, 503, 504),
    retriable_exceptions: Tuple[Type[Exception], ...] = (ConnectionError, TimeoutError),
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 32.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        transient_error_codes: HTTP status codes to retry, read from the
            exception's ``status_code`` attribute (default: 5xx)
        retriable_exceptions: Exception types to retry (default: ConnectionError, TimeoutError)

    Returns:
        Decorated function that will retry on transient errors

    Raises:
        RetryExhausted: When all retry attempts are exhausted
        Original exception: For permanent errors

    Example:
        @exponential_backoff_retry(max_retries=3, initial_delay=1.0)
        def send():
            return client.get(url)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            last_exception = None
            func_name = getattr(func, '__name__', '<function>')

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except retriable_exceptions as e:
                    last_exception = e
                    if attempt < max_retries:
                        logger.warning(
                            f"Retriable exception in {func_name} (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                            f"Retrying in {delay}s..."
                        )
                        time.sleep(delay)
                        delay = min(delay * exponential_base, max_delay)
                        continue
                    logger.error(
                        f"Max retries exhausted for {func_name} after {max_retries + 1} attempts. "
                        f"Last error: {e}"
                    )
                    raise RetryExhausted(
                        f"Failed after {max_retries + 1} attempts. Last error: {e}"
                    ) from e

                except Exception as e:
                    status_code = _status_code_of(e)

                    if status_code is not None and status_code in transient_error_codes:
                        last_exception = e
                        if attempt < max_retries:
                            logger.warning(
                                f"Transient error {status_code} in {func_name} "
                                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. "
                                f"Retrying in {delay}s..."
                            )
                            time.sleep(delay)
                            delay = min(delay * exponential_base, max_delay)
                            continue
                        logger.error(
                            f"Max retries exhausted for {func_name} after {max_retries + 1} attempts. "
                            f"Last error: {e}"
                        )
                        raise RetryExhausted(
                            f"Failed after {max_retries + 1} attempts. Last error: {e}"
                        ) from e

                    if status_code and 400 <= status_code < 500:
                        logger.error(
                            f"Permanent client error {status_code} in {func_name}. "
                            f"Not retrying: {e}"
                        )
                    raise

            # This should not be reached, but just in case
            raise RetryExhausted(
                f"Failed after {max_retries + 1} attempts. Last error: {last_exception}"
            )

        return wrapper
    return decorator


def parse_retry_after(value: Optional[str], default: float = 5.0) -> float:
    """
    Convert a Retry-After header into seconds.

    Graph sends delta-seconds; the HTTP-date form is accepted as well.
    Missing or unparsable values fall back to ``default``.
    """
    if value is None:
        return default

    value = value.strip()
    if value.isdigit():
        return float(int(value))

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)
