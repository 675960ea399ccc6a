"""
Shared utility functions used throughout the reelqueue codebase.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - generate_id(): UUID4 string generator (for database primary keys)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_timestamp(value): Parse a Supabase timestamp into aware UTC
    - @with_retry: Decorator with exponential backoff for transient failures
    - BoundedLockMap: Capacity-bounded map of per-key asyncio locks
"""

from collections import OrderedDict
from datetime import datetime, timezone
import uuid
import asyncio
import logging
import time as time_module
from functools import wraps
from typing import Callable, TypeVar, Any, Tuple, Type, Optional, Union

from reelqueue.exceptions import RetryExhaustedError

T = TypeVar("T")


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``
    so that tests can patch a single clock.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """
    Generate a unique ID for database records.

    Returns:
        A unique UUID4 string (compatible with Supabase UUID type).
    """
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a timestamp column value into an aware UTC datetime.

    PostgREST returns ISO 8601 strings, sometimes with a trailing ``Z``
    and sometimes with sub-microsecond precision trimmed differently;
    both are normalised here.

    Args:
        value: ISO 8601 string, datetime, or ``None``.

    Returns:
        Aware UTC datetime, or ``None`` when *value* is empty.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Retries are for transient failures (timeouts, connection resets).
# Eventually raises if all attempts fail.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for retry logic with exponential backoff.

    Works with both synchronous and asynchronous functions.  The decorator
    detects whether the wrapped function is a coroutine and applies the
    appropriate wrapper.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Initial delay in seconds before the first retry
            (default ``2.0``).  Subsequent delays grow exponentially:
            ``base_delay * (2 ** attempt)``.
        retryable_exceptions: Tuple of exception types that should trigger
            a retry.  Any exception **not** in this tuple propagates
            immediately without retrying.
        operation_name: Human-readable name used in log messages.  If
            ``None``, the wrapped function's ``__name__`` is used.

    Raises:
        RetryExhaustedError: When all retry attempts have been exhausted.
            The original exception is available as ``last_error``.

    Usage::

        @with_retry(
            max_attempts=3,
            base_delay=1.0,
            retryable_exceptions=(httpx.TransportError,),
        )
        async def fetch_status(container_id: str) -> dict:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = base_delay * (2 ** (attempt - 1))
                        logging.warning(
                            "[RETRY] %s attempt %d/%d failed: %s. "
                            "Retrying in %.1fs...",
                            op_name,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        logging.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        @wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = base_delay * (2 ** (attempt - 1))
                        logging.warning(
                            "[RETRY] %s attempt %d/%d failed: %s. "
                            "Retrying in %.1fs...",
                            op_name,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        time_module.sleep(delay)
                    else:
                        logging.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore[return-value]
        return sync_wrapper  # type: ignore[return-value]

    return decorator


# ===========================================================================
# BOUNDED LOCK MAP
# ===========================================================================


class BoundedLockMap:
    """Per-key ``asyncio.Lock`` registry with a fixed capacity.

    Keys are kept in least-recently-used order.  When the map is full,
    the oldest entries whose lock is not currently held are evicted; a
    held lock is never dropped, so two holders can never end up with
    different lock objects for the same key.

    Args:
        capacity: Maximum number of idle locks to retain.
    """

    def __init__(self, capacity: int = 1024) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._locks: "OrderedDict[str, asyncio.Lock]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def get(self, key: str) -> asyncio.Lock:
        """Return the lock for *key*, creating it if needed."""
        lock = self._locks.get(key)
        if lock is not None:
            self._locks.move_to_end(key)
            return lock

        lock = asyncio.Lock()
        self._locks[key] = lock
        self._evict()
        return lock

    def _evict(self) -> None:
        if len(self._locks) <= self.capacity:
            return
        # The newest key was just handed out, so it is never a candidate
        for stale_key in list(self._locks.keys())[:-1]:
            if len(self._locks) <= self.capacity:
                break
            if not self._locks[stale_key].locked():
                del self._locks[stale_key]
