"""
Resilience utilities for OmniCRM.

Provides:
- The error taxonomy shared by platform adapters, the unifier and the
  summary writer
- Per-item failure records for batch operations
- Retry logic for SQLite write contention
- User-friendly error messages
"""
import functools
import logging
import sqlite3
import time
from typing import Callable, TypeVar, Optional, Any
from dataclasses import dataclass, asdict

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (sqlite3.OperationalError,)
    should_retry: Optional[Callable[[Exception], bool]] = None


def is_database_busy(error: Exception) -> bool:
    """SQLite reports write contention as OperationalError("database is locked")."""
    message = str(error).lower()
    return "locked" in message or "busy" in message


DEFAULT_RETRY_CONFIG = RetryConfig(should_retry=is_database_busy)


# =============================================================================
# Platform errors (raised by adapters)
# =============================================================================

class PlatformError(Exception):
    """Base class for failures reported by a platform adapter."""

    def __init__(self, platform: str, message: str, partial_result: Any = None):
        self.platform = platform
        self.message = message
        self.partial_result = partial_result
        super().__init__(f"{platform}: {message}")


class AuthExpiredError(PlatformError):
    """Credentials were revoked or expired. Never retried; the user must reconnect."""


class RateLimitedError(PlatformError):
    """
    Platform throttled the request.

    Adapters attach whatever they fetched before the limit hit as
    ``partial_result`` so the coordinator can still commit it.
    """

    def __init__(
        self,
        platform: str,
        message: str = "rate limited",
        retry_after: Optional[float] = None,
        partial_result: Any = None,
    ):
        super().__init__(platform, message, partial_result)
        self.retry_after = retry_after


class TransientNetworkError(PlatformError):
    """Network failure the adapter gave up retrying."""


# =============================================================================
# Core errors
# =============================================================================

class DataConflictError(Exception):
    """A uniqueness constraint fired because another writer got there first."""

    def __init__(self, message: str, existing_id: Optional[str] = None):
        self.existing_id = existing_id
        super().__init__(message)


class SummarizerError(Exception):
    """The summarizer failed or timed out for one thread."""

    def __init__(self, message: str, thread_key: Optional[str] = None):
        self.thread_key = thread_key
        super().__init__(message)


@dataclass
class ItemFailure:
    """One failed item inside an otherwise successful batch."""
    item_id: str
    stage: str  # "unify", "ingest", "summarize"
    error: str

    def to_dict(self) -> dict:
        return asdict(self)


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for sync functions with retry logic.
    """
    cfg = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(cfg.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except cfg.retryable_exceptions as e:
                    if cfg.should_retry and not cfg.should_retry(e):
                        raise
                    last_exception = e

                    if attempt < cfg.max_retries:
                        delay = min(
                            cfg.base_delay * (cfg.exponential_base ** attempt),
                            cfg.max_delay
                        )
                        logger.warning(
                            f"Retry {attempt + 1}/{cfg.max_retries} for {func.__name__}: {e}. "
                            f"Waiting {delay:.2f}s..."
                        )

                        if on_retry:
                            on_retry(attempt + 1, e)

                        time.sleep(delay)
                    else:
                        logger.error(
                            f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def user_friendly_error(error: Exception) -> str:
    """
    Convert exception to user-friendly error message.

    Args:
        error: The exception to convert

    Returns:
        User-friendly error message
    """
    if isinstance(error, AuthExpiredError):
        return f"Your {error.platform} connection has expired. Please reconnect it."

    if isinstance(error, RateLimitedError):
        if error.retry_after:
            return f"{error.platform} is rate limiting requests. Try again in {int(error.retry_after)}s."
        return f"{error.platform} is rate limiting requests. Please wait a moment and try again."

    if isinstance(error, TransientNetworkError):
        return f"Unable to reach {error.platform}. Please try again."

    if isinstance(error, PlatformError):
        return f"{error.platform} is currently unavailable. {error.message}"

    if isinstance(error, SummarizerError):
        return "Thread summaries are temporarily unavailable."

    error_str = str(error).lower()

    if "timeout" in error_str or "timed out" in error_str:
        return "The request timed out. Please try again."

    if "database is locked" in error_str:
        return "The CRM database is busy. Please try again."

    return "An unexpected error occurred. Please try again."
