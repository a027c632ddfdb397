"""Error taxonomy and retry helpers."""

from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, ParamSpec, TypeVar

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class GhostmailError(Exception):
    """Base exception carrying structured context for display and logging."""

    def __init__(
        self,
        message: str,
        *,
        zone_id: str | None = None,
        details: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.zone_id = zone_id
        self.details = dict(details or {})
        self.cause = cause

    def __str__(self) -> str:
        if self.zone_id:
            return f"{self.message} (zone {self.zone_id})"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for logging/serialization."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "zone_id": self.zone_id,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None,
        }


class AuthError(GhostmailError):
    """Token missing, invalid or lacking permission for a zone."""


class RateLimited(GhostmailError):
    """The provider throttled the request."""

    def __init__(
        self, message: str, *, retry_after: float | None = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class NetworkError(GhostmailError):
    """Transport-level failure (DNS, connect, timeout, reset)."""


class CancelledError(GhostmailError):
    """The operation was cancelled by the user or the system."""


class ProviderError(GhostmailError):
    """Well-formed error response returned by the provider."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.code = code


class DuplicateZone(GhostmailError):
    """The zone is already registered."""


class ZoneNotFound(GhostmailError):
    """No zone is registered under the requested id."""


class AliasNotFound(GhostmailError):
    """No local alias exists under the requested id."""


class ValidationError(GhostmailError):
    """Input rejected before it reached the provider."""


class SyncError(GhostmailError):
    """A reconciliation pass could not reach any zone."""

    def __init__(
        self,
        message: str,
        *,
        failures: Mapping[str, GhostmailError] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.failures = dict(failures or {})


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` for failures worth retrying."""
    return isinstance(exc, (RateLimited, NetworkError))


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 8.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[type[BaseException], ...] = (
        RateLimited,
        NetworkError,
    )
    sleep: Callable[[float], None] = time.sleep

    def delay_for(self, attempt: int, exc: BaseException) -> float:
        """Return the wait before the attempt following ``attempt``."""
        retry_after = getattr(exc, "retry_after", None)
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            return min(float(retry_after), self.max_delay)
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )
        return delay + delay * self.jitter * random.random()


def retry_with_backoff(
    config: RetryConfig | Callable[[], RetryConfig] | None = None,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator retrying transient failures with exponential backoff.

    Args:
        config: Retry configuration, or a callable returning one at call time
            so instances can carry their own policy.

    Returns:
        Decorated function that retries ``config.retryable_exceptions``.
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            active = _resolve_config(config, args)
            for attempt in range(1, active.max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except active.retryable_exceptions as exc:
                    if attempt == active.max_attempts:
                        LOGGER.error(
                            "All %d attempts failed for %s: %s",
                            active.max_attempts,
                            func.__name__,
                            exc,
                        )
                        raise
                    delay = active.delay_for(attempt, exc)
                    LOGGER.warning(
                        "Attempt %d/%d failed for %s: %s. Retrying in %.2fs",
                        attempt,
                        active.max_attempts,
                        func.__name__,
                        exc,
                        delay,
                    )
                    active.sleep(delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorator


def _resolve_config(
    config: RetryConfig | Callable[[], RetryConfig] | None, args: tuple[Any, ...]
) -> RetryConfig:
    if isinstance(config, RetryConfig):
        return config
    if config is None:
        # Bound methods may expose their own policy.
        owner_config = getattr(args[0], "retry_config", None) if args else None
        if isinstance(owner_config, RetryConfig):
            return owner_config
        return RetryConfig()
    return config()


__all__ = [
    "AliasNotFound",
    "AuthError",
    "CancelledError",
    "DuplicateZone",
    "GhostmailError",
    "NetworkError",
    "ProviderError",
    "RateLimited",
    "RetryConfig",
    "SyncError",
    "ValidationError",
    "ZoneNotFound",
    "is_transient",
    "retry_with_backoff",
]
