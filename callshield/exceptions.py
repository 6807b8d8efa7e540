"""
callshield exception hierarchy.

All custom exceptions inherit from CallShieldException so callers can
catch a single base type when they want a broad safety net.
"""

from typing import Any, Optional


class CallShieldException(Exception):
    """Base exception for all callshield errors."""


class ConfigurationError(CallShieldException, ValueError):
    """Raised when configuration is invalid or cannot be loaded."""


class InvalidParamsError(CallShieldException, ValueError):
    """Raised when request parameters fail validation before key derivation."""

    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class CacheUnavailableError(CallShieldException):
    """Durable cache data is missing or unusable.

    Raised and caught inside the cache store, which logs it and drops the
    entry; never propagated to callers.
    """


class RateLimitedError(CallShieldException):
    """Raised when an admission check denies a request.

    Attributes:
        message: Human-readable denial message from the limiter config.
        retry_after_seconds: Whole seconds until the client's window resets.
        admit_result: The :class:`AdmitResult` that caused the denial.
    """

    def __init__(
        self,
        message: str,
        retry_after_seconds: int,
        admit_result: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds
        self.admit_result = admit_result


class UpstreamError(CallShieldException):
    """Raised by upstream collaborators when a metered call fails."""


class UpstreamNotConfiguredError(UpstreamError):
    """Raised when no upstream collaborator is wired for an operation."""


class SchedulerError(CallShieldException):
    """Raised on invalid background task lifecycle transitions."""
