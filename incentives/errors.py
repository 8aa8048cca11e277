"""
Exception types shared by the cache, reward engine, eligibility manager and
budget tracker.
"""
from typing import Optional


class IncentiveError(Exception):
    """Base class for all incentive-program errors."""


class ValidationError(IncentiveError, ValueError):
    """Negative, non-finite or malformed input rejected before computation."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UpstreamTimeoutError(IncentiveError, TimeoutError):
    """An upstream fetch exceeded its deadline."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Fetch for {key} timed out after {timeout}s")
        self.key = key
        self.timeout = timeout


class UpstreamFailureError(IncentiveError):
    """An upstream fetch raised; the cache was left unpopulated."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"Fetch for {key} failed: {cause}")
        self.key = key
        self.cause = cause


class ConfigInconsistencyError(IncentiveError):
    """A program configuration update was rejected; the prior config is kept."""
