"""
CoinGecko client errors.
Every terminal failure of the data pipeline is a FetchError subclass.
"""

from __future__ import annotations
from typing import Optional


class FetchError(Exception):
    """Terminal failure of a logical request after the retry policy gave up."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class AuthError(FetchError):
    """Credential rejected (401/403). Never retried."""


class RateLimitExhausted(FetchError):
    """Still rate limited (429) after the retry budget ran out."""


class TransientNetworkError(FetchError):
    """Timeout or connection failure after the retry budget ran out."""


class DataShapeError(FetchError):
    """Well-formed response that is missing expected fields."""


class UpstreamUnavailable(FetchError):
    """Liveness probe failed; no refresh is attempted."""


class HttpStatusError(FetchError):
    """Any other non-2xx status. Not retried."""

    def __init__(self, message: str, status: int, upstream_error: Optional[str] = None):
        super().__init__(message, status=status)
        self.upstream_error = upstream_error
