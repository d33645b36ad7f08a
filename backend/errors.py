"""
Exception taxonomy for the market data core.

Validation errors are raised before any I/O. Provider errors are classified
by HTTP status so the loader can decide between retrying, giving up, and
reporting a gap. Session errors are consumer-facing and never retried.
"""

from typing import Optional


# Gap reason codes
GAP_MISSING_AFTER_RETRY = "missing_candles_after_retry"
GAP_PROVIDER_BLOCKED = "provider_blocked"
GAP_PROVIDER_RATE_LIMITED = "provider_rate_limited"
GAP_PROVIDER_UNAVAILABLE = "provider_unavailable"
GAP_PROVIDER_ERROR = "provider_error"


class MarketDataError(Exception):
    """Base class for all errors raised by the market data core."""


class ValidationError(MarketDataError, ValueError):
    """Bad timeframe, non-finite timestamp, inverted or misaligned range."""


class ProviderError(MarketDataError):
    """
    An external candle provider failed.

    Subclasses carry the retry policy: rate limits and transient failures
    are retried with backoff, blocks and client errors are not.
    """

    retryable = False
    gap_reason = GAP_PROVIDER_ERROR

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """HTTP 429."""

    retryable = True
    gap_reason = GAP_PROVIDER_RATE_LIMITED


class ProviderTransient(ProviderError):
    """HTTP 5xx, timeouts and connection failures."""

    retryable = True
    gap_reason = GAP_PROVIDER_UNAVAILABLE


class ProviderBlocked(ProviderError):
    """HTTP 451: access restricted from this region. Never retried."""

    gap_reason = GAP_PROVIDER_BLOCKED


class ProviderClientError(ProviderError):
    """Any other 4xx or a malformed payload. Never retried."""


class SessionNotFound(MarketDataError):
    def __init__(self, session_id: str):
        super().__init__(f"Simulation session not found: {session_id}")
        self.session_id = session_id


class Forbidden(MarketDataError):
    def __init__(self, session_id: str):
        super().__init__(f"Access to simulation session {session_id} is forbidden")
        self.session_id = session_id


class InvalidSessionTransition(MarketDataError):
    def __init__(self, session_id: str, current: str, requested: str):
        super().__init__(
            f"Session {session_id} cannot move from {current} to {requested}"
        )
        self.session_id = session_id
        self.current = current
        self.requested = requested
