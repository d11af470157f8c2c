"""Error taxonomy for deal detection, upstream search and caching."""
from typing import Optional


class DealFinderError(Exception):
    """Base class for all dealfinder errors."""


class InsufficientHistoryError(DealFinderError):
    """Not enough price samples to judge a route. Reported as "no deal", never surfaced."""

    def __init__(self, route: str, count: int, required: int):
        self.route = route
        self.count = count
        self.required = required
        super().__init__(f"Insufficient history for {route} ({count} < {required})")


class UpstreamError(DealFinderError):
    """An upstream price-search call failed."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamRateLimitedError(UpstreamError):
    retryable = True


class UpstreamServerError(UpstreamError):
    retryable = True


class UpstreamClientError(UpstreamError):
    pass


class UpstreamUnavailableError(UpstreamError):
    """Transport-level failure (DNS, connect, timeout). Not retried."""


class CacheCorruptionError(DealFinderError):
    """A persisted cache entry could not be decoded."""

    def __init__(self, key: str, reason: str):
        self.key = key
        super().__init__(f"Corrupt cache entry {key}: {reason}")


class QuotaExceededError(DealFinderError):
    """Identity has no free signals left. Returned inside a result, not raised by QuotaTracker."""

    def __init__(self, identity_id: str, limit: int):
        self.identity_id = identity_id
        self.limit = limit
        super().__init__(f"Free signal quota exhausted for {identity_id} (limit {limit})")


def error_for_status(status_code: int, message: str = "") -> UpstreamError:
    """Map an HTTP status code to the matching upstream error type."""
    text = f"Upstream returned {status_code}" + (f": {message}" if message else "")
    if status_code == 429:
        return UpstreamRateLimitedError(text, status_code)
    if status_code >= 500:
        return UpstreamServerError(text, status_code)
    return UpstreamClientError(text, status_code)


class AlertNotFoundError(DealFinderError):
    def __init__(self, user_id: str, alert_id: int):
        self.user_id = user_id
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found for {user_id}")
