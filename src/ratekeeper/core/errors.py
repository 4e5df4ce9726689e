"""
Error taxonomy of the rate limiting engine.

Only ConfigurationError is meant to reach callers of the service.
StoreUnavailable and MalformedState are absorbed: the first into a
fail-open response, the second by reinitializing the key's state.
"""


class RateLimitError(Exception):
    """Base class for all rate limiter errors."""


class ConfigurationError(RateLimitError, ValueError):
    """Unknown algorithm or non-positive limit/window."""


class StoreUnavailable(RateLimitError):
    """The state store timed out, refused the connection or misbehaved."""


class MalformedState(RateLimitError):
    """Persisted state does not match the shape a strategy expects."""
