"""
Cache error taxonomy.

Only ConfigurationError is meant to reach callers of the orchestrator.
Everything else is caught inside the cache and degraded to fallback/miss.
"""


class CacheError(Exception):
    """Base class for all cache errors."""


class ConfigurationError(CacheError):
    """Programmer error, e.g. an unknown data class. Never masked."""


class FetchFailure(CacheError):
    """The upstream fetcher could not produce data."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(FetchFailure):
    """Upstream is throttling us, or we are in a local cooldown."""

    def __init__(self, message: str = "Rate limited", retry_after: int = 0):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NotModified(CacheError):
    """Conditional fetch answered 304: the last known data is still current."""


class LayerWriteFailure(CacheError):
    """A cache layer refused or failed to store a value."""

    def __init__(self, layer: str, key: str, reason: str = ""):
        message = f"{layer} layer could not store {key}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.layer = layer
        self.key = key


class LockTimeout(CacheError):
    """Waiting for another holder of a single-flight lock took too long."""

    def __init__(self, key: str, waited: float):
        super().__init__(f"Lock for {key} not released after {waited:.1f}s")
        self.key = key
        self.waited = waited
