"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum


class DataClass(Enum):
    """Volatility categories of cached data with different caching behaviors."""
    LIVE_STATUS = "live_status"        # 30 seconds, currently playing/watching
    HISTORY = "history"                # 5 minutes, recent activity
    TOP_WEEKLY = "top_weekly"          # 1 hour
    TOP_MONTHLY = "top_monthly"        # 2 hours
    TOP_QUARTERLY = "top_quarterly"    # 6 hours
    TOP_HALF_YEAR = "top_half_year"    # 12 hours
    TOP_YEARLY = "top_yearly"          # 24 hours
    TOP_ALLTIME = "top_alltime"        # 24 hours
    RATINGS = "ratings"                # 24 hours
    FAVORITES = "favorites"            # 24 hours
    ARTWORK = "artwork"                # 7 days
    METADATA = "metadata"              # 30 days


class CacheSource(Enum):
    """Which layer (or path) produced the data in a CacheOutcome."""
    MEMORY = "memory"          # Process-local, same request
    PERSISTENT = "persistent"  # Primary durable cache
    FRESH = "fresh"            # Fetched from upstream just now
    FALLBACK = "fallback"      # Last known good data, stale
    MISS = "miss"              # Nothing available


class _Missing:
    """Sentinel for "key not present", distinct from any stored value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

# Keys that mark a payload as an upstream error rather than data
ERROR_MARKERS = ("error", "__error__")


def is_error_payload(value: Any) -> bool:
    """
    Check if a value represents an error response rather than data.

    None counts as an error: fetchers must signal "no data" by raising.
    """
    if value is None:
        return True
    if not isinstance(value, dict):
        return False
    return any(marker in value for marker in ERROR_MARKERS)


@dataclass
class StoredEntry:
    """
    A value as held by a layer, with creation and expiry timestamps.

    expires_at of None means the entry never expires.
    """
    value: Any
    created_at: float
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def age(self, now: float) -> int:
        return max(0, int(now - self.created_at))


@dataclass(frozen=True)
class CacheOutcome:
    """
    Result of one resolve call: the data plus where it came from.
    """
    data: Any
    source: CacheSource
    age_seconds: int = 0
    is_stale: bool = False

    def __post_init__(self):
        if self.source == CacheSource.MISS and self.data is not None:
            raise ValueError("A miss cannot carry data")

    @classmethod
    def miss(cls) -> "CacheOutcome":
        return cls(data=None, source=CacheSource.MISS, age_seconds=0, is_stale=True)

    @property
    def has_data(self) -> bool:
        return self.source != CacheSource.MISS

    @property
    def is_miss(self) -> bool:
        return self.source == CacheSource.MISS

    @property
    def was_from_cache(self) -> bool:
        """True if no upstream call produced this data."""
        return self.source in (
            CacheSource.MEMORY,
            CacheSource.PERSISTENT,
            CacheSource.FALLBACK,
        )

    @property
    def age_string(self) -> str:
        """Human-readable age, e.g. "5 minutes ago"."""
        if self.age_seconds <= 0:
            return "just now"

        for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
            if self.age_seconds >= size:
                count = self.age_seconds // size
                return f"{count} {unit}{'s' if count != 1 else ''} ago"

        count = self.age_seconds
        return f"{count} second{'s' if count != 1 else ''} ago"

    def to_dict(self) -> Dict[str, Any]:
        """Provenance metadata for JSON responses (without the data)."""
        return {
            "hasData": self.has_data,
            "source": self.source.value,
            "age": self.age_seconds,
            "ageHuman": self.age_string,
            "isStale": self.is_stale,
        }
