"""
Tiered caching with single-flight locking and last-known-good fallback.
"""
from .core import (
    MISSING,
    CacheOutcome,
    CacheSource,
    DataClass,
    StoredEntry,
    is_error_payload,
)
from .errors import (
    CacheError,
    ConfigurationError,
    FetchFailure,
    LayerWriteFailure,
    LockTimeout,
    NotModified,
    RateLimited,
)
from .ttl_policies import (
    TTL_CONFIG,
    TOP_ITEM_CLASSES,
    data_class_for_period,
    get_fallback_ttl,
    get_label,
    get_primary_ttl,
    get_ttl_for_class,
    is_error_protected,
    requires_polling,
    supports_conditional_fetch,
)
from .stores import KeyValueStore, MemoryStore, SQLStore
from .layers import CacheLayer, FallbackLayer, MemoryLayer, PersistentLayer, ValidatorLayer
from .lock import SingleFlightLock
from .manager import CacheOrchestrator, build_orchestrator, get_orchestrator

__all__ = [
    # Core types
    "MISSING",
    "CacheOutcome",
    "CacheSource",
    "DataClass",
    "StoredEntry",
    "is_error_payload",
    # Errors
    "CacheError",
    "ConfigurationError",
    "FetchFailure",
    "LayerWriteFailure",
    "LockTimeout",
    "NotModified",
    "RateLimited",
    # TTL policies
    "TTL_CONFIG",
    "TOP_ITEM_CLASSES",
    "data_class_for_period",
    "get_fallback_ttl",
    "get_label",
    "get_primary_ttl",
    "get_ttl_for_class",
    "is_error_protected",
    "requires_polling",
    "supports_conditional_fetch",
    # Stores and layers
    "KeyValueStore",
    "MemoryStore",
    "SQLStore",
    "CacheLayer",
    "FallbackLayer",
    "MemoryLayer",
    "PersistentLayer",
    "ValidatorLayer",
    # Locking
    "SingleFlightLock",
    # Orchestrator
    "CacheOrchestrator",
    "build_orchestrator",
    "get_orchestrator",
]
