"""
Cache layers: one storage tier each, behind a common interface.

get() returns MISSING for absent keys so that stored falsy values
(False, None, 0, "", []) survive a round trip.
"""
import hashlib
import threading
import time
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional

from .core import MISSING, StoredEntry, is_error_payload
from .errors import LayerWriteFailure
from .stores import KeyValueStore

logger = logging.getLogger("cache.layers")

WRAPPER_KEY = "__wrapped__"


class CacheLayer(ABC):
    """
    Common contract for all cache layers.

    set() returns False instead of raising: caching is best effort.
    """

    name = "layer"

    @abstractmethod
    def get(self, key: str) -> Any:
        """Cached value, or MISSING."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def age(self, key: str) -> Optional[int]:
        """Seconds since the value was stored, or None if not found."""

    @abstractmethod
    def clear(self) -> int:
        """Remove everything in this layer. Returns the count removed."""

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def has(self, key: str) -> bool:
        return self.get(key) is not MISSING

    def size(self) -> int:
        return len(self.keys())

    def delete_prefix(self, prefix: str) -> int:
        """Remove all keys starting with prefix."""
        removed = 0
        for key in self.keys():
            if key.startswith(prefix) and self.delete(key):
                removed += 1
        return removed


class MemoryLayer(CacheLayer):
    """
    Process-local, capacity-bounded layer.

    When full, inserting a new key evicts the entry created longest ago
    (creation order, not access order). Meant to live for one logical
    request; the orchestrator clears it at request boundaries.
    """

    name = "memory"

    def __init__(self, max_items: int = 100, clock: Optional[Callable[[], float]] = None):
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self._clock = clock or time.time
        self._entries: "OrderedDict[str, StoredEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISSING
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return MISSING
            return entry.value

    def set(self, key: str, value: Any, ttl: int) -> bool:
        now = self._clock()
        with self._lock:
            # Re-setting a key makes it the newest entry
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_items:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug(f"Memory layer full, evicted {evicted}")
            self._entries[key] = StoredEntry(
                value=value,
                created_at=now,
                expires_at=now + ttl if ttl > 0 else None,
            )
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def age(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry.age(now)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_items": self.max_items,
                "evictions": self.evictions,
                "keys": list(self._entries),
            }


class PersistentLayer(CacheLayer):
    """
    Durable layer over a KeyValueStore.

    Each value is written under a data key, and its creation time under a
    derived metadata key so age() works without reading the payload.
    """

    name = "persistent"
    data_segment = "data"
    meta_segment = "meta"

    def __init__(self, store: KeyValueStore, namespace: str = "tc"):
        self.store = store
        self.namespace = namespace
        self._data_prefix = f"{namespace}:{self.data_segment}:"
        self._meta_prefix = f"{namespace}:{self.meta_segment}:"

    def _data_key(self, key: str) -> str:
        return self._data_prefix + key

    def _meta_key(self, key: str) -> str:
        return self._meta_prefix + key

    def get(self, key: str) -> Any:
        raw = self.store.get(self._data_key(key))
        if raw is None:
            return MISSING
        if isinstance(raw, dict) and raw.get(WRAPPER_KEY):
            return raw.get("value")
        return raw

    def set(self, key: str, value: Any, ttl: int) -> bool:
        return self._write(key, value, ttl)

    def _write(self, key: str, value: Any, ttl: int) -> bool:
        envelope = {WRAPPER_KEY: True, "value": value}
        try:
            self.store.set(self._data_key(key), envelope, ttl)
            self.store.set(self._meta_key(key), self.store.now(), ttl)
        except LayerWriteFailure as e:
            logger.warning(f"{self.name} layer write failed: {e}")
            return False
        except (TypeError, ValueError) as e:
            logger.warning(f"{self.name} layer cannot store {key}: {e}")
            return False
        return True

    def delete(self, key: str) -> bool:
        self.store.delete(self._meta_key(key))
        return self.store.delete(self._data_key(key))

    def age(self, key: str) -> Optional[int]:
        created = self.store.get(self._meta_key(key))
        if created is None:
            return None
        return max(0, int(self.store.now() - float(created)))

    def clear(self) -> int:
        removed = self.store.clear(self._data_prefix)
        self.store.clear(self._meta_prefix)
        return removed

    def keys(self) -> List[str]:
        offset = len(self._data_prefix)
        return [key[offset:] for key in self.store.keys(self._data_prefix)]

    @property
    def backend_type(self) -> str:
        return self.store.backend_type


class FallbackLayer(PersistentLayer):
    """
    Long-lived store of last-known-good data.

    Always writes with its own fixed TTL, whatever the caller asks for,
    and refuses error payloads so a failed fetch can never replace good data.
    """

    name = "fallback"
    data_segment = "fb"
    meta_segment = "fbmeta"

    DEFAULT_TTL = 7 * 24 * 3600

    def __init__(self, store: KeyValueStore, namespace: str = "tc", ttl: int = DEFAULT_TTL):
        super().__init__(store, namespace)
        self.ttl = ttl

    def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        if is_error_payload(value):
            logger.debug(f"Fallback refused error payload for {key}")
            return False
        return self._write(key, value, self.ttl)

    def is_stale(self, key: str, primary_ttl: int) -> bool:
        """True if the fallback copy is older than the primary TTL (or absent)."""
        age = self.age(key)
        if age is None:
            return True
        return age > primary_ttl

    def age_category(self, key: str) -> str:
        age = self.age(key)
        if age is None:
            return "unknown"
        if age < 3600:
            return "fresh"
        if age < 86400:
            return "recent"
        if age < 3 * 86400:
            return "stale"
        if age < 7 * 86400:
            return "very_stale"
        return "expired"


class ValidatorLayer(CacheLayer):
    """
    HTTP validators (ETags) per request URL, for conditional fetches.

    Keys are hashed; only non-empty strings are accepted as values.
    """

    name = "validator"

    DEFAULT_TTL = 86400

    def __init__(self, store: KeyValueStore, namespace: str = "tc", default_ttl: int = DEFAULT_TTL):
        self.store = store
        self.default_ttl = default_ttl
        self._prefix = f"{namespace}:etag:"

    def _store_key(self, key: str) -> str:
        return self._prefix + hashlib.md5(key.encode("utf-8")).hexdigest()

    def _record(self, key: str) -> Optional[Dict[str, Any]]:
        data = self.store.get(self._store_key(key))
        if not isinstance(data, dict) or "etag" not in data:
            return None
        return data

    def get(self, key: str) -> Any:
        record = self._record(key)
        return record["etag"] if record else MISSING

    def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        if not isinstance(value, str) or value == "":
            return False
        record = {"etag": value, "created": self.store.now()}
        try:
            return self.store.set(self._store_key(key), record, ttl if ttl > 0 else self.default_ttl)
        except LayerWriteFailure as e:
            logger.warning(f"Validator write failed: {e}")
            return False

    def delete(self, key: str) -> bool:
        return self.store.delete(self._store_key(key))

    def age(self, key: str) -> Optional[int]:
        record = self._record(key)
        if record is None or "created" not in record:
            return None
        return max(0, int(self.store.now() - float(record["created"])))

    def clear(self) -> int:
        return self.store.clear(self._prefix)

    def keys(self) -> List[str]:
        # Only hashes are stored, original URLs are not recoverable
        offset = len(self._prefix)
        return [key[offset:] for key in self.store.keys(self._prefix)]

    def request_headers(self, url: str) -> Dict[str, str]:
        """Conditional request headers for url, if we hold a validator."""
        etag = self.get(url)
        if etag is MISSING:
            return {}
        return {"If-None-Match": etag}

    def store_from_response(self, url: str, headers: Mapping[str, str], ttl: int = 0) -> bool:
        """Remember the ETag of a response, if it carried one."""
        normalized = {k.lower(): v for k, v in headers.items()}
        etag = normalized.get("etag")
        if not etag:
            return False
        return self.set(url, etag.strip(), ttl)

    @staticmethod
    def is_not_modified(status_code: int) -> bool:
        return status_code == 304
