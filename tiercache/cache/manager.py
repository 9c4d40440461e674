"""
Main cache orchestration: layered lookup, fill and graceful degradation.
"""
import threading
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Union

from .core import MISSING, CacheOutcome, CacheSource, DataClass, is_error_payload
from .errors import NotModified
from .layers import CacheLayer, FallbackLayer, MemoryLayer, PersistentLayer, ValidatorLayer
from .lock import SingleFlightLock
from .ttl_policies import get_ttl_for_class, supports_conditional_fetch
from .stores import KeyValueStore, SQLStore
from tiercache.settings import Settings

logger = logging.getLogger("cache.orchestrator")

Fetcher = Callable[[str], Any]
DataClassLike = Union[DataClass, str]


class CacheOrchestrator:
    """
    Main cache orchestration with:
    - Memory -> persistent -> upstream -> fallback lookup order
    - Per-data-class TTLs
    - Single-flight locking around upstream calls
    - Last-known-good fallback data that errors can never overwrite

    resolve() never raises for fetch failures, layer write failures or lock
    timeouts; it always returns a CacheOutcome. Stale data beats an error.
    """

    def __init__(
        self,
        store: KeyValueStore,
        fallback_store: Optional[KeyValueStore] = None,
        namespace: str = "tc",
        memory_max_items: int = 100,
        fallback_ttl: int = FallbackLayer.DEFAULT_TTL,
        validator_ttl: int = ValidatorLayer.DEFAULT_TTL,
        lock: Optional[SingleFlightLock] = None,
        enabled: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Durable store for the persistent layer, validators and locks
            fallback_store: Store for fallback data (defaults to store)
            namespace: Key namespace inside the stores
            memory_max_items: Capacity of the per-request memory layer
            fallback_ttl: Fixed TTL of every fallback write
            validator_ttl: Default TTL of stored ETags
            lock: Single-flight lock (defaults to one over store)
            enabled: When False, every resolve goes straight to the fetcher
        """
        self.memory = MemoryLayer(max_items=memory_max_items, clock=store.now)
        self.persistent = PersistentLayer(store, namespace)
        self.fallback = FallbackLayer(fallback_store if fallback_store is not None else store, namespace, ttl=fallback_ttl)
        self.validators = ValidatorLayer(store, namespace, default_ttl=validator_ttl)
        self.lock = lock or SingleFlightLock(store, namespace)
        self.enabled = enabled

        self._stats_lock = threading.Lock()
        self._stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "hits_memory": 0,
            "hits_persistent": 0,
            "misses": 0,
            "fetch_errors": 0,
            "fallbacks": 0,
            "empty": 0,
            "lock_waits": 0,
            "lock_timeouts": 0,
        }

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    # ----------------------------------------------------------------------
    # Resolve
    # ----------------------------------------------------------------------

    def resolve(self, key: str, data_class: DataClassLike, fetcher: Fetcher) -> CacheOutcome:
        """
        Get data for key from cache, upstream, or fallback, in that order.

        Args:
            key: Deterministic cache key
            data_class: Volatility class driving TTLs
            fetcher: Called with key on a cache miss; raises on failure

        Returns:
            CacheOutcome describing the data and its provenance

        Raises:
            ConfigurationError: If data_class is unknown
        """
        primary_ttl, _, _ = get_ttl_for_class(data_class)

        if not self.enabled:
            return self._bypass(key, fetcher)

        outcome = self._lookup(key, primary_ttl)
        if outcome is not None:
            return outcome

        return self._fill(key, data_class, fetcher)

    def resolve_single_flight(
        self,
        key: str,
        data_class: DataClassLike,
        fetcher: Fetcher,
        max_wait: Optional[float] = None,
        prefer_stale: bool = False,
    ) -> CacheOutcome:
        """
        Like resolve(), but only one caller per key calls upstream at a time.

        Callers that lose the race wait up to max_wait for the winner's
        write and then re-read the cache; on timeout they get fallback data.

        Args:
            key: Deterministic cache key
            data_class: Volatility class driving TTLs
            fetcher: Called with key by the lock holder only
            max_wait: Max seconds to wait for another holder (lock default if None)
            prefer_stale: Serve fallback data immediately instead of waiting, if there is any
        """
        primary_ttl, _, _ = get_ttl_for_class(data_class)

        if not self.enabled:
            return self._bypass(key, fetcher)

        outcome = self._lookup(key, primary_ttl)
        if outcome is not None:
            return outcome

        if self.lock.acquire(key):
            return self._fill_locked(key, data_class, fetcher, primary_ttl)

        if prefer_stale and self.fallback.has(key):
            outcome = self._from_fallback(key)
            if outcome.has_data:
                logger.debug(f"Lock held, serving fallback: {key}")
                return outcome

        self._count("lock_waits")
        if self.lock.wait(key, max_wait):
            # The holder should have filled the cache by now
            outcome = self._lookup(key, primary_ttl)
            if outcome is not None:
                return outcome
            if self.lock.acquire(key):
                return self._fill_locked(key, data_class, fetcher, primary_ttl)
        else:
            self._count("lock_timeouts")
            logger.warning(f"Lock wait timed out, degrading to fallback: {key}")

        return self._from_fallback(key)

    def _fill_locked(
        self,
        key: str,
        data_class: DataClassLike,
        fetcher: Fetcher,
        primary_ttl: int,
    ) -> CacheOutcome:
        """Fill from upstream while holding the lock for key."""
        try:
            # A previous holder may have filled the cache between our miss and acquire
            outcome = self._lookup(key, primary_ttl)
            if outcome is not None:
                return outcome
            return self._fill(key, data_class, fetcher)
        finally:
            self.lock.release(key)

    def _lookup(self, key: str, primary_ttl: int) -> Optional[CacheOutcome]:
        """Steps 1-2: memory, then persistent. None on a miss in both."""
        value = self.memory.get(key)
        if value is not MISSING:
            logger.debug(f"CACHE HIT (memory): {key}")
            self._count("hits_memory")
            return CacheOutcome(data=value, source=CacheSource.MEMORY, age_seconds=0)

        value = self.persistent.get(key)
        if value is not MISSING:
            age = self.persistent.age(key) or 0
            logger.debug(f"CACHE HIT (persistent): {key} [age={age}s]")
            self._count("hits_persistent")
            self.memory.set(key, value, max(1, primary_ttl - age))
            return CacheOutcome(data=value, source=CacheSource.PERSISTENT, age_seconds=age)

        return None

    def _fill(self, key: str, data_class: DataClassLike, fetcher: Fetcher) -> CacheOutcome:
        """Steps 3-5: fetch and store, else fallback, else miss."""
        logger.info(f"CACHE MISS: {key}")
        self._count("misses")

        value = self._fetch(key, data_class, fetcher)
        if value is MISSING:
            return self._from_fallback(key)

        self._store_all(key, value, data_class)
        return CacheOutcome(data=value, source=CacheSource.FRESH, age_seconds=0)

    def _fetch(self, key: str, data_class: DataClassLike, fetcher: Fetcher) -> Any:
        """
        Call the fetcher. Returns MISSING on any failure.

        A NotModified answer re-confirms the fallback copy, when the
        class supports conditional fetches and there is one.
        """
        try:
            value = fetcher(key)
        except NotModified:
            if supports_conditional_fetch(data_class):
                value = self.fallback.get(key)
                if value is not MISSING:
                    logger.info(f"Upstream not modified, reusing fallback: {key}")
                    return value
            logger.warning(f"Upstream not modified but nothing cached: {key}")
            self._count("fetch_errors")
            return MISSING
        except Exception as e:
            logger.warning(f"Fetch failed for {key}: {e}")
            self._count("fetch_errors")
            return MISSING

        if is_error_payload(value):
            logger.warning(f"Fetch returned an error payload for {key}")
            self._count("fetch_errors")
            return MISSING

        return value

    def _store_all(self, key: str, value: Any, data_class: DataClassLike) -> None:
        """Write a fresh value through memory, persistent and fallback."""
        primary_ttl, fallback_ttl, error_protected = get_ttl_for_class(data_class)

        self.memory.set(key, value, primary_ttl)
        if not self.persistent.set(key, value, primary_ttl):
            logger.warning(f"Persistent write failed, serving uncached: {key}")

        if error_protected and is_error_payload(value):
            return
        if not self.fallback.set(key, value, fallback_ttl):
            logger.debug(f"Fallback not updated for {key}")

    def _from_fallback(self, key: str) -> CacheOutcome:
        """Steps 4-5: last known good data, or an empty outcome."""
        value = self.fallback.get(key)
        if value is not MISSING:
            age = self.fallback.age(key) or 0
            logger.info(f"Serving fallback: {key} [age={age}s]")
            self._count("fallbacks")
            return CacheOutcome(
                data=value,
                source=CacheSource.FALLBACK,
                age_seconds=age,
                is_stale=True,
            )

        logger.info(f"No data available: {key}")
        self._count("empty")
        return CacheOutcome.miss()

    def _bypass(self, key: str, fetcher: Fetcher) -> CacheOutcome:
        """Caching disabled: call upstream, cache nothing."""
        try:
            value = fetcher(key)
        except Exception as e:
            logger.warning(f"Fetch failed for {key} (cache disabled): {e}")
            return CacheOutcome.miss()
        if is_error_payload(value):
            return CacheOutcome.miss()
        return CacheOutcome(data=value, source=CacheSource.FRESH, age_seconds=0)

    def peek(self, key: str) -> Any:
        """Cached value from any layer without fetching, or MISSING."""
        for layer in (self.memory, self.persistent, self.fallback):
            value = layer.get(key)
            if value is not MISSING:
                return value
        return MISSING

    # ----------------------------------------------------------------------
    # Request scope
    # ----------------------------------------------------------------------

    def end_request(self) -> int:
        """Drop the per-request memory layer. Returns entries dropped."""
        return self.memory.clear()

    @contextmanager
    def request_scope(self) -> Iterator["CacheOrchestrator"]:
        """Memory layer lives for the duration of the with-block."""
        try:
            yield self
        finally:
            self.end_request()

    # ----------------------------------------------------------------------
    # Invalidation
    # ----------------------------------------------------------------------

    def _layers(self, include_fallback: bool) -> List[CacheLayer]:
        layers: List[CacheLayer] = [self.memory, self.persistent]
        if include_fallback:
            layers.append(self.fallback)
        return layers

    def invalidate(self, key: str, include_fallback: bool = False) -> bool:
        """
        Remove key from memory and persistent layers.

        Fallback data survives unless include_fallback is set.

        Returns:
            True if the key was found in any layer
        """
        removed = False
        for layer in self._layers(include_fallback):
            removed = layer.delete(key) or removed
        if removed:
            logger.info(f"Invalidated cache: {key}")
        return removed

    def invalidate_class(self, prefix: str, include_fallback: bool = False) -> int:
        """
        Remove every key starting with prefix.

        Returns:
            Number of distinct keys removed
        """
        removed: Set[str] = set()
        for layer in self._layers(include_fallback):
            for key in layer.keys():
                if key.startswith(prefix) and layer.delete(key):
                    removed.add(key)
        if removed:
            logger.info(f"Invalidated {len(removed)} keys matching '{prefix}'")
        return len(removed)

    def invalidate_all(self, include_fallback: bool = False) -> int:
        """
        Clear memory, persistent and validator layers (and fallback if asked).

        Returns:
            Number of distinct keys removed
        """
        layers = self._layers(include_fallback)
        removed: Set[str] = set()
        for layer in layers:
            removed.update(layer.keys())
        for layer in layers:
            layer.clear()
        self.validators.clear()
        logger.info(f"Cleared {len(removed)} cache keys (fallback included: {include_fallback})")
        return len(removed)

    # ----------------------------------------------------------------------
    # Diagnostics
    # ----------------------------------------------------------------------

    def get_layer(self, name: str) -> Optional[CacheLayer]:
        """Layer by name (memory, persistent, fallback, validator)."""
        for layer in (self.memory, self.persistent, self.fallback, self.validators):
            if layer.name == name:
                return layer
        return None

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        hits = stats["hits_memory"] + stats["hits_persistent"]
        total = hits + stats["misses"]
        stats["hit_rate_percent"] = round(hits / total * 100, 1) if total > 0 else 0.0
        return stats

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = self._empty_stats()

    def get_diagnostics(self) -> Dict[str, Any]:
        """Read-only operational snapshot."""
        return {
            "enabled": self.enabled,
            "backend_type": self.persistent.backend_type,
            "layers": [
                {"name": layer.name, "size": layer.size()}
                for layer in (self.memory, self.persistent, self.fallback, self.validators)
            ],
            "memory": self.memory.get_stats(),
            "locks": self.lock.get_stats(),
            "stats": self.get_stats(),
        }


def build_orchestrator(config: Settings) -> CacheOrchestrator:
    """Create an orchestrator backed by the configured database."""
    store = SQLStore.from_url(config.database_url, echo=config.debug)
    lock = SingleFlightLock(
        store,
        namespace=config.key_prefix,
        lease_seconds=config.lock_lease_seconds,
        max_wait=config.lock_max_wait_seconds,
        poll_interval=config.lock_poll_interval_seconds,
    )
    return CacheOrchestrator(
        store,
        namespace=config.key_prefix,
        memory_max_items=config.memory_max_items,
        fallback_ttl=config.fallback_ttl_seconds,
        validator_ttl=config.validator_ttl_seconds,
        lock=lock,
        enabled=config.cache_enabled,
    )


# Global orchestrator instance
_orchestrator: Optional[CacheOrchestrator] = None


def get_orchestrator() -> CacheOrchestrator:
    """Get or create the global orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        from tiercache.settings import settings
        _orchestrator = build_orchestrator(settings)
    return _orchestrator
