"""
Single-flight locking to prevent duplicate upstream calls.

When multiple concurrent callers (threads or processes sharing a store)
miss the cache for the same key, only the lock holder calls upstream;
the others wait for its result or serve stale data.
"""
import threading
import time
import uuid
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import LockTimeout
from .stores import KeyValueStore

logger = logging.getLogger("cache.lock")

LOCK_LEASE_SECONDS = 30
MAX_WAIT_SECONDS = 5.0
POLL_INTERVAL_SECONDS = 0.1


class SingleFlightLock:
    """
    Per-key mutual exclusion with lease expiry, backed by a KeyValueStore.

    Pattern:
    - acquire() creates a lock record only if none exists
    - the record carries a lease TTL so a crashed holder cannot lock a key forever
    - release() only removes locks this process acquired
    - with_lock() / hold() release on every exit path

    On stores without atomic add, acquire() falls back to check-then-set
    plus a staleness check: a record older than the lease is treated as
    abandoned and taken over. That path is best effort and gives no
    exclusivity guarantee when two processes race on it.

    Usage:
        lock = SingleFlightLock(store)
        result = lock.with_lock(
            "standings:...",
            lambda: make_api_call(),
            fallback=stale_value,
        )
    """

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = "tc",
        lease_seconds: int = LOCK_LEASE_SECONDS,
        max_wait: float = MAX_WAIT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the lock.

        Args:
            store: Store holding lock records (shared across processes if they must exclude each other)
            namespace: Key namespace for lock records
            lease_seconds: Lifetime of a lock record
            max_wait: Default max seconds wait() blocks
            poll_interval: Seconds between checks while waiting
            sleep: Sleep function, replaceable in tests
        """
        self._store = store
        self._prefix = f"{namespace}:lock:"
        self.lease_seconds = lease_seconds
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self._sleep = sleep
        # key -> holder token for locks this process owns
        self._held: Dict[str, str] = {}
        self._held_lock = threading.Lock()

    def _lock_key(self, key: str) -> str:
        return self._prefix + key

    def acquire(self, key: str) -> bool:
        """
        Try to take the lock for key without waiting.

        Returns:
            True if the lock was granted
        """
        lock_key = self._lock_key(key)
        token = uuid.uuid4().hex
        record = {"holder": token, "acquired_at": self._store.now()}

        if self._store.supports_atomic_add:
            acquired = self._store.add(lock_key, record, self.lease_seconds)
        else:
            acquired = self._acquire_plain(lock_key, record)

        if acquired:
            with self._held_lock:
                self._held[key] = token
            logger.debug(f"Lock acquired: {key}")
        else:
            logger.debug(f"Lock busy: {key}")
        return acquired

    def _acquire_plain(self, lock_key: str, record: Dict[str, Any]) -> bool:
        """Check-then-set path for stores without atomic add."""
        existing = self._store.get(lock_key)
        if existing is not None:
            acquired_at = existing.get("acquired_at") if isinstance(existing, dict) else None
            age = self._store.now() - float(acquired_at or 0)
            if age <= self.lease_seconds:
                return False
            logger.warning(f"Taking over abandoned lock {lock_key} (age {age:.0f}s)")
            self._store.delete(lock_key)

        return self._store.set(lock_key, record, self.lease_seconds)

    def release(self, key: str) -> None:
        """Release the lock for key. No-op unless this process holds it."""
        with self._held_lock:
            token = self._held.pop(key, None)
        if token is None:
            return

        lock_key = self._lock_key(key)
        existing = self._store.get(lock_key)
        # Leave the record alone if the lease ran out and someone else took over
        if isinstance(existing, dict) and existing.get("holder") == token:
            self._store.delete(lock_key)
            logger.debug(f"Lock released: {key}")
        else:
            logger.warning(f"Lock for {key} expired before release")

    def is_locked(self, key: str) -> bool:
        """True if any process currently holds the lock for key."""
        return self._store.get(self._lock_key(key)) is not None

    def wait(self, key: str, max_wait: Optional[float] = None) -> bool:
        """
        Block until the lock for key is released.

        Returns:
            True if released, False if max_wait elapsed first
        """
        max_wait = self.max_wait if max_wait is None else max_wait
        waited = 0.0

        while self.is_locked(key):
            if waited >= max_wait:
                logger.info(f"Timed out after {waited:.1f}s waiting for lock: {key}")
                return False
            self._sleep(self.poll_interval)
            waited += self.poll_interval

        return True

    def acquire_or_wait(self, key: str, max_wait: Optional[float] = None) -> bool:
        """Try to acquire; if busy, wait for release and try once more."""
        if self.acquire(key):
            return True
        if self.wait(key, max_wait):
            return self.acquire(key)
        return False

    def with_lock(self, key: str, body: Callable[[], Any], fallback: Any = None) -> Any:
        """
        Run body while holding the lock for key.

        Does not wait: if the lock is busy, fallback is returned immediately.
        The lock is released even if body raises.
        """
        if not self.acquire(key):
            return fallback

        try:
            return body()
        finally:
            self.release(key)

    @contextmanager
    def hold(self, key: str, max_wait: Optional[float] = None) -> Iterator[None]:
        """
        Context manager holding the lock for key.

        Raises:
            LockTimeout: If the lock could not be acquired within max_wait
        """
        if not self.acquire_or_wait(key, max_wait):
            raise LockTimeout(key, self.max_wait if max_wait is None else max_wait)
        try:
            yield
        finally:
            self.release(key)

    def release_all(self) -> int:
        """Release every lock this process holds. Returns the count released."""
        keys = self.held_keys()
        for key in keys:
            self.release(key)
        return len(keys)

    def held_keys(self) -> List[str]:
        """Snapshot of keys this process currently holds."""
        with self._held_lock:
            return list(self._held)

    def get_stats(self) -> Dict[str, Any]:
        """Get lock statistics."""
        held = self.held_keys()
        return {
            "held_count": len(held),
            "held_keys": held,
            "lease_seconds": self.lease_seconds,
            "atomic": self._store.supports_atomic_add,
        }
