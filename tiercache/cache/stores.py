"""
Key/value stores with per-key TTL backing the durable cache layers.

Stores never hold a bare None: layers always wrap their payloads, so a
None return from a store unambiguously means "not present".
"""
import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .core import StoredEntry
from .errors import LayerWriteFailure
from tiercache.db import create_cache_engine, init_db, make_session_factory
from tiercache.models import CacheRecord

logger = logging.getLogger("cache.stores")

Clock = Callable[[], float]


class KeyValueStore(ABC):
    """
    Minimal TTL key/value contract.

    A ttl of zero or less means the key never expires.
    """

    backend_type = "unknown"
    # True when add() is an atomic create-if-absent
    supports_atomic_add = False

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    def _expiry(self, ttl: float) -> Optional[float]:
        return self.now() + ttl if ttl > 0 else None

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float) -> bool:
        """Store a value; raises LayerWriteFailure if the backend fails."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """Live keys starting with prefix."""

    def add(self, key: str, value: Any, ttl: float) -> bool:
        """
        Store only if the key is absent.

        The base version is check-then-set and NOT atomic; stores that can do
        better override it and set supports_atomic_add.
        """
        if self.get(key) is not None:
            return False
        return self.set(key, value, ttl)

    def clear(self, prefix: str = "") -> int:
        """Remove every key starting with prefix. Returns the count removed."""
        removed = 0
        for key in self.keys(prefix):
            if self.delete(key):
                removed += 1
        return removed


class MemoryStore(KeyValueStore):
    """
    Thread-safe in-process store.

    Stands in for a shared object cache in tests and single-process setups.
    """

    backend_type = "memory"
    supports_atomic_add = True

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._data: Dict[str, StoredEntry] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[StoredEntry]:
        """Caller must hold the lock."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.now()):
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    def set(self, key: str, value: Any, ttl: float) -> bool:
        with self._lock:
            self._data[key] = StoredEntry(
                value=value,
                created_at=self.now(),
                expires_at=self._expiry(ttl),
            )
        return True

    def add(self, key: str, value: Any, ttl: float) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._data[key] = StoredEntry(
                value=value,
                created_at=self.now(),
                expires_at=self._expiry(ttl),
            )
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [
                key for key in list(self._data)
                if key.startswith(prefix) and self._live_entry(key) is not None
            ]

    def __len__(self) -> int:
        return len(self.keys())


class SQLStore(KeyValueStore):
    """
    SQLAlchemy-backed store on the cache_records table.

    add() relies on the primary key constraint, so it is atomic across
    processes sharing the database.
    """

    backend_type = "sql"
    supports_atomic_add = True

    def __init__(self, engine: Engine, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.engine = engine
        self._session_factory = make_session_factory(engine)
        init_db(engine)

    @classmethod
    def from_url(cls, database_url: str, clock: Optional[Clock] = None, echo: bool = False) -> "SQLStore":
        return cls(create_cache_engine(database_url, echo=echo), clock=clock)

    def _not_expired(self, now: float):
        return or_(CacheRecord.expires_at.is_(None), CacheRecord.expires_at > now)

    def get(self, key: str) -> Optional[Any]:
        now = self.now()
        try:
            with self._session_factory() as session:
                record = session.get(CacheRecord, key)
                if record is None:
                    return None
                if record.expires_at is not None and record.expires_at <= now:
                    session.delete(record)
                    session.commit()
                    return None
                return record.value
        except SQLAlchemyError as e:
            logger.warning(f"SQL store read failed for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: float) -> bool:
        record = CacheRecord(
            key=key,
            value=value,
            created_at=self.now(),
            expires_at=self._expiry(ttl),
        )
        try:
            with self._session_factory() as session:
                session.merge(record)
                session.commit()
            return True
        except SQLAlchemyError as e:
            raise LayerWriteFailure("sql", key, str(e)) from e

    def add(self, key: str, value: Any, ttl: float) -> bool:
        now = self.now()
        try:
            with self._session_factory() as session:
                # An expired row must not block the insert
                session.execute(
                    delete(CacheRecord).where(
                        CacheRecord.key == key,
                        CacheRecord.expires_at.is_not(None),
                        CacheRecord.expires_at <= now,
                    )
                )
                session.add(CacheRecord(
                    key=key,
                    value=value,
                    created_at=now,
                    expires_at=self._expiry(ttl),
                ))
                session.commit()
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            logger.warning(f"SQL store add failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            with self._session_factory() as session:
                result = session.execute(delete(CacheRecord).where(CacheRecord.key == key))
                session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.warning(f"SQL store delete failed for {key}: {e}")
            return False

    def keys(self, prefix: str = "") -> List[str]:
        query = select(CacheRecord.key).where(self._not_expired(self.now()))
        if prefix:
            query = query.where(CacheRecord.key.startswith(prefix, autoescape=True))
        try:
            with self._session_factory() as session:
                return list(session.scalars(query))
        except SQLAlchemyError as e:
            logger.warning(f"SQL store key scan failed: {e}")
            return []

    def clear(self, prefix: str = "") -> int:
        query = delete(CacheRecord)
        if prefix:
            query = query.where(CacheRecord.key.startswith(prefix, autoescape=True))
        try:
            with self._session_factory() as session:
                result = session.execute(query)
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.warning(f"SQL store clear failed: {e}")
            return 0

    def purge_expired(self) -> int:
        """Delete rows past their expiry. Returns the number removed."""
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(CacheRecord).where(
                        CacheRecord.expires_at.is_not(None),
                        CacheRecord.expires_at <= self.now(),
                    )
                )
                session.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            logger.warning(f"SQL store purge failed: {e}")
            return 0
