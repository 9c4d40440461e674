"""
Unit tests for the key/value stores.
"""
import pytest

from tiercache.cache import MISSING, MemoryStore, PersistentLayer, SQLStore


@pytest.fixture
def sql_store(clock):
    """SQLite in-memory database, fresh per test."""
    return SQLStore.from_url("sqlite://", clock=clock)


@pytest.fixture(params=["memory", "sql"])
def any_store(request, clock):
    if request.param == "memory":
        return MemoryStore(clock=clock)
    return SQLStore.from_url("sqlite://", clock=clock)


# =============================================================================
# Shared contract
# =============================================================================

class TestStoreContract:
    """Behaviour both stores must share."""

    def test_get_set_delete(self, any_store):
        assert any_store.get("k") is None
        assert any_store.set("k", {"a": 1}, 60)
        assert any_store.get("k") == {"a": 1}
        assert any_store.delete("k") is True
        assert any_store.delete("k") is False
        assert any_store.get("k") is None

    def test_ttl_expiry(self, any_store, clock):
        any_store.set("k", {"a": 1}, 60)
        clock.advance(59)
        assert any_store.get("k") == {"a": 1}
        clock.advance(1)
        assert any_store.get("k") is None

    def test_zero_ttl_never_expires(self, any_store, clock):
        any_store.set("k", [1, 2], 0)
        clock.advance(10 * 365 * 86400)
        assert any_store.get("k") == [1, 2]

    def test_add_is_create_if_absent(self, any_store):
        assert any_store.supports_atomic_add
        assert any_store.add("lock", {"holder": "a"}, 30) is True
        assert any_store.add("lock", {"holder": "b"}, 30) is False
        assert any_store.get("lock") == {"holder": "a"}

    def test_add_over_expired_key(self, any_store, clock):
        any_store.add("lock", {"holder": "a"}, 30)
        clock.advance(31)
        assert any_store.add("lock", {"holder": "b"}, 30) is True
        assert any_store.get("lock") == {"holder": "b"}

    def test_keys_and_clear_by_prefix(self, any_store, clock):
        any_store.set("tc:data:a", 1, 60)
        any_store.set("tc:data:b", 2, 60)
        any_store.set("tc:fb:a", 3, 60)
        any_store.set("tc:data:old", 4, 1)
        clock.advance(2)

        assert sorted(any_store.keys("tc:data:")) == ["tc:data:a", "tc:data:b"]
        any_store.clear("tc:data:")
        assert any_store.keys("tc:data:") == []
        assert any_store.get("tc:fb:a") == 3


# =============================================================================
# SQL specifics
# =============================================================================

class TestSQLStore:
    """Tests for the SQLAlchemy-backed store."""

    def test_prefix_wildcards_are_literal(self, sql_store):
        sql_store.set("tc_%:a", 1, 60)
        sql_store.set("tcXY:b", 2, 60)

        assert sql_store.keys("tc_%") == ["tc_%:a"]

    def test_purge_expired(self, sql_store, clock):
        sql_store.set("a", 1, 10)
        sql_store.set("b", 2, 100)
        clock.advance(50)

        assert sql_store.purge_expired() == 1
        assert sql_store.keys() == ["b"]

    def test_persistent_layer_over_sql(self, sql_store, clock):
        layer = PersistentLayer(sql_store)
        for value in (False, 0, "", [], None, {"artists": ["Björk"]}):
            assert layer.set("k", value, 60)
            assert layer.get("k") == value
        clock.advance(5)
        assert layer.age("k") == 5

    def test_unserializable_value_is_a_failed_write(self, sql_store):
        layer = PersistentLayer(sql_store)
        assert layer.set("k", object(), 60) is False
        assert layer.get("k") is MISSING

    def test_backend_type(self, sql_store):
        assert sql_store.backend_type == "sql"
        assert MemoryStore().backend_type == "memory"
