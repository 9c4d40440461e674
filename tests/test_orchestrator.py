"""
Unit tests for the cache orchestrator.
"""
import threading
import time

import pytest

from tiercache.cache import (
    MISSING,
    CacheOrchestrator,
    CacheOutcome,
    CacheSource,
    ConfigurationError,
    DataClass,
    FetchFailure,
    LayerWriteFailure,
    MemoryStore,
    NotModified,
    SingleFlightLock,
    build_orchestrator,
)
from tiercache.settings import Settings


class Upstream:
    """Fetcher double that records calls and can be switched to fail."""

    def __init__(self, value=None):
        self.value = value
        self.error = None
        self.calls = 0

    def __call__(self, key):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


class FailingWriteStore(MemoryStore):
    """Store whose writes always fail."""

    def set(self, key, value, ttl):
        raise LayerWriteFailure("memory-store", key, "disk full")


@pytest.fixture
def upstream():
    return Upstream({"temp": 72})


@pytest.fixture
def other_process(store):
    return SingleFlightLock(store, sleep=lambda _: None)


# =============================================================================
# End-to-end scenarios
# =============================================================================

class TestScenarios:
    """Fresh, memory, fallback and miss paths."""

    def test_fresh_then_memory(self, orchestrator, upstream):
        first = orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)
        second = orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)

        assert first.source == CacheSource.FRESH
        assert first.data == {"temp": 72}
        assert second.source == CacheSource.MEMORY
        assert second.data == {"temp": 72}
        assert second.age_seconds == 0
        assert upstream.calls == 1

    def test_fallback_after_expiry_and_failure(self, orchestrator, upstream, clock):
        orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)
        upstream.error = FetchFailure("Connection refused")
        clock.advance(31)

        outcome = orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.FALLBACK
        assert outcome.is_stale is True
        assert outcome.data == {"temp": 72}
        assert outcome.age_seconds == 31
        assert upstream.calls == 2

    def test_cold_key_failure_is_a_miss(self, orchestrator, upstream):
        upstream.error = FetchFailure("HTTP 503", status_code=503)

        outcome = orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.MISS
        assert outcome.data is None
        assert outcome.has_data is False
        assert outcome == CacheOutcome.miss()

    def test_invalidate_forces_refetch(self, orchestrator, upstream):
        orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)

        assert orchestrator.invalidate("weather:nyc") is True
        outcome = orchestrator.resolve("weather:nyc", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.FRESH
        assert upstream.calls == 2

    def test_invalidate_unknown_key(self, orchestrator):
        assert orchestrator.invalidate("never:cached") is False


# =============================================================================
# Freshness and fallback guarantees
# =============================================================================

class TestGuarantees:
    """Freshness, fallback survival and error isolation."""

    def test_persistent_hit_after_request_ends(self, orchestrator, upstream, clock):
        orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)
        assert orchestrator.end_request() == 1
        clock.advance(10)

        persisted = orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)
        promoted = orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)

        assert persisted.source == CacheSource.PERSISTENT
        assert persisted.age_seconds == 10
        assert persisted.data == {"temp": 72}
        assert promoted.source == CacheSource.MEMORY
        assert upstream.calls == 1

    @pytest.mark.parametrize("data_class", [DataClass.HISTORY, DataClass.TOP_WEEKLY, DataClass.RATINGS])
    def test_fallback_survives_failure(self, orchestrator, clock, data_class):
        upstream = Upstream({"items": [1, 2, 3]})
        orchestrator.resolve("k", data_class, upstream)
        orchestrator.end_request()
        orchestrator.persistent.clear()
        upstream.error = RuntimeError("boom")

        outcome = orchestrator.resolve("k", data_class, upstream)

        assert outcome.source == CacheSource.FALLBACK
        assert outcome.is_stale
        assert outcome.data == {"items": [1, 2, 3]}

    def test_error_payload_never_replaces_fallback(self, orchestrator, clock):
        upstream = Upstream({"tracks": [1]})
        orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)
        clock.advance(301)
        upstream.value = {"error": "Invalid API key"}

        outcome = orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)

        assert outcome.source == CacheSource.FALLBACK
        assert outcome.data == {"tracks": [1]}
        assert orchestrator.fallback.get("lastfm:recent") == {"tracks": [1]}
        assert orchestrator.get_stats()["fetch_errors"] == 1

    @pytest.mark.parametrize("value", [False, 0, "", []])
    def test_falsy_values_are_cached(self, orchestrator, value):
        upstream = Upstream(value)
        orchestrator.resolve("k", DataClass.METADATA, upstream)
        outcome = orchestrator.resolve("k", DataClass.METADATA, upstream)

        assert outcome.source == CacheSource.MEMORY
        assert outcome.data == value
        assert upstream.calls == 1

    def test_unknown_data_class_raises(self, orchestrator, upstream):
        with pytest.raises(ConfigurationError):
            orchestrator.resolve("k", "hourly_forecast", upstream)
        with pytest.raises(ConfigurationError):
            orchestrator.resolve_single_flight("k", "hourly_forecast", upstream)
        assert upstream.calls == 0

    def test_accepts_data_class_value_strings(self, orchestrator, upstream):
        outcome = orchestrator.resolve("k", "top_weekly", upstream)
        assert outcome.source == CacheSource.FRESH

    def test_persistent_write_failure_is_not_fatal(self, clock):
        orchestrator = CacheOrchestrator(FailingWriteStore(clock=clock), fallback_store=MemoryStore(clock=clock))
        upstream = Upstream({"temp": 72})

        outcome = orchestrator.resolve("k", DataClass.HISTORY, upstream)

        assert outcome.source == CacheSource.FRESH
        assert outcome.data == {"temp": 72}
        assert orchestrator.persistent.get("k") is MISSING
        assert orchestrator.fallback.get("k") == {"temp": 72}

    def test_empty_dedicated_fallback_store_is_used(self, store, clock):
        fallback_store = MemoryStore(clock=clock)
        orchestrator = CacheOrchestrator(store, fallback_store=fallback_store)

        orchestrator.resolve("k", DataClass.HISTORY, Upstream({"temp": 72}))

        assert orchestrator.fallback.store is fallback_store
        assert fallback_store.keys("tc:fb:") == ["tc:fb:k"]
        assert store.keys("tc:fb:") == []


# =============================================================================
# Conditional fetch
# =============================================================================

class TestNotModified:
    """NotModified from the fetcher re-confirms the fallback copy."""

    def test_reuses_fallback_for_conditional_class(self, orchestrator, clock):
        upstream = Upstream({"tracks": [1, 2]})
        orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)
        clock.advance(301)
        upstream.error = NotModified()

        outcome = orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)

        assert outcome.source == CacheSource.FRESH
        assert outcome.data == {"tracks": [1, 2]}
        assert orchestrator.persistent.get("lastfm:recent") == {"tracks": [1, 2]}

    def test_without_fallback_is_a_miss(self, orchestrator):
        upstream = Upstream()
        upstream.error = NotModified()

        outcome = orchestrator.resolve("lastfm:recent", DataClass.HISTORY, upstream)

        assert outcome.is_miss

    def test_non_conditional_class_serves_fallback(self, orchestrator, clock):
        upstream = Upstream({"playing": True})
        orchestrator.resolve("now", DataClass.LIVE_STATUS, upstream)
        clock.advance(31)
        upstream.error = NotModified()

        outcome = orchestrator.resolve("now", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.FALLBACK
        assert outcome.data == {"playing": True}


# =============================================================================
# Single flight
# =============================================================================

class TestSingleFlight:
    """Tests for resolve_single_flight()."""

    def test_behaves_like_resolve_when_uncontended(self, orchestrator, upstream):
        first = orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)
        second = orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)

        assert first.source == CacheSource.FRESH
        assert second.source == CacheSource.MEMORY
        assert orchestrator.lock.held_keys() == []

    def test_releases_lock_when_fetch_fails(self, orchestrator, upstream):
        upstream.error = FetchFailure("down")

        outcome = orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)

        assert outcome.is_miss
        assert not orchestrator.lock.is_locked("k")

    def test_lock_timeout_degrades_to_fallback(self, orchestrator, upstream, other_process):
        orchestrator.fallback.set("k", {"temp": 60})
        other_process.acquire("k")

        outcome = orchestrator.resolve_single_flight("k", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.FALLBACK
        assert outcome.data == {"temp": 60}
        assert upstream.calls == 0
        stats = orchestrator.get_stats()
        assert stats["lock_waits"] == 1
        assert stats["lock_timeouts"] == 1

    def test_lock_timeout_without_fallback_is_a_miss(self, orchestrator, upstream, other_process):
        other_process.acquire("k")

        outcome = orchestrator.resolve_single_flight("k", DataClass.LIVE_STATUS, upstream)

        assert outcome.is_miss
        assert upstream.calls == 0

    def test_zero_max_wait_falls_back_at_once(self, store, upstream, other_process):
        sleeps = []
        orchestrator = CacheOrchestrator(store, lock=SingleFlightLock(store, max_wait=5.0, sleep=sleeps.append))
        orchestrator.fallback.set("k", {"temp": 60})
        other_process.acquire("k")

        outcome = orchestrator.resolve_single_flight("k", DataClass.LIVE_STATUS, upstream, max_wait=0)

        assert outcome.source == CacheSource.FALLBACK
        assert sleeps == []
        assert orchestrator.get_stats()["lock_timeouts"] == 1

    def test_prefer_stale_skips_waiting(self, orchestrator, upstream, other_process):
        orchestrator.fallback.set("k", {"temp": 60})
        other_process.acquire("k")

        outcome = orchestrator.resolve_single_flight("k", DataClass.LIVE_STATUS, upstream, prefer_stale=True)

        assert outcome.source == CacheSource.FALLBACK
        assert orchestrator.get_stats()["lock_waits"] == 0

    def test_reads_winner_result_after_wait(self, store, upstream, other_process):
        def finish_other_fetch(_seconds):
            orchestrator.persistent.set("k", {"temp": 80}, 30)
            other_process.release("k")

        lock = SingleFlightLock(store, sleep=finish_other_fetch)
        orchestrator = CacheOrchestrator(store, lock=lock)
        other_process.acquire("k")

        outcome = orchestrator.resolve_single_flight("k", DataClass.LIVE_STATUS, upstream)

        assert outcome.source == CacheSource.PERSISTENT
        assert outcome.data == {"temp": 80}
        assert upstream.calls == 0

    def test_concurrent_callers_fetch_once(self):
        store = MemoryStore()
        lock = SingleFlightLock(store, max_wait=5.0, poll_interval=0.01)
        orchestrator = CacheOrchestrator(store, lock=lock)
        counter = {"calls": 0}
        counter_lock = threading.Lock()

        def slow_fetch(key):
            with counter_lock:
                counter["calls"] += 1
            time.sleep(0.2)
            return {"n": 1}

        callers = 8
        barrier = threading.Barrier(callers)
        results = []

        def worker():
            barrier.wait()
            results.append(orchestrator.resolve_single_flight("cold", DataClass.HISTORY, slow_fetch))

        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert counter["calls"] == 1
        assert len(results) == callers
        assert all(outcome.data == {"n": 1} for outcome in results)


# =============================================================================
# Invalidation
# =============================================================================

class TestInvalidation:
    """Tests for prefix and bulk invalidation."""

    @pytest.fixture
    def populated(self, orchestrator):
        for key in ("lastfm:a", "lastfm:b", "trakt:a"):
            orchestrator.resolve(key, DataClass.HISTORY, Upstream({"key": key}))
        return orchestrator

    def test_invalidate_keeps_fallback_by_default(self, populated):
        populated.invalidate("lastfm:a")
        assert populated.peek("lastfm:a") == {"key": "lastfm:a"}

        populated.invalidate("lastfm:a", include_fallback=True)
        assert populated.peek("lastfm:a") is MISSING

    def test_invalidate_class(self, populated):
        assert populated.invalidate_class("lastfm:") == 2
        assert populated.persistent.keys() == ["trakt:a"]
        assert populated.fallback.has("lastfm:a")

        assert populated.invalidate_class("lastfm:", include_fallback=True) == 2
        assert not populated.fallback.has("lastfm:a")

    def test_invalidate_all(self, populated):
        assert populated.invalidate_all() == 3
        assert populated.memory.size() == 0
        assert populated.persistent.size() == 0
        assert populated.fallback.size() == 3

    def test_invalidate_all_with_fallback(self, populated):
        assert populated.invalidate_all(include_fallback=True) == 3
        assert populated.fallback.size() == 0
        assert populated.peek("trakt:a") is MISSING


# =============================================================================
# Lifecycle and diagnostics
# =============================================================================

class TestLifecycle:
    """Request scoping, disabled mode and diagnostics."""

    def test_request_scope_clears_memory(self, orchestrator, upstream):
        with orchestrator.request_scope() as cache:
            cache.resolve("k", DataClass.HISTORY, upstream)
            assert orchestrator.memory.size() == 1
        assert orchestrator.memory.size() == 0
        assert orchestrator.persistent.has("k")

    def test_disabled_bypasses_every_layer(self, store, upstream):
        orchestrator = CacheOrchestrator(store, enabled=False)

        first = orchestrator.resolve("k", DataClass.HISTORY, upstream)
        second = orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)

        assert first.source == CacheSource.FRESH
        assert second.source == CacheSource.FRESH
        assert upstream.calls == 2
        assert store.keys() == []

    def test_stats(self, orchestrator, upstream):
        orchestrator.resolve("k", DataClass.LIVE_STATUS, upstream)
        orchestrator.resolve("k", DataClass.LIVE_STATUS, upstream)

        stats = orchestrator.get_stats()
        assert stats["misses"] == 1
        assert stats["hits_memory"] == 1
        assert stats["hit_rate_percent"] == 50.0

        orchestrator.reset_stats()
        assert orchestrator.get_stats()["misses"] == 0

    def test_diagnostics(self, orchestrator, upstream, other_process):
        orchestrator.resolve("k", DataClass.HISTORY, upstream)
        other_process.acquire("busy")

        diagnostics = orchestrator.get_diagnostics()

        assert diagnostics["enabled"] is True
        assert diagnostics["backend_type"] == "memory"
        sizes = {layer["name"]: layer["size"] for layer in diagnostics["layers"]}
        assert sizes == {"memory": 1, "persistent": 1, "fallback": 1, "validator": 0}
        assert diagnostics["locks"]["held_keys"] == []
        assert orchestrator.lock.is_locked("busy")

    def test_get_layer(self, orchestrator):
        assert orchestrator.get_layer("fallback") is orchestrator.fallback
        assert orchestrator.get_layer("nope") is None

    def test_outcome_metadata(self, orchestrator, upstream, clock):
        orchestrator.resolve("k", DataClass.HISTORY, upstream)
        orchestrator.end_request()
        clock.advance(125)

        outcome = orchestrator.resolve("k", DataClass.HISTORY, upstream)

        assert outcome.was_from_cache
        assert outcome.to_dict() == {
            "hasData": True,
            "source": "persistent",
            "age": 125,
            "ageHuman": "2 minutes ago",
            "isStale": False,
        }


class TestBuildFromSettings:
    """Tests for build_orchestrator()."""

    def test_uses_configured_values(self):
        config = Settings(
            database_url="sqlite://",
            key_prefix="app",
            memory_max_items=5,
            lock_lease_seconds=12,
            cache_enabled=False,
        )

        orchestrator = build_orchestrator(config)

        assert orchestrator.persistent.backend_type == "sql"
        assert orchestrator.memory.max_items == 5
        assert orchestrator.lock.lease_seconds == 12
        assert orchestrator.enabled is False

    def test_round_trip_over_sql(self):
        orchestrator = build_orchestrator(Settings(database_url="sqlite://"))
        upstream = Upstream({"ok": True})

        orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)
        orchestrator.end_request()
        outcome = orchestrator.resolve_single_flight("k", DataClass.HISTORY, upstream)

        assert outcome.source == CacheSource.PERSISTENT
        assert upstream.calls == 1
        assert orchestrator.lock.held_keys() == []
