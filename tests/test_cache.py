"""
Tests for the TTL cache, the request coalescer and the cache manager state machine.
"""
import threading
import time
from dataclasses import FrozenInstanceError

import pytest

from reportmate.cache import CacheEntry, CacheManager, CacheSource, RequestCoalescer, TTLCache
from reportmate.errors import CacheMissWithNoFallback, ConfigurationError

A = {"id": "A"}
B = {"id": "B"}


class CountingRefresh:
    """Refresh function that returns queued payloads or raises queued errors."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def manager(clock):
    return CacheManager(TTLCache(clock=clock))


# =============================================================================
# TTLCache
# =============================================================================

def test_get_missing_key_returns_none(clock):
    assert TTLCache(clock=clock).get("devices") is None


def test_entry_fresh_until_ttl_elapses(clock):
    cache = TTLCache(clock=clock)
    entry = cache.put("events", [A], now=100.0, ttl_seconds=30)

    assert cache.is_fresh(entry, 100.0)
    assert cache.is_fresh(entry, 129.9)
    assert not cache.is_fresh(entry, 130.0)


def test_put_replaces_whole_entry(clock):
    cache = TTLCache(clock=clock)
    first = cache.put("events", [A], now=0.0, ttl_seconds=30)
    second = cache.put("events", [B], now=5.0, ttl_seconds=30)

    assert cache.get("events") is second
    assert first.payload == [A]
    with pytest.raises(FrozenInstanceError):
        second.payload = []


def test_put_if_current_rejects_older_refresh(clock):
    cache = TTLCache(clock=clock)
    assert cache.put_if_current("apps", [B], started_at=50.0, ttl_seconds=30)

    # A refresh that started at t=40 finishing after the t=50 one must not win
    assert not cache.put_if_current("apps", [A], started_at=40.0, ttl_seconds=30)
    assert cache.get("apps").payload == [B]
    assert cache.get("apps").cached_at == 50.0


def test_put_if_current_accepts_same_or_later_start(clock):
    cache = TTLCache(clock=clock)
    cache.put_if_current("apps", [A], started_at=50.0, ttl_seconds=30)
    assert cache.put_if_current("apps", [B], started_at=60.0, ttl_seconds=30)
    assert cache.get("apps").payload == [B]


def test_invalidate_matching_drops_selected_entries(clock):
    cache = TTLCache(clock=clock)
    cache.put("applications", [{"serialNumber": "S1"}], now=0, ttl_seconds=30)
    cache.put("events", [{"serialNumber": "S2"}], now=0, ttl_seconds=30)

    dropped = cache.invalidate_matching(
        lambda entry: any(r.get("serialNumber") == "S1" for r in entry.payload)
    )

    assert dropped == ["applications"]
    assert cache.keys() == ["events"]


def test_clear_returns_count(clock):
    cache = TTLCache(clock=clock)
    cache.put("a", [], now=0, ttl_seconds=1)
    cache.put("b", [], now=0, ttl_seconds=1)
    assert cache.clear() == 2
    assert len(cache) == 0


def test_cache_entry_age_never_negative():
    entry = CacheEntry(key="k", payload=[], cached_at=10.0, ttl_seconds=5)
    assert entry.age_seconds(4.0) == 0.0
    assert entry.age_seconds(12.5) == 2.5


# =============================================================================
# CacheManager state machine
# =============================================================================

def test_first_request_refreshes_and_reports_fresh(manager, clock):
    refresh = CountingRefresh([A, B])

    result = manager.get("events", refresh, ttl_seconds=30)

    assert result.payload == [A, B]
    assert result.source is CacheSource.FRESH
    assert refresh.calls == 1


def test_ttl_scenario_hit_then_refresh(manager, clock):
    """TTL 30s: fill at t=0, hit at t=10 without fetching, refresh at t=40."""
    refresh = CountingRefresh([A, B], [B])

    clock.at(0)
    manager.get("events", refresh, ttl_seconds=30)

    clock.at(10)
    hit = manager.get("events", refresh, ttl_seconds=30)
    assert hit.payload == [A, B]
    assert hit.source is CacheSource.MEMORY_CACHE
    assert hit.age_seconds == 10
    assert refresh.calls == 1

    clock.at(40)
    refreshed = manager.get("events", refresh, ttl_seconds=30)
    assert refresh.calls == 2
    assert refreshed.payload == [B]
    assert refreshed.source is CacheSource.FRESH


def test_failed_refresh_serves_stale_payload(manager, clock):
    """Refresh at t=40 throws; the t=0 payload comes back tagged stale."""
    refresh = CountingRefresh([A, B], ConnectionError("upstream down"))

    clock.at(0)
    manager.get("events", refresh, ttl_seconds=30)

    clock.at(40)
    result = manager.get("events", refresh, ttl_seconds=30)

    assert result.payload == [A, B]
    assert result.source is CacheSource.STALE_FALLBACK
    assert result.is_stale
    assert "upstream down" in result.stale_error
    assert result.age_seconds == 40


def test_failed_refresh_without_cache_raises(manager):
    refresh = CountingRefresh(ConnectionError("upstream down"))

    with pytest.raises(CacheMissWithNoFallback) as excinfo:
        manager.get("events", refresh, ttl_seconds=30)

    assert excinfo.value.status_code == 503
    assert "upstream down" in excinfo.value.details
    assert manager.store.get("events") is None


def test_stale_fallback_has_no_age_limit(manager, clock):
    refresh = CountingRefresh([A], RuntimeError("still down"))
    clock.at(0)
    manager.get("devices", refresh, ttl_seconds=60)

    clock.at(7 * 24 * 3600)
    result = manager.get("devices", refresh, ttl_seconds=60)
    assert result.source is CacheSource.STALE_FALLBACK
    assert result.payload == [A]


def test_failed_refresh_keeps_previous_entry(manager, clock):
    refresh = CountingRefresh([A], RuntimeError("boom"))
    clock.at(0)
    manager.get("devices", refresh, ttl_seconds=30)
    clock.at(45)
    manager.get("devices", refresh, ttl_seconds=30)

    entry = manager.store.get("devices")
    assert entry.payload == [A]
    assert entry.cached_at == clock.start


def test_configuration_error_is_not_masked_by_stale_data(manager, clock):
    refresh = CountingRefresh([A], ConfigurationError(details="API_BASE_URL missing"))
    clock.at(0)
    manager.get("devices", refresh, ttl_seconds=30)

    clock.at(31)
    with pytest.raises(ConfigurationError):
        manager.get("devices", refresh, ttl_seconds=30)


def test_force_refresh_skips_fresh_entry(manager, clock):
    refresh = CountingRefresh([A], [B])
    manager.get("devices", refresh, ttl_seconds=300)

    result = manager.get("devices", refresh, ttl_seconds=300, force_refresh=True)

    assert refresh.calls == 2
    assert result.payload == [B]


def test_force_refresh_failure_still_falls_back(manager, clock):
    refresh = CountingRefresh([A], RuntimeError("boom"))
    manager.get("devices", refresh, ttl_seconds=300)

    result = manager.get("devices", refresh, ttl_seconds=300, force_refresh=True)
    assert result.source is CacheSource.STALE_FALLBACK


def test_stats_count_hits_misses_and_fallbacks(manager, clock):
    refresh = CountingRefresh([A], RuntimeError("boom"))
    clock.at(0)
    manager.get("events", refresh, ttl_seconds=30)
    clock.at(5)
    manager.get("events", refresh, ttl_seconds=30)
    clock.at(60)
    manager.get("events", refresh, ttl_seconds=30)

    stats = manager.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2
    assert stats["refreshes"] == 1
    assert stats["refresh_failures"] == 1
    assert stats["stale_served"] == 1
    assert stats["entries"] == 1


def test_describe_reports_freshness(manager, clock):
    assert manager.describe("events") is None
    clock.at(0)
    manager.get("events", CountingRefresh([A, B]), ttl_seconds=30)
    clock.at(31)

    info = manager.describe("events")
    assert info["records"] == 2
    assert info["fresh"] is False
    assert info["ageSeconds"] == 31


# =============================================================================
# Coalescing
# =============================================================================

def _wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_coalescer_shares_one_call_between_concurrent_callers():
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        release.wait(5)
        return [A, B]

    results = []
    threads = [threading.Thread(target=lambda: results.append(coalescer.run("k", slow_fetch)))]
    threads[0].start()
    assert _wait_for(lambda: coalescer.is_in_flight("k"))

    for _ in range(4):
        t = threading.Thread(target=lambda: results.append(coalescer.run("k", slow_fetch)))
        threads.append(t)
        t.start()
    assert _wait_for(lambda: coalescer.get_stats()["coalesced_total"] == 4)

    release.set()
    for t in threads:
        t.join(5)

    assert len(calls) == 1
    assert results == [[A, B]] * 5
    assert not coalescer.is_in_flight("k")


def test_coalescer_propagates_error_to_waiters():
    coalescer = RequestCoalescer(timeout=5)
    release = threading.Event()

    def failing_fetch():
        release.wait(5)
        raise ValueError("bad upstream")

    errors = []

    def call():
        try:
            coalescer.run("k", failing_fetch)
        except ValueError as e:
            errors.append(str(e))

    first = threading.Thread(target=call)
    first.start()
    assert _wait_for(lambda: coalescer.is_in_flight("k"))
    second = threading.Thread(target=call)
    second.start()
    assert _wait_for(lambda: coalescer.get_stats()["coalesced_total"] == 1)
    release.set()
    first.join(5)
    second.join(5)

    assert errors == ["bad upstream", "bad upstream"]


def test_coalescer_waiter_times_out():
    coalescer = RequestCoalescer(timeout=0.05)
    release = threading.Event()
    holder = threading.Thread(target=lambda: coalescer.run("k", lambda: release.wait(5)))
    holder.start()
    assert _wait_for(lambda: coalescer.is_in_flight("k"))

    with pytest.raises(TimeoutError):
        coalescer.run("k", lambda: [A])

    release.set()
    holder.join(5)


def test_concurrent_misses_trigger_one_refresh(clock):
    manager = CacheManager(TTLCache(clock=clock), coalesce_timeout=5)
    release = threading.Event()
    calls = []

    def refresh():
        calls.append(1)
        release.wait(5)
        return [A]

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(manager.get("apps", refresh, ttl_seconds=30)))
        for _ in range(3)
    ]
    threads[0].start()
    assert _wait_for(lambda: manager._coalescer.is_in_flight("apps"))
    for t in threads[1:]:
        t.start()
    assert _wait_for(lambda: manager._coalescer.get_stats()["coalesced_total"] == 2)
    release.set()
    for t in threads:
        t.join(5)

    assert len(calls) == 1
    assert [r.payload for r in results] == [[A]] * 3
    assert all(r.source is CacheSource.FRESH for r in results)


# =============================================================================
# Store injection and invalidation
# =============================================================================

def test_manager_keeps_injected_empty_store(clock):
    store = TTLCache(clock=clock)
    assert len(store) == 0

    manager = CacheManager(store)

    assert manager.store is store
    assert manager.store.now() == clock.start


def test_invalidated_key_is_a_miss(manager, clock):
    refresh = CountingRefresh([A], [B])
    clock.at(0)
    manager.get("events", refresh, ttl_seconds=300)

    clock.at(1)
    assert manager.store.invalidate("events")
    assert manager.store.keys() == []
    assert len(manager.store) == 0
    assert manager.describe("events") is None

    clock.at(2)
    result = manager.get("events", refresh, ttl_seconds=300)
    assert result.source is CacheSource.FRESH
    assert result.payload == [B]


def test_invalidated_key_without_payload_has_no_fallback(manager, clock):
    manager.get("events", CountingRefresh([A]), ttl_seconds=300)
    clock.at(1)
    manager.store.clear()

    clock.at(2)
    with pytest.raises(CacheMissWithNoFallback):
        manager.get("events", CountingRefresh(RuntimeError("down")), ttl_seconds=300)


def test_put_if_current_rejects_refresh_started_before_invalidation(clock):
    cache = TTLCache(clock=clock)
    clock.at(5)
    cache.invalidate("apps")

    assert not cache.put_if_current("apps", [A], started_at=clock.start + 4, ttl_seconds=30)
    assert not cache.get("apps").has_payload
    assert cache.put_if_current("apps", [B], started_at=clock.start + 6, ttl_seconds=30)
    assert cache.get("apps").payload == [B]


def test_refresh_in_flight_during_invalidation_is_not_stored(manager, clock):
    """A device check-in invalidation must not be undone by an older refresh."""
    release = threading.Event()

    def old_refresh():
        release.wait(5)
        return [{"serialNumber": "S1", "version": "old"}]

    clock.at(0)
    worker = threading.Thread(target=lambda: manager.get("applications", old_refresh, ttl_seconds=300))
    worker.start()
    assert _wait_for(lambda: manager._coalescer.is_in_flight("applications"))

    clock.at(1)
    manager.store.invalidate("applications")
    release.set()
    worker.join(5)

    clock.at(2)
    result = manager.get(
        "applications",
        lambda: [{"serialNumber": "S1", "version": "new"}],
        ttl_seconds=300,
    )
    assert result.source is CacheSource.FRESH
    assert result.payload[0]["version"] == "new"
