import time

import pytest

from luggage_cache.cache import CacheCategory, CacheStore, InMemoryPersistence
from luggage_cache.errors import CacheEntryTooLarge, CacheMiss, CacheStoreIOError

ITEM = CacheCategory.ITEM_IDENTIFICATION
AIRLINE = CacheCategory.AIRLINE_POLICIES


class FailingPersistence(InMemoryPersistence):
    def __init__(self, fail_writes=False, fail_deletes=False, fail_reads=False):
        super().__init__()
        self.fail_writes = fail_writes
        self.fail_deletes = fail_deletes
        self.fail_reads = fail_reads

    def read_all(self):
        if self.fail_reads:
            raise CacheStoreIOError("disk unreadable")
        return super().read_all()

    def write_entry(self, key, data):
        if self.fail_writes:
            raise CacheStoreIOError("disk full")
        super().write_entry(key, data)

    def delete_entry(self, key):
        if self.fail_deletes:
            raise CacheStoreIOError("read-only filesystem")
        super().delete_entry(key)

    def delete_all(self):
        if self.fail_deletes:
            raise CacheStoreIOError("read-only filesystem")
        super().delete_all()


def assert_statistics_consistent(store):
    stats = store.statistics()
    assert stats.total_entries == len(store)
    assert sum(stats.category_counts.values()) == stats.total_entries
    assert sum(stats.category_sizes.values()) == stats.total_size_bytes == store.total_size_bytes


def test_entry_is_served_until_ttl_elapses(store, clock):
    store.put("k1", ITEM, b"x" * 100, ttl=60)

    clock.advance(30)
    entry = store.get("k1")
    assert entry is not None
    assert entry.payload == b"x" * 100

    clock.advance(31)
    assert store.get("k1") is None


def test_entry_expires_exactly_at_created_plus_ttl(store, clock):
    entry = store.put("k1", ITEM, b"payload", ttl=10)

    clock.now = entry.created_at + 10 - 0.001
    assert "k1" in store

    clock.now = entry.created_at + 10
    assert "k1" not in store
    with pytest.raises(CacheMiss):
        store.lookup("k1")


def test_expired_reads_do_not_delete_entries(store, clock):
    store.put("k1", ITEM, b"payload", ttl=5)
    clock.advance(10)

    assert store.get("k1") is None
    assert len(store) == 1
    assert store.clear_expired() == 1
    assert len(store) == 0


def test_default_ttl_comes_from_category(store, clock):
    entry = store.put("policy", AIRLINE, b"{}")
    assert entry.expires_at - entry.created_at == AIRLINE.default_ttl


def test_ttl_overrides_replace_category_defaults(clock):
    store = CacheStore(clock=clock, ttl_overrides={AIRLINE: 10.0})
    entry = store.put("policy", "airline_policies", b"{}")
    assert entry.expires_at == clock.now + 10.0


def test_put_rejects_invalid_arguments(store):
    with pytest.raises(ValueError):
        store.put("k", ITEM, b"x", ttl=0)
    with pytest.raises(TypeError):
        store.put("k", ITEM, "not bytes")
    with pytest.raises(ValueError):
        store.put("k", "unknown_category", b"x")
    assert len(store) == 0


def test_overwrite_replaces_size_accounting(store):
    store.put("k1", ITEM, b"x" * 300)
    store.put("k1", ITEM, b"y" * 100)

    assert len(store) == 1
    assert store.total_size_bytes == 100
    assert store.get("k1").payload == b"y" * 100
    assert_statistics_consistent(store)


def test_eviction_removes_oldest_entries_first(store, clock):
    for index in range(1, 6):
        store.put(f"k{index}", ITEM, b"x" * 300, ttl=3600)
        clock.advance(1)

    assert store.total_size_bytes <= 1000
    assert any(f"k{index}" not in store for index in (1, 2, 3))
    assert "k5" in store
    assert sorted(store.keys()) == ["k3", "k4", "k5"]
    assert_statistics_consistent(store)


def test_eviction_ties_break_by_insertion_order(store):
    # The fake clock does not move, so every entry shares created_at.
    for index in range(1, 5):
        store.put(f"k{index}", ITEM, b"x" * 300)

    assert sorted(store.keys()) == ["k2", "k3", "k4"]


def test_eviction_prefers_expired_entries(store, clock):
    store.put("short", ITEM, b"x" * 400, ttl=10)
    store.put("long", ITEM, b"x" * 400, ttl=3600)
    clock.advance(20)

    store.put("new", ITEM, b"x" * 400, ttl=3600)

    assert "long" in store
    assert "new" in store
    assert "short" not in store.keys()


def test_entry_larger_than_budget_is_rejected(store):
    store.put("small", ITEM, b"x" * 10)

    with pytest.raises(CacheEntryTooLarge) as excinfo:
        store.put("huge", ITEM, b"x" * 1001)

    assert excinfo.value.size_bytes == 1001
    assert "huge" not in store
    assert "small" in store


def test_entry_filling_the_whole_budget_evicts_everything_else(store):
    store.put("a", ITEM, b"x" * 500)
    store.put("b", ITEM, b"x" * 500)
    store.put("full", ITEM, b"x" * 1000)

    assert store.keys() == ["full"]
    assert store.total_size_bytes == 1000


def test_budget_holds_after_mixed_puts(store, clock):
    sizes = [120, 700, 50, 999, 333, 333, 333, 1, 640]
    for index, size in enumerate(sizes):
        store.put(f"k{index}", ITEM if index % 2 else AIRLINE, b"x" * size)
        clock.advance(0.5)
        assert store.total_size_bytes <= store.max_size_bytes
        assert_statistics_consistent(store)


def test_max_entries_budget(clock):
    store = CacheStore(max_entries=2, clock=clock)
    for key in ("a", "b", "c"):
        store.put(key, ITEM, b"x")
        clock.advance(1)

    assert sorted(store.keys()) == ["b", "c"]


def test_clear_category_only_touches_that_category(store):
    for index in range(3):
        store.put(f"policy{index}", AIRLINE, b"p" * 10)
    store.put("item0", ITEM, b"i" * 20)
    store.put("item1", ITEM, b"i" * 30)

    assert store.clear_category("airline_policies") == 3

    stats = store.statistics()
    assert stats.total_entries == 2
    assert stats.category_counts.get("airline_policies", 0) == 0
    assert stats.category_counts["item_identification"] == 2
    assert stats.category_sizes["item_identification"] == 50
    assert_statistics_consistent(store)


def test_clear_all_empties_store_and_persistence(store, persistence):
    store.put("a", ITEM, b"1")
    store.put("b", AIRLINE, b"2")

    assert store.clear_all() == 2
    assert len(store) == 0
    assert persistence.read_all() == {}
    assert store.statistics().usage_percentage == 0.0


def test_statistics_report_usage(store):
    store.put("a", ITEM, b"x" * 250)
    stats = store.statistics()

    assert stats.total_size_bytes == 250
    assert stats.max_size_bytes == 1000
    assert stats.usage_percentage == pytest.approx(25.0)
    assert stats.formatted_size == "250 bytes"
    assert stats.formatted_max_size == "1.0 KB"


def test_reopened_store_restores_entries(clock, persistence):
    first = CacheStore(persistence=persistence, clock=clock)
    first.put("a", ITEM, b"alpha", ttl=100)
    first.put("b", AIRLINE, b"beta", ttl=100)

    second = CacheStore(persistence=persistence, clock=clock)
    restored = second.get("a")

    assert restored == first.get("a")
    assert sorted(second.keys()) == ["a", "b"]
    # The insertion counter continues after the restored entries.
    assert second.put("c", ITEM, b"gamma").sequence > restored.sequence


def test_reopened_store_drops_corrupted_records(clock, persistence):
    CacheStore(persistence=persistence, clock=clock).put("good", ITEM, b"ok")
    persistence.write_entry("bad", b"definitely not a record")

    store = CacheStore(persistence=persistence, clock=clock)

    assert store.keys() == ["good"]
    assert "bad" not in persistence.read_all()


def test_reopened_store_enforces_smaller_budget(clock, persistence):
    first = CacheStore(max_size_bytes=1000, persistence=persistence, clock=clock)
    for key in ("a", "b", "c"):
        first.put(key, ITEM, b"x" * 300)
        clock.advance(1)

    second = CacheStore(max_size_bytes=500, persistence=persistence, clock=clock)

    assert second.keys() == ["c"]
    assert sorted(persistence.read_all()) == ["c"]


def test_failed_write_leaves_store_unchanged(clock):
    backend = FailingPersistence()
    store = CacheStore(persistence=backend, clock=clock)
    store.put("a", ITEM, b"old")
    backend.fail_writes = True

    with pytest.raises(CacheStoreIOError):
        store.put("a", ITEM, b"new")
    with pytest.raises(CacheStoreIOError):
        store.put("b", ITEM, b"other")

    assert store.get("a").payload == b"old"
    assert "b" not in store
    assert_statistics_consistent(store)


def test_failed_deletes_are_absorbed(clock):
    backend = FailingPersistence()
    store = CacheStore(persistence=backend, clock=clock)
    store.put("a", AIRLINE, b"1")
    store.put("b", ITEM, b"2")
    backend.fail_deletes = True

    assert store.clear_category(AIRLINE) == 1
    assert store.clear_all() == 1
    assert len(store) == 0


def test_unreadable_backend_starts_empty(clock):
    store = CacheStore(persistence=FailingPersistence(fail_reads=True), clock=clock)
    assert len(store) == 0
    store.put("a", ITEM, b"1")
    assert "a" in store


def test_periodic_cleanup_sweeps_expired_entries(store, clock):
    store.put("stale", ITEM, b"x", ttl=1)
    store.put("fresh", ITEM, b"x", ttl=3600)
    clock.advance(5)

    store.start_periodic_cleanup(0.01)
    deadline = time.time() + 2.0
    while "stale" in store.keys() and time.time() < deadline:
        time.sleep(0.01)
    store.stop_periodic_cleanup()

    assert store.keys() == ["fresh"]


def test_statistics_count_maintenance_work(store, clock):
    store.put("stale", ITEM, b"x" * 100, ttl=1)
    store.put("a", ITEM, b"x" * 300)
    store.put("b", ITEM, b"x" * 300)
    clock.advance(5)

    assert store.clear_expired() == 1
    swept = store.statistics()
    assert swept.cleanup_runs == 1
    assert swept.expired_removed == 1
    assert swept.freed_bytes == 100
    assert swept.last_cleanup_at == clock.now
    assert swept.evictions == 0

    store.put("c", ITEM, b"x" * 300)
    store.put("d", ITEM, b"x" * 300)

    stats = store.statistics()
    assert sorted(store.keys()) == ["b", "c", "d"]
    assert stats.writes == 5
    assert stats.evictions == 1
    assert stats.freed_bytes == 400
    assert stats.cleanup_runs == 1
