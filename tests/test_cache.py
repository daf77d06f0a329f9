"""Tests for the bounded LRU cache."""

import threading

from folio.cache.lru import LRUCache, estimate_size, listing_cache, search_result_cache


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _cache(**kwargs) -> tuple[LRUCache, _Clock]:
    clock = _Clock()
    options = {"max_entries": 3, "max_memory_bytes": 10_000, "ttl": 60.0, "clock": clock}
    options.update(kwargs)
    return LRUCache(**options), clock


# --- Round-trip and TTL Tests ---


def test_set_then_get_before_expiry():
    cache, clock = _cache()
    cache.set("k", "value")
    clock.advance(59)
    assert cache.get("k") == "value"


def test_get_after_expiry_misses_and_frees_memory():
    cache, clock = _cache()
    cache.set("k", "value")
    assert cache.memory_bytes > 0

    clock.advance(60)
    assert cache.get("k") is None
    assert cache.memory_bytes == 0
    assert len(cache) == 0


def test_ttl_measured_from_insertion_not_access():
    cache, clock = _cache()
    cache.set("k", "v")
    clock.advance(40)
    assert cache.get("k") == "v"
    clock.advance(30)
    assert cache.get("k") is None


def test_contains_respects_ttl():
    cache, clock = _cache()
    cache.set("k", "v")
    assert "k" in cache
    clock.advance(61)
    assert "k" not in cache


def test_no_ttl_never_expires():
    cache, clock = _cache(ttl=None)
    cache.set("k", "v")
    clock.advance(10**6)
    assert cache.get("k") == "v"


def test_cached_empty_list_is_a_hit():
    cache, _ = _cache()
    cache.set("k", [])
    assert cache.get("k") == []
    assert cache.health().hits == 1


# --- Eviction Tests ---


def test_eviction_removes_least_recently_inserted():
    cache, _ = _cache()
    for key in ("a", "b", "c"):
        cache.set(key, key)
    cache.set("d", "d")
    assert cache.keys() == ["b", "c", "d"]
    assert cache.get("a") is None


def test_get_refreshes_recency_and_changes_eviction_order():
    cache, _ = _cache()
    for key in ("a", "b", "c"):
        cache.set(key, key)
    assert cache.get("a") == "a"
    cache.set("d", "d")
    assert "a" in cache
    assert cache.get("b") is None
    assert cache.keys() == ["c", "a", "d"]


def test_memory_budget_evicts_until_it_fits():
    cache, _ = _cache(max_entries=100, max_memory_bytes=250)
    cache.set("a", "x" * 50)  # 100 bytes
    cache.set("b", "x" * 50)
    cache.set("c", "x" * 50)
    assert cache.keys() == ["b", "c"]
    assert cache.memory_bytes == 200
    assert cache.health().evictions == 1


def test_value_larger_than_budget_is_not_cached():
    cache, _ = _cache(max_memory_bytes=100)
    cache.set("small", "x")
    assert cache.set("huge", "x" * 1000) is False
    assert cache.get("huge") is None
    assert cache.get("small") == "x"


def test_replacing_a_key_does_not_double_count():
    cache, _ = _cache()
    cache.set("k", "x" * 10)
    cache.set("k", "x" * 20)
    assert len(cache) == 1
    assert cache.memory_bytes == estimate_size("x" * 20)


# --- Invalidation Tests ---


def test_invalidate_prefix_is_scoped():
    cache, _ = _cache(max_entries=10)
    cache.set("local:search:1", [1])
    cache.set("local:list:*", [2])
    cache.set("remote:search:1", [3])
    assert cache.invalidate_prefix("local:") == 2
    assert cache.keys() == ["remote:search:1"]


def test_clear_resets_memory():
    cache, _ = _cache()
    cache.set("a", "a")
    cache.clear()
    assert len(cache) == 0
    assert cache.memory_bytes == 0


# --- Health Tests ---


def test_health_of_empty_cache():
    cache, _ = _cache()
    report = cache.health()
    assert report.status == "empty"
    assert report.entries == 0
    assert report.oldest_entry_age == 0.0
    assert report.hit_ratio == 0.0


def test_health_reports_usage_and_hit_ratio():
    cache, clock = _cache()
    cache.set("a", "a")
    clock.advance(5)
    cache.set("b", "b")
    cache.get("a")
    cache.get("missing")
    clock.advance(2)

    report = cache.health()
    assert report.status == "populated"
    assert report.entries == 2
    assert report.oldest_entry_age == 7
    assert report.hits == 1
    assert report.misses == 1
    assert report.hit_ratio == 0.5

    cache.reset_stats()
    assert cache.health().hits == 0


def test_corrupted_accounting_resets_the_cache():
    cache, _ = _cache()
    cache.set("a", "a")
    cache._memory = -5  # simulate a bookkeeping bug
    assert cache.get("a") is None
    assert len(cache) == 0
    assert cache.memory_bytes == 0
    assert cache.set("b", "b") is True
    assert cache.get("b") == "b"


# --- Concurrency Tests ---


def test_concurrent_sets_keep_accounting_consistent():
    cache = LRUCache(max_entries=50, max_memory_bytes=10**6, ttl=None)

    def worker(offset: int):
        for i in range(200):
            cache.set(f"k{(offset + i) % 80}", "x" * (i % 7))
            cache.get(f"k{i % 80}")

    threads = [threading.Thread(target=worker, args=(n * 13,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) <= 50
    expected = sum(estimate_size(cache.get(k)) for k in cache.keys())
    assert cache.memory_bytes == expected


# --- Size and Preset Tests ---


def test_estimate_size_rules():
    assert estimate_size("abcd") == 8
    assert estimate_size(42) == 8
    assert estimate_size([]) == 32
    assert estimate_size(["ab"]) == 36
    assert estimate_size({}) == 64


def test_presets():
    search = search_result_cache()
    assert (search.max_entries, search.ttl, search.name) == (100, 300, "search")
    listing = listing_cache(max_entries=5)
    assert (listing.max_entries, listing.ttl, listing.name) == (5, 900, "listing")
