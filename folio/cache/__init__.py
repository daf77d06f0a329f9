"""Cache layer: bounded, expiring LRU store shared by search and indexers."""

from folio.cache.lru import CacheHealthReport, LRUCache, listing_cache, search_result_cache

__all__ = ["CacheHealthReport", "LRUCache", "listing_cache", "search_result_cache"]
