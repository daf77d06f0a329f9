"""Unified search coordinator.

Walks the backends in the resolved priority order, one at a time, asking
the search-result cache before each backend. With ``stop_on_first`` the
walk ends at the first backend that produced a hit, unless ``include_all``
or ``check_all_for_updates`` asks for every backend so versions can be
compared. Hits are then merged by element key: the highest-priority
backend's hit is canonical, and under ``include_all`` every backend's hit
is kept, tagged with its source.

A backend that fails (or exceeds its timeout) is recorded in the page's
``failures`` and skipped when ``fallback_on_error`` is set; otherwise the
error propagates to the caller.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import functools
import hashlib
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, TypeVar

from loguru import logger

from folio.backends.base import Backend
from folio.cache.lru import LRUCache, search_result_cache
from folio.config.source_priority import (
    CallOverride,
    PriorityPolicy,
    SourcePriorityResolver,
    apply_override,
)
from folio.errors import BackendUnavailableError
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    SearchResult,
    VersionConflict,
    normalize_name,
)
from folio.search.scoring import compare_versions, parse_version

T = TypeVar("T")

DEFAULT_TIMEOUT = 10.0


class SortBy(Enum):
    RELEVANCE = "relevance"
    NAME = "name"
    VERSION = "version"
    SOURCE = "source"


@dataclass
class SearchOptions:
    """Per-call search options. Every backend is included by default."""

    element_type: Optional[ElementType] = None
    include_local: bool = True
    include_remote: bool = True
    include_registry: bool = True
    include_all: bool = False
    preferred_source: Optional[BackendSource] = None
    source_priority: Optional[tuple[BackendSource, ...]] = None
    sort_by: SortBy = SortBy.RELEVANCE
    page: int = 1
    page_size: int = 20

    def includes(self, source: BackendSource) -> bool:
        return {
            BackendSource.LOCAL: self.include_local,
            BackendSource.REMOTE: self.include_remote,
            BackendSource.REGISTRY: self.include_registry,
        }[source]


@dataclass
class BackendFailure:
    source: BackendSource
    reason: str


@dataclass
class SearchPage:
    """One page of merged results plus what happened along the way."""

    results: list[SearchResult] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    has_more: bool = False
    sources_searched: list[BackendSource] = field(default_factory=list)
    failures: list[BackendFailure] = field(default_factory=list)
    cache_hits: int = 0


@dataclass
class DuplicateGroup:
    """One element key found on more than one backend."""

    key: ElementKey
    versions: dict[BackendSource, str]
    version_conflict: Optional[VersionConflict] = None


class SearchCoordinator:
    def __init__(
        self,
        backends: Iterable[Backend] | Mapping[BackendSource, Backend],
        resolver: Optional[SourcePriorityResolver] = None,
        cache: Optional[LRUCache] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ):
        if isinstance(backends, Mapping):
            backends = backends.values()
        self.backends: dict[BackendSource, Backend] = {b.source: b for b in backends}
        self.resolver = resolver or SourcePriorityResolver.from_environment()
        self.cache = cache if cache is not None else search_result_cache()
        self.timeout = timeout if timeout and timeout > 0 else None
        # One worker per backend, so a hung backend cannot starve the others.
        self._executors: dict[BackendSource, concurrent.futures.ThreadPoolExecutor] = {}
        self._pending: dict[BackendSource, concurrent.futures.Future] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
            self._pending.clear()
        for executor in executors:
            executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Order
    # ------------------------------------------------------------------

    def effective_order(self, options: SearchOptions) -> tuple[PriorityPolicy, list[BackendSource]]:
        """The policy for this call and the backends it will actually visit."""
        override = CallOverride(order=options.source_priority) if options.source_priority else None
        policy = self.resolver.resolve(override)

        active = tuple(
            s for s in policy.priority if options.includes(s) and s in self.backends
        )
        policy = dataclasses.replace(policy, priority=active)
        if options.preferred_source is not None:
            policy = apply_override(policy, CallOverride(prefer=options.preferred_source))
        return policy, list(policy.priority)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str = "", options: Optional[SearchOptions] = None, **kwargs) -> SearchPage:
        """Search the active backends in priority order and return one page."""
        opts = options or SearchOptions(**kwargs)
        policy, order = self.effective_order(opts)
        exhaustive = opts.include_all or policy.check_all_for_updates or not policy.stop_on_first

        page = SearchPage(page=max(opts.page, 1), page_size=max(opts.page_size, 1))
        hits: dict[BackendSource, list[SearchResult]] = {}

        for source in order:
            try:
                results, cached = self._search_backend(source, query, opts.element_type)
            except BackendUnavailableError as e:
                page.failures.append(BackendFailure(source, e.reason))
                if not policy.fallback_on_error:
                    raise
                logger.warning(f"Skipping {source.display_name}: {e.reason}")
                continue

            page.sources_searched.append(source)
            page.cache_hits += int(cached)
            hits[source] = results
            if results and not exhaustive:
                logger.debug(f"Stopping after {source.value}: {len(results)} hits")
                break

        merged = self._merge(hits, order, opts.include_all)
        ordered = self._sort(merged, opts.sort_by, order)

        start = (page.page - 1) * page.page_size
        page.total = len(ordered)
        page.results = ordered[start : start + page.page_size]
        page.has_more = start + page.page_size < page.total
        return page

    def _cache_key(self, source: BackendSource, query: str, element_type: Optional[ElementType]) -> str:
        digest = hashlib.sha1(
            f"{query.strip().lower()}|{element_type.value if element_type else '*'}".encode("utf-8")
        ).hexdigest()
        return f"{source.value}:search:{digest}"

    def _search_backend(
        self, source: BackendSource, query: str, element_type: Optional[ElementType]
    ) -> tuple[list[SearchResult], bool]:
        key = self._cache_key(source, query, element_type)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True

        backend = self.backends[source]
        results = self._call(source, lambda: backend.search(query, element_type))
        self.cache.set(key, results)
        return results, False

    def _call(self, source: BackendSource, fn: Callable[[], T]) -> T:
        """Run one backend call, bounded by the per-backend timeout."""
        if self.timeout is None:
            return fn()
        with self._lock:
            previous = self._pending.get(source)
            if previous is not None and not previous.done():
                raise BackendUnavailableError(source.value, "previous call still running")
            executor = self._executors.get(source)
            if executor is None:
                executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"folio-{source.value}"
                )
                self._executors[source] = executor
            future = executor.submit(fn)
            self._pending[source] = future
        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise BackendUnavailableError(
                source.value, f"timed out after {self.timeout:.1f}s"
            ) from None

    # ------------------------------------------------------------------
    # Merge and sort
    # ------------------------------------------------------------------

    def _merge(
        self,
        hits: dict[BackendSource, list[SearchResult]],
        order: list[BackendSource],
        include_all: bool,
    ) -> list[SearchResult]:
        groups: dict[ElementKey, list[SearchResult]] = {}
        for source in order:
            for result in hits.get(source, []):
                groups.setdefault(result.key, []).append(result)

        merged: list[SearchResult] = []
        for group in groups.values():
            duplicate = len({r.source for r in group}) > 1
            conflict = _version_conflict(group, order) if duplicate else None
            canonical = group[0]
            newest = _newest(group)
            update_from = (
                newest.source
                if newest is not None and compare_versions(newest.version, canonical.version) > 0
                else None
            )

            keep = group if include_all else [canonical]
            for result in keep:
                merged.append(
                    dataclasses.replace(
                        result,
                        is_duplicate=duplicate,
                        version_conflict=conflict,
                        update_available_from=update_from if result is canonical else None,
                    )
                )
        return merged

    def _sort(
        self, results: list[SearchResult], sort_by: SortBy, order: list[BackendSource]
    ) -> list[SearchResult]:
        rank = {s: i for i, s in enumerate(order)}

        if sort_by == SortBy.NAME:
            return sorted(results, key=lambda r: (r.key.name, rank[r.source]))
        if sort_by == SortBy.SOURCE:
            return sorted(results, key=lambda r: (rank[r.source], -r.score, r.key.name))
        if sort_by == SortBy.VERSION:

            def by_version(a: SearchResult, b: SearchResult) -> int:
                c = compare_versions(b.version, a.version)
                if c:
                    return c
                ka, kb = (rank[a.source], a.key.name), (rank[b.source], b.key.name)
                return (ka > kb) - (ka < kb)

            return sorted(results, key=functools.cmp_to_key(by_version))
        return sorted(results, key=lambda r: (-r.score, rank[r.source], r.key.name))

    # ------------------------------------------------------------------
    # Lookups built on search
    # ------------------------------------------------------------------

    def _exhaustive(self, name: str, element_type: Optional[ElementType]) -> list[SearchResult]:
        page = self.search(
            name,
            SearchOptions(element_type=element_type, include_all=True, page_size=10_000),
        )
        return page.results

    def find_by_name(
        self, name: str, element_type: Optional[ElementType] = None
    ) -> Optional[SearchResult]:
        """Exact normalized name match if any backend has one, else the best hit."""
        page = self.search(name, SearchOptions(element_type=element_type, page_size=10_000))
        wanted = normalize_name(name)
        for result in page.results:
            if result.key.name == wanted:
                return result
        return page.results[0] if page.results else None

    def check_duplicates(
        self, name: str = "", element_type: Optional[ElementType] = None
    ) -> list[DuplicateGroup]:
        """Element keys present on more than one backend, scanning every backend."""
        groups: dict[ElementKey, dict[BackendSource, str]] = {}
        conflicts: dict[ElementKey, Optional[VersionConflict]] = {}
        for result in self._exhaustive(name, element_type):
            if not result.is_duplicate:
                continue
            groups.setdefault(result.key, {})[result.source] = result.version
            conflicts[result.key] = result.version_conflict
        return [
            DuplicateGroup(key=key, versions=versions, version_conflict=conflicts[key])
            for key, versions in sorted(groups.items(), key=lambda kv: kv[0].sort_key())
        ]

    def version_comparison(
        self, name: str, element_type: Optional[ElementType] = None
    ) -> Optional[VersionConflict]:
        """Per-backend versions of the element named ``name`` and which one to use."""
        wanted = normalize_name(name)
        matches = [r for r in self._exhaustive(name, element_type) if r.key.name == wanted]
        if not matches:
            return None
        _, order = self.effective_order(SearchOptions(element_type=element_type))
        versions = {r.source: r.version for r in matches}
        recommended, reason = recommend_source(versions, order)
        return VersionConflict(versions=versions, recommended=recommended, reason=reason)

    def invalidate(self, source: Optional[BackendSource] = None) -> int:
        """Drop cached results (and listings) for one backend, or for all."""
        sources = [source] if source else list(self.backends)
        dropped = 0
        for s in sources:
            dropped += self.cache.invalidate_prefix(f"{s.value}:")
            backend = self.backends.get(s)
            if backend is not None:
                dropped += backend.invalidate_listings()
        if dropped:
            logger.debug(f"Invalidated {dropped} cached entries for {', '.join(s.value for s in sources)}")
        return dropped


# ----------------------------------------------------------------------
# Version helpers
# ----------------------------------------------------------------------


def recommend_source(
    versions: Mapping[BackendSource, str], order: list[BackendSource]
) -> tuple[BackendSource, str]:
    """Highest known version wins; otherwise the highest-priority source."""
    rank = {s: i for i, s in enumerate(order)}
    candidates = sorted(versions, key=lambda s: rank.get(s, len(rank)))
    best = candidates[0]
    for s in candidates[1:]:
        if compare_versions(versions[s], versions[best]) > 0:
            best = s
    if any(compare_versions(versions[best], versions[s]) > 0 for s in candidates):
        return best, f"highest version ({versions[best]})"
    return candidates[0], "highest-priority source"


def _newest(group: list[SearchResult]) -> Optional[SearchResult]:
    best: Optional[SearchResult] = None
    for r in group:
        if parse_version(r.version) is None:
            continue
        if best is None or compare_versions(r.version, best.version) > 0:
            best = r
    return best


def _version_conflict(group: list[SearchResult], order: list[BackendSource]) -> Optional[VersionConflict]:
    versions = {r.source: r.version for r in group if r.version}
    if len(set(versions.values())) < 2:
        return None
    recommended, reason = recommend_source(versions, order)
    return VersionConflict(versions=versions, recommended=recommended, reason=reason)
