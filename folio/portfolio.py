"""Portfolio facade: one object wiring backends, resolver, search and sync.

This is the surface thin clients (the CLI, an editor integration) talk to::

    portfolio = Portfolio()
    page = portfolio.search("scholar", include_all=True)
    plan = portfolio.sync("pull", "additive", dry_run=True)
"""

from __future__ import annotations

from typing import Mapping, Optional

from folio.backends.base import Backend
from folio.backends.github import CredentialProvider, GitHubBackend
from folio.backends.local import LocalBackend
from folio.backends.registry import RegistryBackend
from folio.cache.lru import MB, CacheHealthReport, listing_cache, search_result_cache
from folio.config.source_priority import (
    PriorityPolicy,
    SourcePriorityResolver,
    ValidationResult,
    build_policy,
    validate_policy,
    validate_priority,
)
from folio.config.store import ConfigStore, Settings
from folio.search.coordinator import SearchCoordinator, SearchOptions, SearchPage
from folio.sync.engine import (
    ContentValidator,
    ElementOperation,
    ElementResult,
    PortfolioSyncEngine,
    SyncResult,
    accept_content,
)
from folio.sync.plan import SyncDirection, SyncMode, SyncPlan


class Portfolio:
    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        settings: Optional[Settings] = None,
        local: Optional[Backend] = None,
        remote: Optional[Backend] = None,
        registry: Optional[Backend] = None,
        credentials: Optional[CredentialProvider] = None,
        validator: ContentValidator = accept_content,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.store = store or ConfigStore()
        self.settings = settings or self.store.load_settings()
        s = self.settings

        self.search_cache = search_result_cache(
            max_entries=s.cache.max_entries,
            max_memory_bytes=int(s.cache.max_memory_mb * MB),
            ttl=s.cache.ttl_seconds,
        )
        self.listing_cache = listing_cache()

        self.local = local or LocalBackend(s.portfolio_dir, cache=self.listing_cache)
        self.remote = remote or GitHubBackend(
            owner=s.github.owner,
            repository=s.github.repository,
            branch=s.github.branch,
            api_url=s.github.api_url,
            credentials=credentials,
            cache=self.listing_cache,
            timeout=s.backend_timeout_seconds,
        )
        self.registry = registry or RegistryBackend(
            index_url=s.registry.index_url,
            raw_base_url=s.registry.raw_base_url,
            cache=self.listing_cache,
            timeout=s.backend_timeout_seconds,
        )

        self.resolver = SourcePriorityResolver.from_environment(
            persisted=self.store.load_priority_document, environ=environ
        )
        self.coordinator = SearchCoordinator(
            [self.local, self.remote, self.registry],
            resolver=self.resolver,
            cache=self.search_cache,
            timeout=s.backend_timeout_seconds,
        )
        self.engine = PortfolioSyncEngine(
            self.local,
            self.remote,
            registry=self.registry,
            settings=s.sync,
            validator=validator,
            on_write=self.coordinator.invalidate,
        )

    def close(self) -> None:
        self.coordinator.close()
        for backend in (self.remote, self.registry):
            close = getattr(backend, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> "Portfolio":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str = "", options: Optional[SearchOptions] = None, **kwargs) -> SearchPage:
        return self.coordinator.search(query, options, **kwargs)

    # ------------------------------------------------------------------
    # Priority policy
    # ------------------------------------------------------------------

    def get_priority_policy(self) -> PriorityPolicy:
        return self.resolver.resolve()

    def set_priority_policy(self, policy: PriorityPolicy | Mapping | list) -> ValidationResult:
        """Validate and persist ``policy``. Nothing is written when it is invalid."""
        if isinstance(policy, PriorityPolicy):
            result = validate_priority(list(policy.priority))
            document = policy.to_dict()
        else:
            result = validate_policy(policy)
            document = policy
        if result.is_valid:
            self.store.save_priority(build_policy(document))
        return result

    def reset_priority_policy(self) -> bool:
        return self.store.clear_priority()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(
        self,
        direction: SyncDirection | str = SyncDirection.PULL,
        mode: SyncMode | str = SyncMode.ADDITIVE,
        dry_run: bool = False,
        force: bool = False,
        confirm: bool = False,
    ) -> SyncPlan | SyncResult:
        return self.engine.sync(direction, mode, dry_run=dry_run, force=force, confirm=confirm)

    def manage_element(self, operation: ElementOperation | str, name: str = "", **options) -> ElementResult:
        return self.engine.manage(operation, name, **options)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def cache_health(self) -> CacheHealthReport:
        return self.search_cache.health()

    def listing_cache_health(self) -> CacheHealthReport:
        return self.listing_cache.health()
