"""Error taxonomy for resolution, caching and sync.

Recovery rules:

- ``ConfigurationError``: the resolver skips the offending layer.
- ``BackendUnavailableError``: the search coordinator moves on to the next
  backend when ``fallback_on_error`` is set, otherwise it is surfaced.
- ``AmbiguousMatchError``: always surfaced with its candidate list.
- ``ConflictError``: reported as a ``conflict`` sync-plan entry.
- ``CacheCorruptionError``: the cache instance resets itself and the caller
  proceeds uncached.
"""

from __future__ import annotations


class FolioError(Exception):
    """Base class for every error raised by folio."""


class ConfigurationError(FolioError):
    """An invalid priority policy or settings document."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class BackendUnavailableError(FolioError):
    """A backend could not be reached (network, auth, timeout)."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source} backend unavailable: {reason}")
        self.source = source
        self.reason = reason


class ElementNotFoundError(FolioError):
    """No element matched a name lookup."""

    def __init__(self, query: str, where: str = ""):
        suffix = f" in {where}" if where else ""
        super().__init__(f"No element matching '{query}' found{suffix}")
        self.query = query


class AmbiguousMatchError(FolioError):
    """A fuzzy lookup matched more than one element."""

    def __init__(self, query: str, candidates: list[str]):
        listed = ", ".join(candidates)
        super().__init__(
            f"'{query}' matches {len(candidates)} elements: {listed}. "
            "Use the full name to pick one."
        )
        self.query = query
        self.candidates = candidates


class ConflictError(FolioError):
    """Local and remote state diverged; the write was not applied."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Conflict on {key}: {reason}")
        self.key = key
        self.reason = reason


class CacheCorruptionError(FolioError):
    """The cache's size or recency bookkeeping is inconsistent."""


class LockTimeoutError(FolioError):
    """An element path lock could not be acquired within the wait budget."""

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock on {path}")
        self.path = path
        self.timeout = timeout


class ContentRejectedError(FolioError):
    """The content validator refused fetched or outgoing content."""


class SyncDisabledError(FolioError):
    """A writing sync operation was requested while sync is disabled."""
