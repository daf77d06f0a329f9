"""Backend capability surface shared by local, remote and registry stores.

Every backend lists :class:`IndexEntry` descriptors and fetches content;
writable ones also write and delete. Listings may go through a shared
:class:`LRUCache` keyed ``"<source>:list:<type>"`` so that a write to one
backend invalidates exactly that backend's listings.
"""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import yaml

from folio.cache.lru import LRUCache
from folio.errors import FolioError
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    IndexEntry,
    SearchResult,
)
from folio.search.scoring import score_entry

_FRONT_MATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)


class ReadOnlyBackendError(FolioError):
    """A write was attempted against a read-only backend."""


def content_digest(content: str | bytes) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def git_blob_sha(content: str | bytes) -> str:
    """The SHA git assigns to ``content`` as a blob.

    Lets a local file be compared with a remote listing that only carries
    blob SHAs, without downloading the remote file.
    """
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha1(b"blob %d\0" % len(data) + data).hexdigest()


def parse_front_matter(text: str) -> dict[str, Any]:
    """Return the YAML front matter of a Markdown element, or ``{}``."""
    match = _FRONT_MATTER.match(text)
    if not match:
        return {}
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}
    return data if isinstance(data, dict) else {}


def entry_from_content(
    key: ElementKey,
    content: str,
    path: str = "",
    revision: str = "",
) -> IndexEntry:
    """Build an index entry from element content and its front matter."""
    meta = parse_front_matter(content)
    tags = meta.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",") if t.strip()]
    privacy = meta.get("privacy") if isinstance(meta.get("privacy"), dict) else {}
    return IndexEntry(
        name=key.name,
        type=key.type,
        path=path or key.path,
        version=str(meta.get("version") or ""),
        description=str(meta.get("description") or ""),
        tags=[str(t) for t in tags],
        author=str(meta.get("author") or ""),
        digest=content_digest(content),
        revision=revision or git_blob_sha(content),
        local_only=meta.get("local_only") is True or privacy.get("local_only") is True,
    )


class Backend(ABC):
    """One of the three fixed element stores."""

    source: BackendSource
    writable: bool = False

    def __init__(self, cache: Optional[LRUCache] = None):
        self._cache = cache

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _load_entries(self, element_type: Optional[ElementType]) -> list[IndexEntry]:
        """Read the backend's index, bypassing the listing cache."""

    @abstractmethod
    def fetch(self, key: ElementKey) -> str:
        """Return the full content of ``key``.

        Raises:
            ElementNotFoundError: If the backend has no such element.
            BackendUnavailableError: If the backend cannot be reached.
        """

    def _write(self, key: ElementKey, content: str, expected_revision: Optional[str]) -> str:
        raise ReadOnlyBackendError(f"{self.source.display_name} is read-only")

    def _delete(self, key: ElementKey, expected_revision: Optional[str]) -> None:
        raise ReadOnlyBackendError(f"{self.source.display_name} is read-only")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def tag(self) -> str:
        return self.source.value

    def list_entries(self, element_type: Optional[ElementType] = None) -> list[IndexEntry]:
        cache_key = f"{self.tag}:list:{element_type.value if element_type else '*'}"
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return list(cached)
        entries = self._load_entries(element_type)
        if self._cache is not None:
            self._cache.set(cache_key, list(entries))
        return entries

    def get_entry(self, key: ElementKey) -> Optional[IndexEntry]:
        for entry in self.list_entries(key.type):
            if entry.key == key:
                return entry
        return None

    def search(self, query: str, element_type: Optional[ElementType] = None) -> list[SearchResult]:
        """Score every listed entry against ``query``; best first."""
        results = []
        for entry in self.list_entries(element_type):
            score, match_type = score_entry(entry, query)
            if score > 0:
                results.append(
                    SearchResult(entry=entry, source=self.source, score=score, match_type=match_type)
                )
        results.sort(key=lambda r: (-r.score, r.key.sort_key()))
        return results

    def write(self, key: ElementKey, content: str, expected_revision: Optional[str] = None) -> str:
        """Write ``key`` and drop this backend's cached listings. Returns the new revision.

        ``expected_revision=None`` means create: writing over an existing
        element without naming its revision raises :class:`ConflictError`.
        """
        revision = self._write(key, content, expected_revision)
        self.invalidate_listings()
        return revision

    def delete(self, key: ElementKey, expected_revision: Optional[str] = None) -> None:
        self._delete(key, expected_revision)
        self.invalidate_listings()

    def invalidate_listings(self) -> int:
        if self._cache is None:
            return 0
        return self._cache.invalidate_prefix(f"{self.tag}:")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.tag}>"
