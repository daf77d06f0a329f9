"""In-memory backend for embedding and deterministic tests.

Counts every call so callers can assert which backends were consulted, and
can be told to fail, simulating an unreachable store.
"""

from __future__ import annotations

import time
from typing import Optional

from folio.backends.base import Backend, entry_from_content, git_blob_sha
from folio.cache.lru import LRUCache
from folio.errors import BackendUnavailableError, ConflictError, ElementNotFoundError
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    IndexEntry,
)


def render_element(
    name: str,
    version: str = "",
    description: str = "",
    tags: Optional[list[str]] = None,
    body: str = "",
    local_only: bool = False,
) -> str:
    """Markdown with front matter, in the shape the indexers read."""
    lines = ["---", f"name: {name}"]
    if version:
        lines.append(f"version: '{version}'")
    if description:
        lines.append(f"description: {description}")
    if tags:
        lines.append(f"tags: [{', '.join(tags)}]")
    if local_only:
        lines.append("local_only: true")
    lines += ["---", "", body or f"# {name}", ""]
    return "\n".join(lines)


class InMemoryBackend(Backend):
    def __init__(
        self,
        source: BackendSource,
        writable: Optional[bool] = None,
        cache: Optional[LRUCache] = None,
        delay: float = 0.0,
    ):
        super().__init__(cache)
        self.source = source
        self.writable = source != BackendSource.REGISTRY if writable is None else writable
        self.delay = delay
        self.fail_with: Optional[Exception] = None
        self._contents: dict[ElementKey, str] = {}

        self.list_calls = 0
        self.fetch_calls = 0
        self.write_calls = 0
        self.delete_calls = 0

    def add(
        self,
        name: str,
        element_type: ElementType | str = ElementType.PERSONA,
        version: str = "",
        description: str = "",
        tags: Optional[list[str]] = None,
        content: Optional[str] = None,
        local_only: bool = False,
    ) -> ElementKey:
        """Seed an element without counting as a write."""
        key = ElementKey.of(element_type, name)
        self._contents[key] = content if content is not None else render_element(
            name, version, description, tags, local_only=local_only
        )
        return key

    def keys(self) -> list[ElementKey]:
        return sorted(self._contents, key=ElementKey.sort_key)

    def _check(self) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    def _load_entries(self, element_type: Optional[ElementType]) -> list[IndexEntry]:
        self.list_calls += 1
        self._check()
        return [
            entry_from_content(key, content)
            for key, content in sorted(self._contents.items(), key=lambda kv: kv[0].sort_key())
            if element_type is None or key.type == element_type
        ]

    def fetch(self, key: ElementKey) -> str:
        self.fetch_calls += 1
        self._check()
        try:
            return self._contents[key]
        except KeyError:
            raise ElementNotFoundError(str(key), self.source.display_name) from None

    def _write(self, key: ElementKey, content: str, expected_revision: Optional[str]) -> str:
        if not self.writable:
            return super()._write(key, content, expected_revision)
        self.write_calls += 1
        self._check()
        current = self._contents.get(key)
        if current is not None and expected_revision is None:
            raise ConflictError(str(key), "element already exists")
        if current is not None and git_blob_sha(current) != expected_revision:
            raise ConflictError(str(key), "content changed since it was indexed")
        self._contents[key] = content
        return git_blob_sha(content)

    def _delete(self, key: ElementKey, expected_revision: Optional[str]) -> None:
        if not self.writable:
            return super()._delete(key, expected_revision)
        self.delete_calls += 1
        self._check()
        self._contents.pop(key, None)


def unavailable(source: BackendSource, reason: str = "connection refused") -> BackendUnavailableError:
    return BackendUnavailableError(source.value, reason)
