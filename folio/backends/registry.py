"""Read-only community registry.

The registry publishes one JSON index::

    {"index": {"personas": [{"name": ..., "path": "library/personas/x.md",
                             "version": ..., "sha": ..., "tags": [...]}]},
     "total_elements": 1}

Content is fetched from ``raw_base_url + "/" + path``. A flat
``{"elements": [...]}`` document with a ``type`` on every entry is also
accepted.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from loguru import logger

from folio.backends.base import Backend
from folio.cache.lru import LRUCache
from folio.errors import BackendUnavailableError, ElementNotFoundError
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    IndexEntry,
)


class RegistryBackend(Backend):
    """The shared catalog; never written by folio."""

    source = BackendSource.REGISTRY
    writable = False

    def __init__(
        self,
        index_url: str,
        raw_base_url: str,
        client: Optional[httpx.Client] = None,
        cache: Optional[LRUCache] = None,
        timeout: float = 10.0,
    ):
        super().__init__(cache)
        self.index_url = index_url
        self.raw_base_url = raw_base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def _get(self, url: str) -> httpx.Response:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise BackendUnavailableError(self.tag, f"GET {url} failed: {e}") from e
        if response.status_code >= 500 or response.status_code in (401, 403, 429):
            raise BackendUnavailableError(self.tag, f"{url} returned {response.status_code}")
        return response

    def _load_entries(self, element_type: Optional[ElementType]) -> list[IndexEntry]:
        response = self._get(self.index_url)
        if response.status_code != 200:
            raise BackendUnavailableError(self.tag, f"index returned {response.status_code}")
        try:
            document = response.json()
        except ValueError as e:
            raise BackendUnavailableError(self.tag, f"index is not valid JSON: {e}") from e

        entries = [
            entry
            for entry in self._iter_entries(document)
            if element_type is None or entry.type == element_type
        ]
        logger.debug(f"Registry index holds {len(entries)} matching elements")
        return entries

    def _iter_entries(self, document: Any):
        if not isinstance(document, dict):
            return
        if isinstance(document.get("index"), dict):
            grouped = document["index"].items()
        else:
            grouped = [(None, document.get("elements") or [])]

        for type_name, items in grouped:
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict) or not item.get("name"):
                    continue
                try:
                    element_type = ElementType.parse(item.get("type") or type_name or "")
                except ValueError:
                    logger.debug(f"Skipping registry item of unknown type: {item.get('name')}")
                    continue
                yield self._to_entry(element_type, item)

    @staticmethod
    def _to_entry(element_type: ElementType, item: dict) -> IndexEntry:
        key = ElementKey.of(element_type, item.get("path", "").rsplit("/", 1)[-1] or item["name"])
        tags = item.get("tags") or []
        return IndexEntry(
            name=key.name,
            type=element_type,
            path=item.get("path") or f"library/{key.path}",
            version=str(item.get("version") or ""),
            description=str(item.get("description") or ""),
            tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            author=str(item.get("author") or ""),
            revision=str(item.get("sha") or ""),
        )

    def fetch(self, key: ElementKey) -> str:
        entry = self.get_entry(key)
        if entry is None:
            raise ElementNotFoundError(str(key), "community registry")
        response = self._get(f"{self.raw_base_url}/{entry.path.lstrip('/')}")
        if response.status_code == 404:
            raise ElementNotFoundError(str(key), "community registry")
        if response.status_code != 200:
            raise BackendUnavailableError(self.tag, f"fetch of {entry.path} returned {response.status_code}")
        return response.text
