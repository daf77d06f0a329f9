"""The user's remote portfolio repository, over the GitHub contents API.

Listings come from ``GET /repos/{owner}/{repo}/contents/{type}``; each file's
blob SHA becomes the entry's ``revision``. Writes ``PUT`` the new content
with the revision the caller last saw, so a concurrent change on the remote
is rejected by GitHub (409/422) and surfaces as :class:`ConflictError`
instead of being overwritten.
"""

from __future__ import annotations

import base64
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from loguru import logger

from folio.backends.base import Backend, entry_from_content, git_blob_sha
from folio.cache.lru import LRUCache
from folio.errors import BackendUnavailableError, ConflictError, ElementNotFoundError
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    IndexEntry,
)

GITHUB_API_URL = "https://api.github.com"
TOKEN_ENV_VARS = ("FOLIO_GITHUB_TOKEN", "GITHUB_TOKEN")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialProvider(ABC):
    """Supplies the opaque token used for remote calls."""

    @abstractmethod
    def token(self) -> Optional[str]:
        """Return a bearer token, or None when unauthenticated."""


class EnvTokenProvider(CredentialProvider):
    """Reads the first non-empty token from the environment."""

    def __init__(self, names: tuple[str, ...] = TOKEN_ENV_VARS):
        self.names = names

    def token(self) -> Optional[str]:
        for name in self.names:
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return None


class StaticTokenProvider(CredentialProvider):
    def __init__(self, token: Optional[str]):
        self._token = token

    def token(self) -> Optional[str]:
        return self._token


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


class GitHubBackend(Backend):
    """Read/write access to ``owner/repository`` on one branch."""

    source = BackendSource.REMOTE
    writable = True

    def __init__(
        self,
        owner: str,
        repository: str,
        branch: str = "main",
        credentials: Optional[CredentialProvider] = None,
        client: Optional[httpx.Client] = None,
        api_url: str = GITHUB_API_URL,
        cache: Optional[LRUCache] = None,
        fetch_metadata: bool = True,
        timeout: float = 10.0,
    ):
        super().__init__(cache)
        self.owner = owner
        self.repository = repository
        self.branch = branch
        self.credentials = credentials or EnvTokenProvider()
        self.api_url = api_url.rstrip("/")
        self.fetch_metadata = fetch_metadata
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repository}"

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {"Accept": accept, "X-GitHub-Api-Version": "2022-11-28"}
        token = self.credentials.token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        accept: str = "application/vnd.github+json",
        **kwargs: Any,
    ) -> httpx.Response:
        if not self.owner:
            raise BackendUnavailableError(self.tag, "no remote repository owner configured")
        url = f"{self.api_url}{path}"
        try:
            response = self._client.request(method, url, headers=self._headers(accept), **kwargs)
        except httpx.HTTPError as e:
            raise BackendUnavailableError(self.tag, f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise BackendUnavailableError(self.tag, "authentication failed (check your token)")
        if response.status_code in (403, 429):
            if response.headers.get("X-RateLimit-Remaining") == "0" or response.status_code == 429:
                reset = response.headers.get("X-RateLimit-Reset", "unknown")
                raise BackendUnavailableError(self.tag, f"rate limit exceeded (resets at {reset})")
            raise BackendUnavailableError(self.tag, f"access to {self.owner}/{self.repository} denied")
        if response.status_code >= 500:
            raise BackendUnavailableError(self.tag, f"GitHub returned {response.status_code}")
        return response

    @staticmethod
    def _message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message", response.reason_phrase))
        except ValueError:
            return response.reason_phrase

    # ------------------------------------------------------------------
    # Backend surface
    # ------------------------------------------------------------------

    def _load_entries(self, element_type: Optional[ElementType]) -> list[IndexEntry]:
        types = [element_type] if element_type else list(ElementType)
        entries: list[IndexEntry] = []
        for t in types:
            response = self._request(
                "GET", f"{self._repo_path}/contents/{t.value}", params={"ref": self.branch}
            )
            if response.status_code == 404:
                continue
            if response.status_code != 200:
                raise BackendUnavailableError(
                    self.tag, f"listing {t.value} failed: {self._message(response)}"
                )
            try:
                items = response.json()
            except ValueError as e:
                raise BackendUnavailableError(self.tag, f"listing {t.value} is not valid JSON: {e}") from e
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict) or item.get("type") != "file" or not str(item.get("name", "")).endswith(".md"):
                    continue
                entries.append(self._entry_for(t, item))
        logger.debug(f"Indexed {len(entries)} remote elements from {self.owner}/{self.repository}")
        return entries

    def _entry_for(self, element_type: ElementType, item: dict) -> IndexEntry:
        key = ElementKey.of(element_type, item["name"])
        path = item.get("path") or key.path
        if self.fetch_metadata:
            content = self._download(path)
            if content is not None:
                return entry_from_content(key, content, path=path, revision=item.get("sha", ""))
        return IndexEntry(name=key.name, type=key.type, path=path, revision=item.get("sha", ""))

    def _download(self, path: str) -> Optional[str]:
        response = self._request(
            "GET",
            f"{self._repo_path}/contents/{path}",
            accept="application/vnd.github.raw",
            params={"ref": self.branch},
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise BackendUnavailableError(self.tag, f"download of {path} failed: {self._message(response)}")
        return response.text

    def fetch(self, key: ElementKey) -> str:
        entry = self.get_entry(key)
        content = self._download(entry.path if entry else key.path)
        if content is None:
            raise ElementNotFoundError(str(key), "remote portfolio")
        return content

    def _write(self, key: ElementKey, content: str, expected_revision: Optional[str]) -> str:
        entry = self.get_entry(key)
        path = entry.path if entry else key.path
        body: dict[str, Any] = {
            "message": f"Update {key.type.value[:-1]} {key.name}" if expected_revision else f"Add {key.type.value[:-1]} {key.name}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if expected_revision:
            body["sha"] = expected_revision

        response = self._request("PUT", f"{self._repo_path}/contents/{path}", json=body)
        if response.status_code in (409, 422):
            raise ConflictError(str(key), f"remote changed concurrently: {self._message(response)}")
        if response.status_code not in (200, 201):
            raise BackendUnavailableError(self.tag, f"write of {path} failed: {self._message(response)}")
        try:
            sha = response.json().get("content", {}).get("sha", "")
        except (ValueError, AttributeError):
            sha = git_blob_sha(content)
        logger.info(f"Pushed {key} to {self.owner}/{self.repository}@{self.branch}")
        return sha

    def _delete(self, key: ElementKey, expected_revision: Optional[str]) -> None:
        entry = self.get_entry(key)
        if entry is None:
            return
        body = {
            "message": f"Remove {key.type.value[:-1]} {key.name}",
            "sha": expected_revision or entry.revision,
            "branch": self.branch,
        }
        response = self._request("DELETE", f"{self._repo_path}/contents/{entry.path}", json=body)
        if response.status_code in (409, 422):
            raise ConflictError(str(key), f"remote changed concurrently: {self._message(response)}")
        if response.status_code not in (200, 404):
            raise BackendUnavailableError(self.tag, f"delete of {entry.path} failed: {self._message(response)}")
        logger.info(f"Removed {key} from {self.owner}/{self.repository}@{self.branch}")
