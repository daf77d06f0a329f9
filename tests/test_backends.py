"""Tests for the local, GitHub and registry backends."""

import base64
import json
import tempfile
import threading
from pathlib import Path

import httpx
import pytest

from folio.backends.base import (
    ReadOnlyBackendError,
    content_digest,
    git_blob_sha,
    parse_front_matter,
)
from folio.backends.github import GitHubBackend, StaticTokenProvider
from folio.backends.local import LocalBackend
from folio.backends.memory import InMemoryBackend, render_element
from folio.backends.registry import RegistryBackend
from folio.cache.lru import LRUCache
from folio.config.source_priority import PolicyLayer, SourcePriorityResolver
from folio.errors import (
    BackendUnavailableError,
    ConflictError,
    ElementNotFoundError,
    LockTimeoutError,
)
from folio.locks import PathLockManager, atomic_write
from folio.models.element import BackendSource, ElementKey, ElementType
from folio.search.coordinator import SearchCoordinator

SCHOLAR = render_element("scholar", version="1.0.0", description="Careful researcher", tags=["research"])


# --- Front Matter Tests ---


def test_parse_front_matter():
    meta = parse_front_matter(SCHOLAR)
    assert meta["version"] == "1.0.0"
    assert meta["tags"] == ["research"]
    assert parse_front_matter("# no front matter") == {}
    assert parse_front_matter("---\nkey: [unclosed\n---\n") == {}
    assert parse_front_matter("---\n- a\n- b\n---\n") == {}


def test_git_blob_sha_matches_git():
    # `printf 'hello\n' | git hash-object --stdin`
    assert git_blob_sha("hello\n") == "ce013625030ba8dba906f756967f9e9ca394464a"


# --- Local Backend Tests ---


def test_local_lists_and_fetches():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = LocalBackend(tmpdir)
        backend.ensure_layout()
        Path(tmpdir, "personas", "Victorian_Scholar.md").write_text(SCHOLAR)
        Path(tmpdir, "skills", "notes.txt").write_text("ignored")

        entries = backend.list_entries()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.key == ElementKey.of("persona", "victorian-scholar")
        assert entry.version == "1.0.0"
        assert entry.description == "Careful researcher"
        assert entry.digest == content_digest(SCHOLAR)
        assert entry.revision == git_blob_sha(SCHOLAR)
        assert entry.last_modified is not None

        assert backend.fetch(entry.key) == SCHOLAR
        with pytest.raises(ElementNotFoundError):
            backend.fetch(ElementKey.of("persona", "missing"))


def test_local_missing_root_lists_nothing():
    backend = LocalBackend("/nonexistent/folio/portfolio")
    assert backend.list_entries() == []


def test_local_write_is_atomic_and_invalidates_listing():
    with tempfile.TemporaryDirectory() as tmpdir:
        cache = LRUCache(ttl=None)
        backend = LocalBackend(tmpdir, cache=cache)
        key = ElementKey.of("skill", "summarize")

        assert backend.list_entries(ElementType.SKILL) == []
        revision = backend.write(key, SCHOLAR)

        assert revision == git_blob_sha(SCHOLAR)
        assert Path(tmpdir, "skills", "summarize.md").read_text() == SCHOLAR
        assert [e.key for e in backend.list_entries(ElementType.SKILL)] == [key]
        assert not list(Path(tmpdir, "skills").glob("*.tmp"))


def test_local_write_detects_stale_revision():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = LocalBackend(tmpdir)
        key = ElementKey.of("persona", "scholar")
        backend.write(key, SCHOLAR)
        with pytest.raises(ConflictError):
            backend.write(key, "new content", expected_revision="0" * 40)
        assert backend.fetch(key) == SCHOLAR


def test_local_create_refuses_existing_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = LocalBackend(tmpdir)
        key = ElementKey.of("persona", "scholar")
        backend.write(key, SCHOLAR)
        with pytest.raises(ConflictError):
            backend.write(key, "replacement")
        assert backend.fetch(key) == SCHOLAR


def test_local_write_fails_closed_when_locked():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = LocalBackend(tmpdir, locks=PathLockManager(timeout=0.05))
        key = ElementKey.of("persona", "scholar")
        path = backend.path_for(key)

        with backend.locks.hold(path):
            result = {}

            def attempt():
                try:
                    backend.write(key, SCHOLAR)
                except LockTimeoutError as e:
                    result["error"] = e

            worker = threading.Thread(target=attempt)
            worker.start()
            worker.join()

        assert isinstance(result["error"], LockTimeoutError)
        assert not path.exists()


def test_local_delete():
    with tempfile.TemporaryDirectory() as tmpdir:
        backend = LocalBackend(tmpdir)
        key = ElementKey.of("persona", "scholar")
        backend.write(key, SCHOLAR)
        backend.delete(key)
        assert backend.list_entries() == []
        backend.delete(key)


def test_atomic_write_creates_parents():
    with tempfile.TemporaryDirectory() as tmpdir:
        target = Path(tmpdir, "a", "b", "c.yml")
        atomic_write(target, "x: 1\n")
        assert target.read_text() == "x: 1\n"


# --- GitHub Backend Tests ---


class _FakeGitHub:
    """Just enough of the contents API for the backend."""

    def __init__(self, files: dict[str, str]):
        self.files = dict(files)
        self.requests: list[httpx.Request] = []
        self.status_override: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override:
            return httpx.Response(self.status_override, json={"message": "nope"})

        prefix = "/repos/alice/portfolio/contents/"
        assert request.url.path.startswith(prefix)
        path = request.url.path[len(prefix):]

        if request.method == "GET":
            if path in self.files:
                assert request.headers["Accept"] == "application/vnd.github.raw"
                return httpx.Response(200, text=self.files[path])
            listing = [
                {"name": p.split("/")[-1], "path": p, "sha": git_blob_sha(c), "type": "file"}
                for p, c in sorted(self.files.items())
                if p.startswith(path + "/")
            ]
            return httpx.Response(200, json=listing) if listing else httpx.Response(404, json={"message": "Not Found"})

        body = json.loads(request.content)
        current = self.files.get(path)
        if current is not None and body.get("sha") != git_blob_sha(current):
            return httpx.Response(409, json={"message": f"{path} does not match {body.get('sha')}"})
        if current is None and body.get("sha"):
            return httpx.Response(422, json={"message": "sha supplied for new file"})

        if request.method == "DELETE":
            del self.files[path]
            return httpx.Response(200, json={"commit": {}})

        content = base64.b64decode(body["content"]).decode("utf-8")
        self.files[path] = content
        return httpx.Response(201 if current is None else 200, json={"content": {"sha": git_blob_sha(content)}})


def _github(fake: _FakeGitHub, **kwargs) -> GitHubBackend:
    return GitHubBackend(
        owner="alice",
        repository="portfolio",
        credentials=StaticTokenProvider("t0ken"),
        client=httpx.Client(transport=httpx.MockTransport(fake.handler)),
        **kwargs,
    )


def test_github_lists_with_metadata():
    fake = _FakeGitHub({"personas/scholar.md": SCHOLAR})
    backend = _github(fake)

    entries = backend.list_entries(ElementType.PERSONA)

    assert len(entries) == 1
    assert entries[0].version == "1.0.0"
    assert entries[0].revision == git_blob_sha(SCHOLAR)
    assert entries[0].digest == content_digest(SCHOLAR)
    assert fake.requests[0].headers["Authorization"] == "Bearer t0ken"


def test_github_listing_without_metadata_skips_downloads():
    fake = _FakeGitHub({"personas/scholar.md": SCHOLAR})
    entries = _github(fake, fetch_metadata=False).list_entries()
    assert entries[0].version == ""
    assert entries[0].digest == ""
    assert all(r.headers["Accept"] != "application/vnd.github.raw" for r in fake.requests)


def test_github_write_with_expected_revision():
    fake = _FakeGitHub({"personas/scholar.md": SCHOLAR})
    backend = _github(fake)
    key = ElementKey.of("persona", "scholar")
    updated = SCHOLAR.replace("1.0.0", "1.1.0")

    new_sha = backend.write(key, updated, expected_revision=git_blob_sha(SCHOLAR))

    assert new_sha == git_blob_sha(updated)
    assert fake.files["personas/scholar.md"] == updated


def test_github_stale_revision_is_a_conflict():
    fake = _FakeGitHub({"personas/scholar.md": SCHOLAR})
    backend = _github(fake)
    with pytest.raises(ConflictError):
        backend.write(ElementKey.of("persona", "scholar"), "x", expected_revision="deadbeef")
    assert fake.files["personas/scholar.md"] == SCHOLAR


def test_github_auth_and_rate_limit_are_unavailable():
    fake = _FakeGitHub({})
    fake.status_override = 401
    with pytest.raises(BackendUnavailableError) as exc:
        _github(fake).list_entries()
    assert "authentication" in exc.value.reason

    def limited(request):
        return httpx.Response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1700000000"})

    backend = GitHubBackend(
        owner="alice", repository="portfolio",
        client=httpx.Client(transport=httpx.MockTransport(limited)),
    )
    with pytest.raises(BackendUnavailableError) as exc:
        backend.list_entries()
    assert "rate limit" in exc.value.reason


def test_github_transport_error_is_unavailable():
    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = GitHubBackend(
        owner="alice", repository="portfolio",
        client=httpx.Client(transport=httpx.MockTransport(broken)),
    )
    with pytest.raises(BackendUnavailableError):
        backend.fetch(ElementKey.of("persona", "scholar"))


def _captive_portal(request):
    return httpx.Response(200, text="<html>captive portal</html>")


def test_github_non_json_listing_is_unavailable():
    backend = GitHubBackend(
        owner="alice", repository="portfolio",
        client=httpx.Client(transport=httpx.MockTransport(_captive_portal)),
    )
    with pytest.raises(BackendUnavailableError) as exc:
        backend.list_entries(ElementType.PERSONA)
    assert "not valid JSON" in exc.value.reason


def test_search_falls_back_past_non_json_remote():
    remote = GitHubBackend(
        owner="alice", repository="portfolio",
        client=httpx.Client(transport=httpx.MockTransport(_captive_portal)),
    )
    registry = InMemoryBackend(BackendSource.REGISTRY)
    registry.add("scholar")
    resolver = SourcePriorityResolver([PolicyLayer("config", lambda: {"priority": ["remote", "registry"]})])
    coordinator = SearchCoordinator([remote, registry], resolver=resolver, timeout=None)

    page = coordinator.search("scholar")

    assert [r.source for r in page.results] == [BackendSource.REGISTRY]
    assert page.failures[0].source == BackendSource.REMOTE


def test_github_write_without_json_body_returns_blob_sha():
    def created(request):
        if request.method == "GET":
            return httpx.Response(404, json={"message": "Not Found"})
        return httpx.Response(201, text="")

    backend = GitHubBackend(
        owner="alice", repository="portfolio",
        client=httpx.Client(transport=httpx.MockTransport(created)),
    )
    assert backend.write(ElementKey.of("persona", "scholar"), SCHOLAR) == git_blob_sha(SCHOLAR)


def test_github_without_owner_is_unavailable():
    backend = GitHubBackend(owner="", repository="portfolio")
    with pytest.raises(BackendUnavailableError):
        backend.list_entries()


def test_github_delete():
    fake = _FakeGitHub({"personas/scholar.md": SCHOLAR})
    backend = _github(fake)
    backend.delete(ElementKey.of("persona", "scholar"))
    assert fake.files == {}


# --- Registry Backend Tests ---

_INDEX = {
    "index": {
        "personas": [
            {
                "name": "Creative Writer",
                "path": "library/personas/creative-writer.md",
                "version": "2.1.0",
                "description": "Writes stories",
                "tags": ["writing"],
                "sha": "abc123",
            }
        ],
        "skills": [{"name": "Summarizer", "path": "library/skills/summarizer.md", "version": "1.0.0"}],
        "widgets": [{"name": "unknown-type", "path": "library/widgets/x.md"}],
    },
    "total_elements": 3,
}


def _registry_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("collection-index.json"):
        return httpx.Response(200, json=_INDEX)
    if request.url.path == "/library/personas/creative-writer.md":
        return httpx.Response(200, text=render_element("Creative Writer", version="2.1.0"))
    return httpx.Response(404)


def _registry() -> RegistryBackend:
    return RegistryBackend(
        index_url="https://registry.test/collection-index.json",
        raw_base_url="https://raw.registry.test",
        client=httpx.Client(transport=httpx.MockTransport(_registry_handler)),
    )


def test_registry_parses_index():
    entries = _registry().list_entries()
    assert [(e.type, e.name) for e in entries] == [
        (ElementType.PERSONA, "creative-writer"),
        (ElementType.SKILL, "summarizer"),
    ]
    assert entries[0].tags == ["writing"]
    assert entries[0].revision == "abc123"


def test_registry_type_filter_and_fetch():
    backend = _registry()
    assert [e.name for e in backend.list_entries(ElementType.SKILL)] == ["summarizer"]
    content = backend.fetch(ElementKey.of("persona", "creative-writer"))
    assert "version: '2.1.0'" in content
    with pytest.raises(ElementNotFoundError):
        backend.fetch(ElementKey.of("skill", "summarizer"))


def test_registry_is_read_only():
    with pytest.raises(ReadOnlyBackendError):
        _registry().write(ElementKey.of("persona", "x"), "content")
