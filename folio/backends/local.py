"""Local filesystem element store.

Layout: ``<root>/<type>/<name>.md``, one Markdown file per element with a
YAML front-matter block. Writes go through a per-path lock and an atomic
replace, so a concurrent reader never observes a partially written file.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from folio.backends.base import Backend, entry_from_content, git_blob_sha
from folio.cache.lru import LRUCache
from folio.errors import BackendUnavailableError, ConflictError, ElementNotFoundError
from folio.locks import PathLockManager, atomic_write
from folio.models.element import (
    BackendSource,
    ElementKey,
    ElementType,
    IndexEntry,
    normalize_name,
)


class LocalBackend(Backend):
    """The user's on-disk portfolio."""

    source = BackendSource.LOCAL
    writable = True

    def __init__(
        self,
        root: str | Path,
        cache: Optional[LRUCache] = None,
        locks: Optional[PathLockManager] = None,
    ):
        super().__init__(cache)
        self.root = Path(root)
        self.locks = locks or PathLockManager()

    def ensure_layout(self) -> None:
        for element_type in ElementType:
            (self.root / element_type.value).mkdir(parents=True, exist_ok=True)

    def path_for(self, key: ElementKey) -> Path:
        """On-disk path of ``key``; tolerates files whose names are not normalized."""
        directory = self.root / key.type.value
        canonical = directory / key.filename
        if canonical.exists() or not directory.is_dir():
            return canonical
        for candidate in directory.glob("*.md"):
            if normalize_name(candidate.name) == key.name:
                return candidate
        return canonical

    def _load_entries(self, element_type: Optional[ElementType]) -> list[IndexEntry]:
        if not self.root.exists():
            return []
        types = [element_type] if element_type else list(ElementType)
        entries: list[IndexEntry] = []
        for t in types:
            directory = self.root / t.value
            if not directory.is_dir():
                continue
            for file in sorted(directory.glob("*.md")):
                try:
                    raw = file.read_bytes()
                    content = raw.decode("utf-8")
                    modified = datetime.fromtimestamp(file.stat().st_mtime)
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning(f"Skipping unreadable element file {file}: {e}")
                    continue
                key = ElementKey.of(t, file.name)
                entry = entry_from_content(
                    key, content, path=f"{t.value}/{file.name}", revision=git_blob_sha(raw)
                )
                entry.last_modified = modified
                entries.append(entry)
        return entries

    def fetch(self, key: ElementKey) -> str:
        path = self.path_for(key)
        try:
            return path.read_bytes().decode("utf-8")
        except FileNotFoundError:
            raise ElementNotFoundError(str(key), "local portfolio") from None
        except (OSError, UnicodeDecodeError) as e:
            raise BackendUnavailableError(self.tag, f"cannot read {path}: {e}") from e

    def _write(self, key: ElementKey, content: str, expected_revision: Optional[str]) -> str:
        path = self.path_for(key)
        with self.locks.hold(path):
            if path.exists():
                if expected_revision is None:
                    raise ConflictError(str(key), "local file already exists")
                current = git_blob_sha(path.read_bytes())
                if current != expected_revision:
                    raise ConflictError(str(key), "local file changed since it was indexed")
            atomic_write(path, content)
        logger.debug(f"Wrote {path}")
        return git_blob_sha(content)

    def _delete(self, key: ElementKey, expected_revision: Optional[str]) -> None:
        path = self.path_for(key)
        with self.locks.hold(path):
            if not path.exists():
                return
            if expected_revision is not None and git_blob_sha(path.read_bytes()) != expected_revision:
                raise ConflictError(str(key), "local file changed since it was indexed")
            path.unlink()
        logger.debug(f"Deleted {path}")
