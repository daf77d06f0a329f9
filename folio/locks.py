"""Per-path exclusive locks and atomic file writes for the local store.

A write to an element file holds that path's lock for the duration of the
write only. Acquisition waits at most ``timeout`` seconds and then fails
closed with :class:`LockTimeoutError`; the caller reports the element as
failed and nothing is applied.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from folio.errors import LockTimeoutError

DEFAULT_LOCK_TIMEOUT = 10.0


class PathLockManager:
    """Hands out one ``threading.Lock`` per resolved file path."""

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, path: str | Path) -> tuple[str, threading.Lock]:
        resource = str(Path(path).resolve())
        with self._guard:
            lock = self._locks.get(resource)
            if lock is None:
                lock = self._locks[resource] = threading.Lock()
        return resource, lock

    @contextmanager
    def hold(self, path: str | Path, timeout: float | None = None) -> Iterator[None]:
        """Hold the exclusive lock for ``path`` inside the ``with`` block."""
        wait = self.timeout if timeout is None else timeout
        resource, lock = self._lock_for(path)
        if not lock.acquire(timeout=wait):
            logger.warning(f"Lock timeout on {resource} after {wait:.1f}s")
            raise LockTimeoutError(resource, wait)
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, path: str | Path) -> bool:
        _, lock = self._lock_for(path)
        return lock.locked()


def atomic_write(path: str | Path, content: str | bytes) -> None:
    """Write via a sibling temp file and ``os.replace`` so readers never see a partial file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    data = content.encode("utf-8") if isinstance(content, str) else content
    try:
        tmp.write_bytes(data)
        os.replace(tmp, target)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
