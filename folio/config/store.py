"""Persisted per-user configuration under ``~/.folio/``.

Two hand-editable YAML documents live here:

- ``source_priority.yml`` -- the priority policy (see
  :mod:`folio.config.source_priority`); read raw, validated by the resolver.
- ``config.yml`` -- everything else: portfolio location, the remote
  repository, registry URLs, cache budgets and sync switches.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from folio.config.source_priority import PriorityPolicy
from folio.errors import ConfigurationError
from folio.locks import atomic_write

HOME_ENV_VAR = "FOLIO_HOME"

DEFAULT_REGISTRY_INDEX = (
    "https://raw.githubusercontent.com/folio-community/collection/main/public/collection-index.json"
)
DEFAULT_REGISTRY_RAW = "https://raw.githubusercontent.com/folio-community/collection/main"


@dataclass
class GitHubSettings:
    owner: str = ""
    repository: str = "folio-portfolio"
    branch: str = "main"
    api_url: str = "https://api.github.com"


@dataclass
class RegistrySettings:
    index_url: str = DEFAULT_REGISTRY_INDEX
    raw_base_url: str = DEFAULT_REGISTRY_RAW


@dataclass
class CacheSettings:
    max_entries: int = 100
    max_memory_mb: float = 10
    ttl_seconds: float = 300


@dataclass
class SyncSettings:
    """Switches gating every writing sync operation."""

    enabled: bool = True
    bulk_download_enabled: bool = True
    bulk_upload_enabled: bool = True
    require_confirmation: bool = True
    scan_for_secrets: bool = True


@dataclass
class Settings:
    portfolio_dir: str = ""
    github: GitHubSettings = field(default_factory=GitHubSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    backend_timeout_seconds: float = 10.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Settings:
        """Build settings from a parsed document; unknown keys are ignored."""
        errors: list[str] = []
        settings = cls(
            portfolio_dir=str(data.get("portfolio_dir") or ""),
            github=_section(GitHubSettings, data.get("github"), "github", errors),
            registry=_section(RegistrySettings, data.get("registry"), "registry", errors),
            cache=_section(CacheSettings, data.get("cache"), "cache", errors),
            sync=_section(SyncSettings, data.get("sync"), "sync", errors),
        )
        if "backend_timeout_seconds" in data:
            timeout = data["backend_timeout_seconds"]
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                errors.append(f"backend_timeout_seconds must be a positive number, got {timeout!r}")
            else:
                settings.backend_timeout_seconds = float(timeout)
        if errors:
            raise ConfigurationError("Invalid settings", errors)
        return settings


def _section(cls: type, raw: Any, name: str, errors: list[str]):
    """Populate one settings dataclass, type-checking each known key against its default."""
    section = cls()
    if raw is None:
        return section
    if not isinstance(raw, dict):
        errors.append(f"'{name}' must be a mapping")
        return section
    for f in fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        default = getattr(section, f.name)
        if isinstance(default, bool):
            ok = isinstance(value, bool)
        elif isinstance(default, (int, float)):
            ok = isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
        else:
            ok = isinstance(value, str)
        if not ok:
            errors.append(f"{name}.{f.name} has invalid value {value!r}")
            continue
        setattr(section, f.name, value)
    return section


class ConfigStore:
    """YAML-backed storage for the priority policy and settings.

    Storage path: ``~/.folio/`` (or ``$FOLIO_HOME``) with:
    - ``source_priority.yml`` -- persisted priority policy
    - ``config.yml`` -- settings
    """

    PRIORITY_FILE = "source_priority.yml"
    SETTINGS_FILE = "config.yml"

    def __init__(self, base_dir: Optional[str | Path] = None) -> None:
        if base_dir is None:
            env_home = os.environ.get(HOME_ENV_VAR)
            self._base = Path(env_home) if env_home else Path.home() / ".folio"
        else:
            self._base = Path(base_dir)
        self._priority_path = self._base / self.PRIORITY_FILE
        self._settings_path = self._base / self.SETTINGS_FILE

    @property
    def base_dir(self) -> Path:
        return self._base

    @property
    def priority_path(self) -> Path:
        return self._priority_path

    @property
    def default_portfolio_dir(self) -> Path:
        return self._base / "portfolio"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_yaml(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            raise ConfigurationError(f"Could not read {path}: {e}") from e

    def _write_yaml(self, path: Path, data: dict) -> None:
        atomic_write(path, yaml.safe_dump(data, sort_keys=False, default_flow_style=False))

    # ------------------------------------------------------------------
    # Priority policy
    # ------------------------------------------------------------------

    def load_priority_document(self) -> Any:
        """Raw persisted policy document, or None when nothing is saved.

        Validation is the resolver's job so that a broken file is skipped,
        not fatal.
        """
        return self._read_yaml(self._priority_path)

    def save_priority(self, policy: PriorityPolicy) -> None:
        self._write_yaml(self._priority_path, policy.to_dict())
        logger.info(f"Saved source priority: {policy.describe()}")

    def clear_priority(self) -> bool:
        """Remove the persisted policy. Returns True if one existed."""
        if not self._priority_path.exists():
            return False
        self._priority_path.unlink()
        logger.info("Source priority reset to default")
        return True

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_settings(self) -> Settings:
        data = self._read_yaml(self._settings_path)
        if data is None:
            settings = Settings()
        elif not isinstance(data, dict):
            raise ConfigurationError(f"{self._settings_path} must contain a mapping")
        else:
            settings = Settings.from_dict(data)
        if not settings.portfolio_dir:
            settings.portfolio_dir = str(self.default_portfolio_dir)
        return settings

    def save_settings(self, settings: Settings) -> None:
        self._write_yaml(self._settings_path, settings.to_dict())
