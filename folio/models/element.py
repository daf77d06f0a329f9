"""Element identity and per-backend index models.

An element is identified by ``(type, name)`` where the name is normalized
(lowercase, hyphenated). The same key can live on every backend with
different content and version; the models here carry just enough metadata
to search, rank and diff without ever holding full content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ElementType(Enum):
    """Closed set of element types; values double as directory names."""

    PERSONA = "personas"
    SKILL = "skills"
    TEMPLATE = "templates"
    AGENT = "agents"
    MEMORY = "memories"
    ENSEMBLE = "ensembles"

    @classmethod
    def parse(cls, value: str | ElementType) -> ElementType:
        """Accept ``personas``, ``persona`` or ``PERSONA`` style input."""
        if isinstance(value, ElementType):
            return value
        token = value.strip().lower()
        for member in cls:
            if token in (member.value, member.value[:-1], member.name.lower()):
                return member
        valid = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown element type: {value}. Valid types: {valid}")


class BackendSource(Enum):
    """The three fixed stores an element may live in."""

    LOCAL = "local"  # Filesystem portfolio
    REMOTE = "remote"  # User's authenticated repository
    REGISTRY = "registry"  # Shared, read-only community catalog

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    BackendSource.LOCAL: "Local Portfolio",
    BackendSource.REMOTE: "Remote Portfolio",
    BackendSource.REGISTRY: "Community Registry",
}

_SEPARATORS = re.compile(r"[\s_]+")
_HYPHENS = re.compile(r"-{2,}")


def normalize_name(name: str) -> str:
    """Normalize an element name for keying: lowercase and hyphenated."""
    if not name:
        return ""
    normalized = re.sub(r"\.md$", "", name.strip(), flags=re.IGNORECASE)
    normalized = _SEPARATORS.sub("-", normalized.lower())
    normalized = _HYPHENS.sub("-", normalized)
    return normalized.strip("-")


@dataclass(frozen=True)
class ElementKey:
    """Composite identity of an element. Unique per backend only."""

    type: ElementType
    name: str

    @classmethod
    def of(cls, element_type: str | ElementType, name: str) -> ElementKey:
        return cls(type=ElementType.parse(element_type), name=normalize_name(name))

    @property
    def filename(self) -> str:
        return f"{self.name}.md"

    @property
    def path(self) -> str:
        """Relative path used by both the local store and the remote repository."""
        return f"{self.type.value}/{self.filename}"

    def __str__(self) -> str:
        return f"{self.type.value}/{self.name}"

    def sort_key(self) -> tuple[str, str]:
        return (self.type.value, self.name)


@dataclass
class IndexEntry:
    """Lightweight, cacheable descriptor of one element on one backend."""

    name: str
    type: ElementType
    path: str = ""
    version: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    author: str = ""

    # Change detection
    digest: str = ""  # sha256 of content
    revision: str = ""  # Backend revision token (blob sha on the remote)
    last_modified: datetime | None = None

    # Privacy
    local_only: bool = False

    @property
    def key(self) -> ElementKey:
        return ElementKey(type=self.type, name=normalize_name(self.name))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type.value,
            "path": self.path,
            "version": self.version,
            "description": self.description,
            "tags": list(self.tags),
            "author": self.author,
            "digest": self.digest,
            "revision": self.revision,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
            "local_only": self.local_only,
        }

    @classmethod
    def from_dict(cls, data: dict) -> IndexEntry:
        modified = data.get("last_modified")
        return cls(
            name=data["name"],
            type=ElementType.parse(data["type"]),
            path=data.get("path", ""),
            version=str(data.get("version") or ""),
            description=data.get("description", ""),
            tags=list(data.get("tags") or []),
            author=data.get("author", ""),
            digest=data.get("digest", ""),
            revision=data.get("revision", ""),
            last_modified=datetime.fromisoformat(modified) if modified else None,
            local_only=bool(data.get("local_only", False)),
        )


@dataclass
class VersionConflict:
    """Versions of one key seen on several backends, with a recommendation."""

    versions: dict[BackendSource, str] = field(default_factory=dict)
    recommended: BackendSource = BackendSource.LOCAL
    reason: str = ""


@dataclass
class SearchResult:
    """A per-backend hit, prior to (and after) merging."""

    entry: IndexEntry
    source: BackendSource
    score: float = 0.0
    match_type: str = ""  # exact | prefix | partial | description | tag | all

    # Populated during merge
    is_duplicate: bool = False
    version_conflict: VersionConflict | None = None
    update_available_from: BackendSource | None = None

    @property
    def key(self) -> ElementKey:
        return self.entry.key

    @property
    def version(self) -> str:
        return self.entry.version
