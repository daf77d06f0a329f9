"""Approximate element-name resolution that never guesses."""

from __future__ import annotations

from typing import Iterable

from folio.errors import AmbiguousMatchError, ElementNotFoundError
from folio.models.element import IndexEntry, normalize_name
from folio.search.scoring import tokenize


def find_matches(query: str, entries: Iterable[IndexEntry]) -> list[IndexEntry]:
    """Exact normalized matches if there are any, else substring/token matches."""
    wanted = normalize_name(query)
    if not wanted:
        return []
    entries = list(entries)

    exact = [e for e in entries if e.key.name == wanted]
    if exact:
        return exact

    query_tokens = tokenize(wanted)
    matches = []
    for entry in entries:
        name = entry.key.name
        name_tokens = set(tokenize(name))
        if wanted in name or all(t in name_tokens for t in query_tokens):
            matches.append(entry)
    return sorted(matches, key=lambda e: e.key.sort_key())


def match_element(query: str, entries: Iterable[IndexEntry], where: str = "") -> IndexEntry:
    """Resolve ``query`` to exactly one entry.

    Raises:
        ElementNotFoundError: Nothing matched.
        AmbiguousMatchError: More than one entry matched; the error lists them.
    """
    matches = find_matches(query, entries)
    if not matches:
        raise ElementNotFoundError(query, where)
    if len(matches) > 1:
        names = [e.key.name for e in matches]
        if len(set(names)) != len(names):
            names = [str(e.key) for e in matches]
        raise AmbiguousMatchError(query, names)
    return matches[0]
