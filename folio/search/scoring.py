"""Relevance scoring and semantic-version comparison."""

from __future__ import annotations

import re
from typing import Optional

from folio.models.element import IndexEntry, normalize_name

_TOKEN_SPLIT = re.compile(r"[\s\-_]+")
_VERSION = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?")

# Weights per query token
NAME_EXACT = 10
NAME_PREFIX = 5
NAME_CONTAINS = 2
DESCRIPTION = 3
TAG = 4
PATH = 1


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if t]


def score_entry(entry: IndexEntry, query: str) -> tuple[float, str]:
    """Score ``entry`` against ``query``; returns ``(score, match_type)``.

    A score of zero means no match. The empty query matches everything
    with a flat score of 1.
    """
    tokens = tokenize(query)
    if not tokens:
        return 1.0, "all"

    name = entry.key.name
    description = entry.description.lower()
    path = entry.path.lower()
    tags = [t.lower() for t in entry.tags]

    score = 0.0
    reasons: list[str] = []
    for token in tokens:
        if token in name:
            if name == token:
                score += NAME_EXACT
            elif name.startswith(token):
                score += NAME_PREFIX
                reasons.append("prefix")
            else:
                score += NAME_CONTAINS
                reasons.append("partial")
        if token in description:
            score += DESCRIPTION
            reasons.append("description")
        if token in path:
            score += PATH
            reasons.append("path")
        if any(token in tag for tag in tags):
            score += TAG
            reasons.append("tag")

    normalized_query = normalize_name(query)
    if normalized_query and normalized_query in name:
        score += 15 if len(normalized_query) > 3 else 10

    if normalized_query == name:
        return score * 2, "exact"
    return score, reasons[0] if reasons else ""


# ----------------------------------------------------------------------
# Versions
# ----------------------------------------------------------------------


def parse_version(version: str) -> Optional[tuple[int, int, int]]:
    """Parse ``major[.minor[.patch]]``; anything unparseable is None."""
    if not version:
        return None
    match = _VERSION.match(version.strip())
    if match is None:
        return None
    return tuple(int(part or 0) for part in match.groups())  # type: ignore[return-value]


def compare_versions(a: str, b: str) -> int:
    """-1, 0 or 1 as ``a`` is older, equal or newer than ``b``.

    Unknown versions sort below every known version.
    """
    pa, pb = parse_version(a), parse_version(b)
    if pa == pb:
        return 0
    if pa is None:
        return -1
    if pb is None:
        return 1
    return (pa > pb) - (pa < pb)


def is_newer(a: str, b: str) -> bool:
    """True only when both versions are known and ``a`` is strictly newer."""
    pa, pb = parse_version(a), parse_version(b)
    return pa is not None and pb is not None and pa > pb
