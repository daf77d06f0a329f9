"""Pre-upload checks: privacy flag and credential-looking content."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from folio.models.element import IndexEntry

SECRET_PATTERNS: dict[str, re.Pattern[str]] = {
    "api_key": re.compile(r"api[_-]?key\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    "secret": re.compile(r"secret\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    "password": re.compile(r"password\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    "token": re.compile(r"token\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE),
    "private_key": re.compile(r"private[_-]?key\s*[:=]\s*['\"][^'\"]+['\"]", re.IGNORECASE),
}


@dataclass
class UploadCheck:
    allowed: bool = True
    reasons: list[str] = field(default_factory=list)


def find_secrets(content: str) -> list[str]:
    """Names of the secret patterns found in ``content``."""
    return [name for name, pattern in SECRET_PATTERNS.items() if pattern.search(content)]


def check_upload(entry: IndexEntry, content: str, scan_for_secrets: bool = True) -> UploadCheck:
    check = UploadCheck()
    if entry.local_only:
        check.allowed = False
        check.reasons.append(f"'{entry.name}' is marked local-only and cannot be uploaded")
    if scan_for_secrets:
        found = find_secrets(content)
        if found:
            check.allowed = False
            check.reasons.append(
                f"potential secret detected ({', '.join(found)}); remove it before uploading"
            )
    return check
