"""Sync plan computation.

A plan compares two index snapshots key by key and says, for each element,
what a sync would do. Computing a plan never touches storage, and the
same two snapshots always give the same plan.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from loguru import logger

from folio.models.element import ElementKey, IndexEntry
from folio.search.scoring import is_newer


class SyncDirection(Enum):
    PUSH = "push"  # Local -> remote
    PULL = "pull"  # Remote -> local
    BOTH = "both"


class SyncMode(Enum):
    """How destructive a bulk sync may be."""

    ADDITIVE = "additive"  # Create and update only; deletions are reported
    MIRROR = "mirror"  # Target becomes a copy of the source, deletions included
    BACKUP = "backup"  # One-way pull, remote always wins, remote never written


class PlanAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class SyncPlanEntry:
    """The planned fate of one element.

    ``direction`` is the way data flows for this entry: PULL writes (or
    deletes) locally, PUSH writes (or deletes) remotely.
    """

    key: ElementKey
    action: PlanAction
    direction: SyncDirection
    reason: str
    local_version: str = ""
    remote_version: str = ""
    local_revision: str = ""
    remote_revision: str = ""
    executable: bool = True

    @property
    def is_write(self) -> bool:
        return self.executable and self.action in (
            PlanAction.CREATE,
            PlanAction.UPDATE,
            PlanAction.DELETE,
        )


@dataclass(frozen=True)
class SyncPlan:
    direction: SyncDirection
    mode: SyncMode
    entries: tuple[SyncPlanEntry, ...] = ()
    warnings: tuple[str, ...] = ()

    def by_action(self, action: PlanAction) -> list[SyncPlanEntry]:
        return [e for e in self.entries if e.action == action]

    @property
    def writes(self) -> list[SyncPlanEntry]:
        return [e for e in self.entries if e.is_write]

    @property
    def deletions(self) -> list[SyncPlanEntry]:
        return [e for e in self.entries if e.action == PlanAction.DELETE and e.executable]

    @property
    def counts(self) -> dict[str, int]:
        counts = {a.value: 0 for a in PlanAction}
        for e in self.entries:
            counts[e.action.value] += 1
        return counts


@dataclass
class _Pair:
    local: Optional[IndexEntry] = None
    remote: Optional[IndexEntry] = None


def same_content(a: IndexEntry, b: IndexEntry) -> bool:
    """Compare by digest when both sides have one, else by revision."""
    if a.digest and b.digest:
        return a.digest == b.digest
    if a.revision and b.revision:
        return a.revision == b.revision
    return False


def build_plan(
    local: Iterable[IndexEntry],
    remote: Iterable[IndexEntry],
    direction: SyncDirection,
    mode: SyncMode,
) -> SyncPlan:
    """Diff the two snapshots into a plan sorted by (type, name)."""
    warnings: list[str] = []
    if mode == SyncMode.BACKUP and direction != SyncDirection.PULL:
        message = f"backup mode only pulls; ignoring requested direction '{direction.value}'"
        logger.warning(message)
        warnings.append(message)
        direction = SyncDirection.PULL

    pairs: dict[ElementKey, _Pair] = {}
    for entry in local:
        pairs.setdefault(entry.key, _Pair()).local = entry
    for entry in remote:
        pairs.setdefault(entry.key, _Pair()).remote = entry

    # A local-only element blocks its key on both sides.
    private = {key for key, pair in pairs.items() if pair.local is not None and pair.local.local_only}
    if private:
        warnings.append(f"{len(private)} local-only element(s) excluded from sync")

    entries = [
        _plan_one(key, pairs[key], direction, mode)
        for key in sorted(pairs, key=ElementKey.sort_key)
        if key not in private
    ]
    return SyncPlan(direction=direction, mode=mode, entries=tuple(entries), warnings=tuple(warnings))


def _plan_one(key: ElementKey, pair: _Pair, direction: SyncDirection, mode: SyncMode) -> SyncPlanEntry:
    local, remote = pair.local, pair.remote

    def entry(action: PlanAction, flow: SyncDirection, reason: str, executable: bool = True) -> SyncPlanEntry:
        return SyncPlanEntry(
            key=key,
            action=action,
            direction=flow,
            reason=reason,
            local_version=local.version if local else "",
            remote_version=remote.version if remote else "",
            local_revision=local.revision if local else "",
            remote_revision=remote.revision if remote else "",
            executable=executable,
        )

    if direction == SyncDirection.BOTH:
        if remote is None:
            return entry(PlanAction.CREATE, SyncDirection.PUSH, "only in local portfolio")
        if local is None:
            return entry(PlanAction.CREATE, SyncDirection.PULL, "only in remote portfolio")
        if same_content(local, remote):
            return entry(PlanAction.UNCHANGED, direction, "identical content")
        if is_newer(local.version, remote.version):
            return entry(PlanAction.UPDATE, SyncDirection.PUSH, f"local {local.version} is newer than remote {remote.version}")
        if is_newer(remote.version, local.version):
            return entry(PlanAction.UPDATE, SyncDirection.PULL, f"remote {remote.version} is newer than local {local.version}")
        return entry(PlanAction.CONFLICT, direction, _divergence(local, remote), executable=False)

    pushing = direction == SyncDirection.PUSH
    source, target = (local, remote) if pushing else (remote, local)
    source_name = "local portfolio" if pushing else "remote portfolio"
    target_name = "remote portfolio" if pushing else "local portfolio"

    if target is None:
        return entry(PlanAction.CREATE, direction, f"missing from {target_name}")
    if source is None:
        if mode == SyncMode.MIRROR:
            return entry(PlanAction.DELETE, direction, f"not in {source_name}")
        return entry(
            PlanAction.DELETE,
            direction,
            f"not in {source_name}; kept ({mode.value} mode never deletes)",
            executable=False,
        )
    if same_content(source, target):
        return entry(PlanAction.UNCHANGED, direction, "identical content")
    if mode == SyncMode.BACKUP:
        return entry(PlanAction.UPDATE, direction, "backup mode: remote copy wins")
    if is_newer(source.version, target.version):
        return entry(PlanAction.UPDATE, direction, f"{source.version} is newer than {target.version}")
    if is_newer(target.version, source.version):
        return entry(
            PlanAction.CONFLICT,
            direction,
            f"{target_name} has newer version {target.version} (source has {source.version})",
            executable=False,
        )
    return entry(PlanAction.CONFLICT, direction, _divergence(local, remote), executable=False)


def _divergence(local: IndexEntry, remote: IndexEntry) -> str:
    if local.version and local.version == remote.version:
        return f"content differs at the same version {local.version}"
    return "content differs and versions cannot be ordered"
