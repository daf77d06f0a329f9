"""Portfolio sync engine: applies sync plans and single-element operations.

Bulk sync snapshots both sides, builds a :class:`SyncPlan` and, unless it
is a dry run, applies the plan's executable entries one element at a time.
Every element's write either completes or leaves that element untouched;
failures and remote conflicts are collected in the result instead of
aborting the run. After each successful write the ``on_write`` hook is
called so cached search results for that backend are dropped.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from loguru import logger

from folio.backends.base import Backend, content_digest
from folio.config.store import SyncSettings
from folio.errors import (
    BackendUnavailableError,
    ConflictError,
    ContentRejectedError,
    ElementNotFoundError,
    LockTimeoutError,
    SyncDisabledError,
)
from folio.models.element import BackendSource, ElementKey, ElementType, IndexEntry
from folio.sync.fuzzy import match_element
from folio.sync.plan import (
    PlanAction,
    SyncDirection,
    SyncMode,
    SyncPlan,
    SyncPlanEntry,
    build_plan,
    same_content,
)
from folio.sync.safety import check_upload, find_secrets

ContentValidator = Callable[[ElementKey, str], str]
WriteHook = Callable[[BackendSource], object]

_RECOVERABLE = (
    BackendUnavailableError,
    ContentRejectedError,
    ElementNotFoundError,
    LockTimeoutError,
    OSError,
)


def accept_content(key: ElementKey, content: str) -> str:
    return content


# ---------------------------------------------------------------------------
# Bulk sync results
# ---------------------------------------------------------------------------


class ActionStatus(Enum):
    APPLIED = "applied"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


@dataclass
class ActionOutcome:
    entry: SyncPlanEntry
    status: ActionStatus
    message: str = ""


@dataclass
class SyncResult:
    plan: SyncPlan
    outcomes: list[ActionOutcome] = field(default_factory=list)
    requires_confirmation: bool = False

    def _with(self, status: ActionStatus) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def applied(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.APPLIED)

    @property
    def failed(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.FAILED)

    @property
    def conflicts(self) -> list[ActionOutcome]:
        return self._with(ActionStatus.CONFLICT)

    @property
    def success(self) -> bool:
        return not self.requires_confirmation and not self.failed


# ---------------------------------------------------------------------------
# Single-element operations
# ---------------------------------------------------------------------------


class ElementOperation(Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"
    LIST_REMOTE = "list-remote"
    COMPARE = "compare"


class CompareStatus(Enum):
    IDENTICAL = "identical"
    DIFFERENT = "different"
    LOCAL_ONLY = "local-only"
    REMOTE_ONLY = "remote-only"


@dataclass
class ElementResult:
    operation: ElementOperation
    success: bool
    message: str
    key: Optional[ElementKey] = None
    entries: list[IndexEntry] = field(default_factory=list)
    compare_status: Optional[CompareStatus] = None
    local_version: str = ""
    remote_version: str = ""
    diff: str = ""
    requires_confirmation: bool = False
    conflict: bool = False


class PortfolioSyncEngine:
    def __init__(
        self,
        local: Backend,
        remote: Backend,
        registry: Optional[Backend] = None,
        settings: Optional[SyncSettings] = None,
        validator: ContentValidator = accept_content,
        on_write: Optional[WriteHook] = None,
    ):
        self.local = local
        self.remote = remote
        self.registry = registry
        self.settings = settings or SyncSettings()
        self.validator = validator
        self.on_write = on_write

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def plan(self, direction: SyncDirection | str, mode: SyncMode | str) -> SyncPlan:
        """Snapshot both sides and diff them. Reads indexes only."""
        direction, mode = SyncDirection(direction), SyncMode(mode)
        return build_plan(self.local.list_entries(), self.remote.list_entries(), direction, mode)

    def sync(
        self,
        direction: SyncDirection | str = SyncDirection.PULL,
        mode: SyncMode | str = SyncMode.ADDITIVE,
        dry_run: bool = False,
        force: bool = False,
        confirm: bool = False,
    ) -> SyncPlan | SyncResult:
        """Reconcile local and remote. Returns the plan itself for a dry run."""
        direction, mode = SyncDirection(direction), SyncMode(mode)
        if not dry_run:
            self._check_bulk_allowed(SyncDirection.PULL if mode == SyncMode.BACKUP else direction)

        plan = self.plan(direction, mode)
        if dry_run:
            logger.info(f"Dry run {plan.direction.value}/{plan.mode.value}: {plan.counts}")
            return plan

        if plan.mode == SyncMode.MIRROR and plan.deletions and not (force or confirm):
            logger.warning(
                f"Mirror sync would delete {len(plan.deletions)} element(s); confirmation required"
            )
            return SyncResult(plan=plan, requires_confirmation=True)

        result = SyncResult(plan=plan)
        for entry in plan.entries:
            if entry.action == PlanAction.UNCHANGED:
                continue
            if entry.action == PlanAction.CONFLICT:
                result.outcomes.append(ActionOutcome(entry, ActionStatus.CONFLICT, entry.reason))
                continue
            if not entry.executable:
                result.outcomes.append(ActionOutcome(entry, ActionStatus.SKIPPED, entry.reason))
                continue
            result.outcomes.append(self._apply(entry))

        logger.info(
            f"Sync {plan.direction.value}/{plan.mode.value} finished: "
            f"{len(result.applied)} applied, {len(result.conflicts)} conflicts, "
            f"{len(result.failed)} failed"
        )
        return result

    def _check_bulk_allowed(self, direction: SyncDirection) -> None:
        if not self.settings.enabled:
            raise SyncDisabledError("Portfolio sync is disabled (sync.enabled is false)")
        if direction in (SyncDirection.PULL, SyncDirection.BOTH) and not self.settings.bulk_download_enabled:
            raise SyncDisabledError("Bulk download is disabled (sync.bulk_download_enabled is false)")
        if direction in (SyncDirection.PUSH, SyncDirection.BOTH) and not self.settings.bulk_upload_enabled:
            raise SyncDisabledError("Bulk upload is disabled (sync.bulk_upload_enabled is false)")

    def _apply(self, entry: SyncPlanEntry) -> ActionOutcome:
        pulling = entry.direction == SyncDirection.PULL
        source, target = (self.remote, self.local) if pulling else (self.local, self.remote)
        expected = (entry.local_revision if pulling else entry.remote_revision) or None

        try:
            if entry.action == PlanAction.DELETE:
                target.delete(entry.key, expected_revision=expected)
            else:
                content = source.fetch(entry.key)
                if pulling:
                    content = self.validator(entry.key, content)
                elif self.settings.scan_for_secrets and find_secrets(content):
                    raise ContentRejectedError(f"potential secret detected in {entry.key}")
                target.write(
                    entry.key,
                    content,
                    expected_revision=expected if entry.action == PlanAction.UPDATE else None,
                )
        except ConflictError as e:
            logger.warning(f"Conflict on {entry.key}: {e.reason}")
            return ActionOutcome(entry, ActionStatus.CONFLICT, e.reason)
        except _RECOVERABLE as e:
            logger.error(f"Failed to {entry.action.value} {entry.key}: {e}")
            return ActionOutcome(entry, ActionStatus.FAILED, str(e))

        self._written(target.source)
        logger.info(f"{entry.action.value.capitalize()} {entry.key} ({entry.direction.value})")
        return ActionOutcome(entry, ActionStatus.APPLIED, entry.reason)

    def _written(self, source: BackendSource) -> None:
        if self.on_write is not None:
            self.on_write(source)

    # ------------------------------------------------------------------
    # Single element
    # ------------------------------------------------------------------

    def manage(
        self,
        operation: ElementOperation | str,
        name: str = "",
        element_type: Optional[ElementType] = None,
        source: BackendSource = BackendSource.REMOTE,
        force: bool = False,
        confirm: bool = False,
        show_diff: bool = False,
    ) -> ElementResult:
        operation = ElementOperation(operation)
        if operation == ElementOperation.LIST_REMOTE:
            return self.list_remote(element_type)
        if operation == ElementOperation.COMPARE:
            return self.compare(name, element_type, show_diff=show_diff)
        if operation == ElementOperation.DOWNLOAD:
            return self.download(name, element_type, source=source, force=force, confirm=confirm)
        return self.upload(name, element_type, force=force, confirm=confirm)

    def list_remote(self, element_type: Optional[ElementType] = None) -> ElementResult:
        entries = self.remote.list_entries(element_type)
        return ElementResult(
            operation=ElementOperation.LIST_REMOTE,
            success=True,
            message=f"{len(entries)} element(s) in remote portfolio",
            entries=entries,
        )

    def download(
        self,
        name: str,
        element_type: Optional[ElementType] = None,
        source: BackendSource = BackendSource.REMOTE,
        force: bool = False,
        confirm: bool = False,
    ) -> ElementResult:
        """Copy one element from the remote (or registry) into the local store."""
        op = ElementOperation.DOWNLOAD
        if not self.settings.enabled:
            raise SyncDisabledError("Portfolio sync is disabled (sync.enabled is false)")

        backend = self.registry if source == BackendSource.REGISTRY else self.remote
        if backend is None:
            raise BackendUnavailableError(source.value, "not configured")
        entry = match_element(name, backend.list_entries(element_type), source.display_name)
        key = entry.key

        try:
            content = self.validator(key, backend.fetch(key))
        except ContentRejectedError as e:
            return ElementResult(op, False, f"Content of {key} rejected: {e}", key=key)

        existing = self.local.get_entry(key)
        if existing is not None and existing.digest == content_digest(content):
            return ElementResult(op, True, f"{key} is already up to date", key=key)
        if existing is not None and not (force or confirm):
            return ElementResult(
                op,
                False,
                f"Local copy of {key} differs (local {existing.version or '?'}, "
                f"{source.value} {entry.version or '?'}); confirm to overwrite",
                key=key,
                local_version=existing.version,
                remote_version=entry.version,
                requires_confirmation=True,
            )

        try:
            self.local.write(key, content, expected_revision=existing.revision if existing else None)
        except ConflictError as e:
            return ElementResult(op, False, str(e), key=key, conflict=True)
        except (LockTimeoutError, OSError) as e:
            return ElementResult(op, False, f"Could not write {key}: {e}", key=key)

        self._written(BackendSource.LOCAL)
        logger.info(f"Downloaded {key} from {source.display_name}")
        return ElementResult(op, True, f"Downloaded {key} from {source.display_name}", key=key)

    def upload(
        self,
        name: str,
        element_type: Optional[ElementType] = None,
        force: bool = False,
        confirm: bool = False,
    ) -> ElementResult:
        """Push one local element to the remote, guarding its previous revision."""
        op = ElementOperation.UPLOAD
        if not self.settings.enabled:
            raise SyncDisabledError("Portfolio sync is disabled (sync.enabled is false)")

        entry = match_element(name, self.local.list_entries(element_type), "local portfolio")
        key = entry.key
        content = self.local.fetch(key)

        check = check_upload(entry, content, scan_for_secrets=self.settings.scan_for_secrets)
        if not check.allowed:
            return ElementResult(op, False, "; ".join(check.reasons), key=key)

        remote_entry = self.remote.get_entry(key)
        if remote_entry is not None and same_content(entry, remote_entry):
            return ElementResult(op, True, f"{key} is already up to date", key=key)
        if self.settings.require_confirmation and not (confirm or force):
            action = "overwrite" if remote_entry else "create"
            return ElementResult(
                op,
                False,
                f"Upload would {action} {key} in the remote portfolio; confirm to proceed",
                key=key,
                requires_confirmation=True,
            )

        try:
            self.remote.write(
                key, content, expected_revision=remote_entry.revision if remote_entry else None
            )
        except ConflictError as e:
            return ElementResult(op, False, str(e), key=key, conflict=True)

        self._written(BackendSource.REMOTE)
        logger.info(f"Uploaded {key} to the remote portfolio")
        return ElementResult(op, True, f"Uploaded {key}", key=key)

    def compare(
        self,
        name: str,
        element_type: Optional[ElementType] = None,
        show_diff: bool = False,
    ) -> ElementResult:
        op = ElementOperation.COMPARE
        local_entries = self.local.list_entries(element_type)
        remote_entries = self.remote.list_entries(element_type)

        candidates = {e.key: e for e in remote_entries}
        candidates.update({e.key: e for e in local_entries})
        key = match_element(name, candidates.values(), "local or remote portfolio").key

        local = next((e for e in local_entries if e.key == key), None)
        remote = next((e for e in remote_entries if e.key == key), None)
        versions = {
            "local_version": local.version if local else "",
            "remote_version": remote.version if remote else "",
        }

        if local is None:
            return ElementResult(op, True, f"{key} exists only remotely", key=key,
                                 compare_status=CompareStatus.REMOTE_ONLY, **versions)
        if remote is None:
            return ElementResult(op, True, f"{key} exists only locally", key=key,
                                 compare_status=CompareStatus.LOCAL_ONLY, **versions)
        if same_content(local, remote):
            return ElementResult(op, True, f"{key} is identical locally and remotely", key=key,
                                 compare_status=CompareStatus.IDENTICAL, **versions)

        diff = ""
        if show_diff:
            diff = "".join(
                difflib.unified_diff(
                    self.remote.fetch(key).splitlines(keepends=True),
                    self.local.fetch(key).splitlines(keepends=True),
                    fromfile=f"remote/{key.path}",
                    tofile=f"local/{key.path}",
                )
            )
        return ElementResult(op, True, f"{key} differs between local and remote", key=key,
                             compare_status=CompareStatus.DIFFERENT, diff=diff, **versions)
