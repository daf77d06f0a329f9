"""folio CLI — search, sync and source-priority management for a portfolio."""

import json
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from folio import __version__
from folio.errors import FolioError

console = Console()

SOURCES = ["local", "remote", "registry", "github", "collection"]
TYPES = ["personas", "skills", "templates", "agents", "memories", "ensembles"]


def _portfolio():
    from folio.portfolio import Portfolio

    try:
        return Portfolio()
    except FolioError as e:
        _fail(e)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    candidates = getattr(error, "candidates", None)
    if candidates:
        for name in candidates:
            console.print(f"  - {name}")
    errors = getattr(error, "errors", None)
    if errors:
        for detail in errors:
            console.print(f"  [red]x[/] {detail}")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.option("--log-file", default=None, help="Also write logs to this file")
def main(verbose: bool, log_file: str | None):
    """folio — resolve and synchronize AI customization elements.

    Elements are looked up across the local portfolio, your remote
    portfolio repository and the community registry, in priority order.
    """
    from folio.log import configure_logging

    configure_logging(verbose=verbose, log_file=log_file)


# ── Search ───────────────────────────────────────────────────────────


@main.command()
@click.argument("query", default="")
@click.option("--type", "-t", "element_type", type=click.Choice(TYPES), default=None)
@click.option("--all", "include_all", is_flag=True, help="Show every source's copy")
@click.option("--prefer", type=click.Choice(SOURCES), default=None, help="Search this source first")
@click.option("--sort", "sort_by", default="relevance", type=click.Choice(["relevance", "name", "version", "source"]))
@click.option("--page", default=1, type=int)
@click.option("--page-size", default=20, type=int)
def search(query: str, element_type: str | None, include_all: bool, prefer: str | None,
           sort_by: str, page: int, page_size: int):
    """Search every configured source for elements matching QUERY."""
    from folio.config.source_priority import parse_source
    from folio.models.element import ElementType
    from folio.search.coordinator import SearchOptions, SortBy

    try:
        options = SearchOptions(
            element_type=ElementType.parse(element_type) if element_type else None,
            include_all=include_all,
            preferred_source=parse_source(prefer) if prefer else None,
            sort_by=SortBy(sort_by),
            page=page,
            page_size=page_size,
        )
        with _portfolio() as portfolio:
            result = portfolio.search(query, options)
    except FolioError as e:
        _fail(e)
        return

    for failure in result.failures:
        console.print(f"[yellow]![/] {failure.source.display_name} skipped: {failure.reason}")

    if not result.results:
        console.print("[yellow]No matching elements found.[/]")
        return

    table = Table(title=f"Results {result.page} of {max(1, -(-result.total // result.page_size))} ({result.total} total)")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Source")
    table.add_column("Version")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Notes")

    for r in result.results:
        notes = []
        if r.update_available_from:
            notes.append(f"update in {r.update_available_from.value}")
        if r.version_conflict:
            notes.append(f"recommend {r.version_conflict.recommended.value}")
        table.add_row(
            r.entry.name, r.entry.type.value, r.source.value, r.version or "-",
            f"{r.score:.1f}", ", ".join(notes),
        )

    console.print(table)
    searched = ", ".join(s.value for s in result.sources_searched) or "none"
    console.print(f"[dim]Searched: {searched}; cache hits: {result.cache_hits}[/]")


# ── Sync ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--direction", "-d", default="pull", type=click.Choice(["push", "pull", "both"]))
@click.option("--mode", "-m", default="additive", type=click.Choice(["additive", "mirror", "backup"]))
@click.option("--dry-run", is_flag=True, help="Show the plan without changing anything")
@click.option("--force", is_flag=True, help="Apply mirror deletions without confirmation")
@click.option("--confirm", is_flag=True, help="Confirm mirror deletions")
def sync(direction: str, mode: str, dry_run: bool, force: bool, confirm: bool):
    """Synchronize the local portfolio with the remote repository."""
    from folio.sync.plan import PlanAction, SyncPlan

    console.print(f"\n[bold blue]folio[/] — sync {direction} ({mode}){' [dry run]' if dry_run else ''}\n")

    try:
        with _portfolio() as portfolio:
            outcome = portfolio.sync(direction, mode, dry_run=dry_run, force=force, confirm=confirm)
    except FolioError as e:
        _fail(e)
        return

    plan = outcome if isinstance(outcome, SyncPlan) else outcome.plan
    for warning in plan.warnings:
        console.print(f"  [yellow]![/] {warning}")

    table = Table(title=f"Sync Plan ({len(plan.entries)} elements)")
    table.add_column("Element", style="cyan")
    table.add_column("Action")
    table.add_column("Direction")
    table.add_column("Reason")
    styles = {
        PlanAction.CREATE: "green",
        PlanAction.UPDATE: "blue",
        PlanAction.DELETE: "red",
        PlanAction.CONFLICT: "yellow",
        PlanAction.UNCHANGED: "dim",
    }
    for entry in plan.entries:
        action = f"[{styles[entry.action]}]{entry.action.value}[/]"
        if not entry.executable and entry.action != PlanAction.CONFLICT:
            action += " (skipped)"
        table.add_row(str(entry.key), action, entry.direction.value, entry.reason)
    console.print(table)

    if isinstance(outcome, SyncPlan):
        return
    if outcome.requires_confirmation:
        console.print(
            f"[yellow]{len(plan.deletions)} deletion(s) need confirmation.[/] "
            "Re-run with --confirm or --force."
        )
        return

    summary = (
        f"Applied: {len(outcome.applied)}\n"
        f"Conflicts: {len(outcome.conflicts)}\n"
        f"Failed: {len(outcome.failed)}"
    )
    console.print(Panel(summary, title="Sync Result"))
    for failure in outcome.failed:
        console.print(f"  [red]x[/] {failure.entry.key}: {failure.message}")


# ── Element ──────────────────────────────────────────────────────────


@main.group()
def element():
    """Download, upload or compare a single element."""


def _element_op(operation: str, name: str, element_type: str | None, **options) -> None:
    from folio.models.element import ElementType

    try:
        with _portfolio() as portfolio:
            result = portfolio.manage_element(
                operation,
                name,
                element_type=ElementType.parse(element_type) if element_type else None,
                **options,
            )
    except FolioError as e:
        _fail(e)
        return

    if result.success:
        console.print(f"  [green]v[/] {result.message}")
    elif result.requires_confirmation:
        console.print(f"  [yellow]?[/] {result.message} (use --confirm)")
    else:
        console.print(f"  [red]x[/] {result.message}")
    if result.diff:
        console.print(result.diff, markup=False, highlight=False)


@element.command()
@click.argument("name")
@click.option("--type", "-t", "element_type", type=click.Choice(TYPES), default=None)
@click.option("--from", "source", default="remote", type=click.Choice(["remote", "registry"]))
@click.option("--force", is_flag=True)
@click.option("--confirm", is_flag=True)
def download(name: str, element_type: str | None, source: str, force: bool, confirm: bool):
    """Copy NAME from the remote portfolio (or the registry) into the local one."""
    from folio.models.element import BackendSource

    _element_op("download", name, element_type, source=BackendSource(source), force=force, confirm=confirm)


@element.command()
@click.argument("name")
@click.option("--type", "-t", "element_type", type=click.Choice(TYPES), default=None)
@click.option("--force", is_flag=True)
@click.option("--confirm", is_flag=True)
def upload(name: str, element_type: str | None, force: bool, confirm: bool):
    """Push local element NAME to the remote portfolio."""
    _element_op("upload", name, element_type, force=force, confirm=confirm)


@element.command()
@click.argument("name")
@click.option("--type", "-t", "element_type", type=click.Choice(TYPES), default=None)
@click.option("--diff", "show_diff", is_flag=True, help="Print a unified diff")
def compare(name: str, element_type: str | None, show_diff: bool):
    """Compare the local and remote copies of NAME."""
    _element_op("compare", name, element_type, show_diff=show_diff)


@element.command(name="list-remote")
@click.option("--type", "-t", "element_type", type=click.Choice(TYPES), default=None)
def list_remote(element_type: str | None):
    """List the elements in the remote portfolio."""
    from folio.models.element import ElementType

    try:
        with _portfolio() as portfolio:
            result = portfolio.manage_element(
                "list-remote", element_type=ElementType.parse(element_type) if element_type else None
            )
    except FolioError as e:
        _fail(e)
        return

    if not result.entries:
        console.print("[yellow]Remote portfolio is empty.[/]")
        return

    table = Table(title=f"Remote Portfolio ({len(result.entries)} elements)")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Version")
    table.add_column("Description")
    for entry in result.entries:
        table.add_row(entry.name, entry.type.value, entry.version or "-", entry.description[:50])
    console.print(table)


# ── Policy ───────────────────────────────────────────────────────────


@main.group()
def policy():
    """Show or change the source priority policy."""


@policy.command()
def show():
    """Print the effective source priority."""
    with _portfolio() as portfolio:
        p = portfolio.get_priority_policy()
    body = (
        f"Order: {p.describe()}\n"
        f"Stop on first: {p.stop_on_first}\n"
        f"Check all for updates: {p.check_all_for_updates}\n"
        f"Fallback on error: {p.fallback_on_error}\n"
        f"From: {p.origin}"
    )
    console.print(Panel(body, title="Source Priority"))


@policy.command(name="set")
@click.argument("sources", nargs=-1, required=True)
@click.option("--stop-on-first/--no-stop-on-first", default=True)
@click.option("--check-all-for-updates/--no-check-all-for-updates", default=False)
@click.option("--fallback-on-error/--no-fallback-on-error", default=True)
def set_policy(sources: tuple, stop_on_first: bool, check_all_for_updates: bool, fallback_on_error: bool):
    """Persist a new order, e.g. ``folio policy set local registry remote``."""
    document = {
        "priority": list(sources),
        "stop_on_first": stop_on_first,
        "check_all_for_updates": check_all_for_updates,
        "fallback_on_error": fallback_on_error,
    }
    with _portfolio() as portfolio:
        result = portfolio.set_priority_policy(document)
    if not result.is_valid:
        console.print("[red]Invalid source priority:[/]")
        for error in result.errors:
            console.print(f"  [red]x[/] {error}")
        sys.exit(1)
    console.print(f"  [green]v[/] Saved: {' -> '.join(sources)}")


@policy.command()
def reset():
    """Forget the persisted policy and use the default order."""
    with _portfolio() as portfolio:
        reset_done = portfolio.reset_priority_policy()
    if reset_done:
        console.print("  [green]v[/] Source priority reset to default")
    else:
        console.print("[yellow]No persisted source priority to reset.[/]")


# ── Cache ────────────────────────────────────────────────────────────


@main.command(name="cache-health")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output")
def cache_health(as_json: bool):
    """Report search-cache usage for this process."""
    with _portfolio() as portfolio:
        report = portfolio.cache_health()
    if as_json:
        console.print(json.dumps({
            "status": report.status,
            "entries": report.entries,
            "memory_mb": round(report.memory_mb, 3),
            "oldest_entry_age": report.oldest_entry_age,
            "hit_ratio": report.hit_ratio,
        }, indent=2))
        return

    table = Table(title=f"Cache: {report.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Status", report.status)
    table.add_row("Entries", f"{report.entries} / {report.max_entries}")
    table.add_row("Memory", f"{report.memory_mb:.2f} MB")
    table.add_row("Oldest entry", f"{report.oldest_entry_age:.0f}s")
    table.add_row("Hit ratio", f"{report.hit_ratio:.0%}")
    table.add_row("Evictions", str(report.evictions))
    console.print(table)


if __name__ == "__main__":
    main()
