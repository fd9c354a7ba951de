"""
fieldkit CLI - Catalog commands.

Refresh the tool catalog, show tool status, prefetch payloads, run tools
with live output, check a tool before running it and browse the
execution history and usage statistics.
"""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from fieldkit.cli.errors import ExitCode, handle_error
from fieldkit.core.catalog.engine import CatalogEngine
from fieldkit.core.catalog.events import CatalogEvent, OutputLineEvent, StatusChangedEvent
from fieldkit.core.catalog.exceptions import CatalogError, ParameterError, ToolNotFoundError
from fieldkit.core.catalog.models import (
    CatalogSnapshot,
    FailureReason,
    OutputStream,
    SessionResult,
    ToolState,
)
from fieldkit.core.catalog.parameters import parse_assignments
from fieldkit.core.catalog.preflight import PreflightReport
from fieldkit.core.catalog.usage import ToolUsage, UsageSummary
from fieldkit.core.config import load_config

logger = logging.getLogger(__name__)

console = Console()

STATE_STYLES: dict[ToolState, str] = {
    ToolState.AVAILABLE: "white",
    ToolState.CACHED: "green",
    ToolState.STALE: "yellow",
    ToolState.RUNNING: "bold cyan",
    ToolState.COMPLETED: "bold green",
    ToolState.FAILED: "bold red",
    ToolState.UNAVAILABLE_OFFLINE: "dim",
}

STATE_LABELS: dict[ToolState, str] = {
    ToolState.AVAILABLE: "Available",
    ToolState.CACHED: "Cached",
    ToolState.STALE: "Update available",
    ToolState.RUNNING: "Running",
    ToolState.COMPLETED: "Completed",
    ToolState.FAILED: "Failed",
    ToolState.UNAVAILABLE_OFFLINE: "Offline",
}


def state_style(state: ToolState) -> str:
    """Rich style used to display a lifecycle state."""
    return STATE_STYLES[state]


def state_text(state: ToolState) -> Text:
    return Text(STATE_LABELS[state], style=state_style(state))


def exit_code_for(result: SessionResult) -> int:
    """
    Map a session result to the CLI exit code.

    The payload's own exit code is passed through where it fits in a
    process exit status.
    """
    if result.success:
        return ExitCode.SUCCESS
    if result.reason == FailureReason.CANCELLED:
        return ExitCode.SIGINT
    if result.reason == FailureReason.NON_ZERO_EXIT and result.exit_code is not None:
        if 0 < result.exit_code < 256:
            return result.exit_code
    return ExitCode.GENERAL_ERROR


def _get_engine(source: str | None = None) -> CatalogEngine:
    """Get a CatalogEngine built from the loaded configuration."""
    config = load_config()
    if source:
        config = config.model_copy(update={"manifest_source": source})
    return CatalogEngine(config)


def _print_warnings(warnings: list[str]) -> None:
    if not warnings:
        return
    content = Text()
    for i, warning in enumerate(warnings):
        if i > 0:
            content.append("\n")
        content.append(f"• {warning}")
    console.print(
        Panel(
            content,
            title="[bold yellow]Warnings[/bold yellow]",
            border_style="yellow",
            expand=False,
        )
    )


def _print_catalog(snapshot: CatalogSnapshot, category: str | None = None) -> None:
    views = snapshot.tools_in_category(category) if category else snapshot.tools
    if not views:
        console.print("[yellow]No tools in the catalog[/yellow]")
        return

    category_names = {c.id: c.name for c in snapshot.categories}

    table = Table(title="Tool Catalog", border_style="cyan")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Category", style="magenta")
    table.add_column("Version", justify="right")
    table.add_column("State")

    for view in sorted(views, key=lambda v: (v.descriptor.category_id, v.descriptor.name)):
        descriptor = view.descriptor
        version = descriptor.version
        if view.cache_entry is not None and view.cache_entry.version != descriptor.version:
            version = f"{view.cache_entry.version} → {descriptor.version}"
        name = descriptor.name
        if descriptor.requires_elevated_privilege:
            name += " (admin)"
        table.add_row(
            descriptor.id,
            Text(name),
            Text(category_names.get(descriptor.category_id, descriptor.category_id)),
            Text(version),
            state_text(view.state),
        )

    console.print(table)


def _print_event(event: CatalogEvent) -> None:
    if isinstance(event, OutputLineEvent):
        style = "red" if event.line.stream == OutputStream.STDERR else ""
        console.print(Text(event.line.text, style=style), highlight=False)
    elif isinstance(event, StatusChangedEvent):
        previous = STATE_LABELS[event.previous] if event.previous else "-"
        console.print(
            f"[dim]{event.tool_id}: {previous} → {STATE_LABELS[event.current]}[/dim]"
        )


def _print_result(result: SessionResult) -> None:
    if result.success:
        title = "[bold green]Completed[/bold green]"
        border = "green"
    else:
        title = "[bold red]Failed[/bold red]"
        border = "red"

    summary = Text()
    summary.append("Tool: ", style="cyan")
    summary.append(f"{result.tool_id}\n")
    summary.append("Exit code: ", style="cyan")
    summary.append(f"{result.exit_code if result.exit_code is not None else '-'}\n")
    summary.append("Duration: ", style="cyan")
    summary.append(f"{result.duration_ms / 1000:.2f}s")
    if result.reason is not None:
        summary.append("\nReason: ", style="cyan")
        summary.append(result.reason.value)
    if result.detail:
        summary.append("\nDetail: ", style="cyan")
        summary.append(result.detail)

    console.print()
    console.print(Panel(summary, title=title, border_style=border, expand=False))


async def _run_tool(
    engine: CatalogEngine,
    tool_id: str,
    args: list[str],
    params: dict[str, str],
    timeout: float | None,
    fetch: bool,
) -> SessionResult:
    snapshot = await engine.refresh(fetch=fetch)
    _print_warnings(snapshot.warnings)

    loop = asyncio.get_running_loop()
    cancellations: list[asyncio.Task[SessionResult | None]] = []

    def on_interrupt() -> None:
        console.print("\n[yellow]Cancelling...[/yellow]")
        cancellations.append(loop.create_task(engine.cancel(tool_id)))

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        # Windows event loops; Ctrl+C then cancels the whole run instead
        logger.debug("SIGINT handler not supported on this event loop")
        handler_installed = False

    unsubscribe = engine.subscribe(_print_event)
    try:
        return await engine.run(tool_id, args, params=params, timeout=timeout)
    finally:
        unsubscribe()
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        if cancellations:
            await asyncio.gather(*cancellations)


def refresh(
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Manifest URL or path (overrides configuration)"),
    ] = None,
) -> None:
    """
    Fetch the manifest and update the local view of the catalog.

    When the source is unreachable the last-known catalog is shown and
    tools that were never downloaded are marked offline.

    Examples:
        fieldkit refresh
        fieldkit refresh --source https://example.com/toolkit/manifest.json
        fieldkit refresh --source //fileserver/toolkit/manifest.json
    """
    try:
        engine = _get_engine(source)
        snapshot = asyncio.run(engine.refresh())
    except Exception as e:
        handle_error(e, "refresh")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    console.print()
    if snapshot.fetched:
        summary = Text(f"Catalog updated (schema {snapshot.schema_version})", style="green")
        if snapshot.diff is not None and snapshot.diff.has_changes:
            diff = snapshot.diff
            summary.append(
                f"\n{len(diff.added)} added, {len(diff.removed)} removed, "
                f"{len(diff.version_changed)} updated",
                style="dim",
            )
        console.print(Panel(summary, border_style="green", expand=False))
    _print_warnings(snapshot.warnings)
    console.print()
    _print_catalog(snapshot)

    if not snapshot.tools and not snapshot.fetched:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def status(
    category: Annotated[
        str | None,
        typer.Option("--category", "-c", help="Only show tools in this category"),
    ] = None,
    fetch: Annotated[
        bool,
        typer.Option("--fetch", "-f", help="Fetch the manifest before showing status"),
    ] = False,
) -> None:
    """
    Show every tool in the catalog with its state.

    Uses the last-known catalog unless --fetch is given.

    Examples:
        fieldkit status
        fieldkit status --category database
        fieldkit status --fetch
    """
    try:
        engine = _get_engine()
        snapshot = asyncio.run(engine.refresh(fetch=fetch))
    except Exception as e:
        handle_error(e, "status")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    _print_warnings(snapshot.warnings)
    _print_catalog(snapshot, category)


def run(
    tool_id: Annotated[str, typer.Argument(help="Tool to run (see 'fieldkit status')")],
    args: Annotated[
        list[str] | None,
        typer.Argument(help="Arguments passed to the tool unchanged (put -- before options)"),
    ] = None,
    param: Annotated[
        list[str] | None,
        typer.Option(
            "--param", "-p", help="Tool parameter as NAME=VALUE (repeatable; bare NAME for a switch)"
        ),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", "-t", help="Stop the tool after this many seconds"),
    ] = None,
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Manifest URL or path (overrides configuration)"),
    ] = None,
    no_fetch: Annotated[
        bool,
        typer.Option("--no-fetch", help="Use the last-known catalog without contacting the source"),
    ] = False,
) -> None:
    """
    Run a tool, downloading it first if needed, and stream its output.

    Declared parameters are checked before anything is downloaded and
    passed ahead of the other arguments. Press Ctrl+C to cancel the tool;
    its whole process tree is stopped. The exit code of the tool is
    passed through.

    Examples:
        fieldkit run check-disk
        fieldkit run reindex -p Database=Prod -p DryRun
        fieldkit run reindex -- --verbose
        fieldkit run long-report --timeout 600
    """
    try:
        params = parse_assignments(param or [])
    except ValueError as e:
        console.print(Text(f"Error: {e}", style="red"))
        raise typer.Exit(ExitCode.USER_ERROR)

    try:
        engine = _get_engine(source)
        result = asyncio.run(
            _run_tool(engine, tool_id, args or [], params, timeout, not no_fetch)
        )
    except (ToolNotFoundError, ParameterError) as e:
        handle_error(e, "run")
        raise typer.Exit(ExitCode.USER_ERROR)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(ExitCode.SIGINT)
    except Exception as e:
        handle_error(e, "run")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    _print_result(result)
    raise typer.Exit(exit_code_for(result))


def download(
    tool_ids: Annotated[list[str], typer.Argument(help="Tools to download")],
    source: Annotated[
        str | None,
        typer.Option("--source", "-s", help="Manifest URL or path (overrides configuration)"),
    ] = None,
) -> None:
    """
    Download tools into the local cache without running them.

    Useful before going somewhere without network access.

    Examples:
        fieldkit download check-disk reindex
    """
    try:
        engine = _get_engine(source)
        snapshot, failures = asyncio.run(_download_tools(engine, tool_ids))
    except Exception as e:
        handle_error(e, "download")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    _print_warnings(snapshot.warnings)
    for tool_id in tool_ids:
        if tool_id in failures:
            line = Text()
            line.append("✗ ", style="red")
            line.append(f"{tool_id}: {failures[tool_id]}")
            console.print(line)
        else:
            console.print(f"[green]✓[/green] {tool_id} cached")

    if failures:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


async def _download_tools(
    engine: CatalogEngine, tool_ids: list[str]
) -> tuple[CatalogSnapshot, dict[str, str]]:
    snapshot = await engine.refresh()
    failures: dict[str, str] = {}
    for tool_id in tool_ids:
        try:
            await engine.download(tool_id)
        except CatalogError as e:
            failures[tool_id] = str(e)
    return snapshot, failures


def history(
    tool_id: Annotated[
        str | None,
        typer.Option("--tool", help="Only show runs of this tool"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, help="Number of runs to show"),
    ] = 20,
) -> None:
    """
    Show recent tool runs, newest first.

    Examples:
        fieldkit history
        fieldkit history --tool reindex -n 5
    """
    try:
        engine = _get_engine()
        entries = asyncio.run(engine.recent_history(tool_id, limit))
    except Exception as e:
        handle_error(e, "history")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    if not entries:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(title="Run History", border_style="cyan")
    table.add_column("Finished", style="dim", no_wrap=True)
    table.add_column("Tool", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("State")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Reason", style="dim")

    for entry in entries:
        table.add_row(
            entry.finished_at.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            entry.tool_id,
            Text(entry.version or "-"),
            state_text(entry.state),
            str(entry.exit_code) if entry.exit_code is not None else "-",
            f"{entry.duration_ms / 1000:.1f}s",
            entry.reason.value if entry.reason else "",
        )

    console.print(table)


def _print_preflight(report: PreflightReport) -> None:
    table = Table(title=f"Pre-flight checks: {report.tool_id}", border_style="cyan")
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Result")
    table.add_column("Details")

    for check in report.checks:
        result = Text("✓ pass", style="green") if check.passed else Text("✗ fail", style="bold red")
        table.add_row(check.name, result, Text(check.message))

    console.print(table)


async def _check_tool(engine: CatalogEngine, tool_id: str, fetch: bool) -> PreflightReport:
    snapshot = await engine.refresh(fetch=fetch)
    _print_warnings(snapshot.warnings)
    return await engine.preflight(tool_id)


def check(
    tool_id: Annotated[str, typer.Argument(help="Tool to check")],
    no_fetch: Annotated[
        bool,
        typer.Option("--no-fetch", help="Use the last-known catalog without contacting the source"),
    ] = False,
) -> None:
    """
    Run a tool's pre-flight checks without starting it.

    Reports elevation, the payload interpreter, shared modules and the
    cached payload. Exits non-zero when any check fails.

    Examples:
        fieldkit check reindex
        fieldkit check reindex --no-fetch
    """
    try:
        engine = _get_engine()
        report = asyncio.run(_check_tool(engine, tool_id, not no_fetch))
    except ToolNotFoundError as e:
        handle_error(e, "check")
        raise typer.Exit(ExitCode.USER_ERROR)
    except Exception as e:
        handle_error(e, "check")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    _print_preflight(report)
    if not report.passed:
        raise typer.Exit(ExitCode.GENERAL_ERROR)


def _rate_style(rate: float) -> str:
    if rate > 80.0:
        return "bold green"
    if rate >= 50.0:
        return "bold yellow"
    return "bold red"


def _ago(when: datetime | None) -> str:
    if when is None:
        return "-"
    elapsed = datetime.now(timezone.utc) - when
    seconds = elapsed.total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h ago"
    if elapsed.days < 7:
        return f"{elapsed.days}d ago"
    return when.astimezone().strftime("%Y-%m-%d")


async def _load_usage(
    engine: CatalogEngine, limit: int | None
) -> tuple[list[ToolUsage], UsageSummary]:
    return await engine.usage_stats(limit), await engine.usage_summary()


def stats(
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Only show the most-run tools"),
    ] = None,
) -> None:
    """
    Show how often each tool was run and how often it succeeded.

    Counters survive history pruning. Success rates are colored green
    above 80%, yellow from 50% and red below.

    Examples:
        fieldkit stats
        fieldkit stats -n 5
    """
    try:
        engine = _get_engine()
        usage, summary = asyncio.run(_load_usage(engine, limit))
    except Exception as e:
        handle_error(e, "stats")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    if not usage:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(title="Tool Usage", border_style="cyan")
    table.add_column("Tool", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Runs", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Last run", style="dim")

    for item in usage:
        rate = item.success_rate()
        table.add_row(
            item.tool_id,
            Text(item.tool_name or "-"),
            str(item.runs),
            Text(f"{rate:.1f}%", style=_rate_style(rate)),
            f"{item.avg_duration_ms / 1000:.1f}s",
            _ago(item.last_run_at),
        )

    console.print(table)

    totals = Text()
    totals.append("Tools: ", style="dim")
    totals.append(str(summary.tools), style="bold cyan")
    totals.append("  •  Runs: ", style="dim")
    totals.append(str(summary.runs), style="bold")
    totals.append("  •  Success rate: ", style="dim")
    totals.append(f"{summary.success_rate():.1f}%", style=_rate_style(summary.success_rate()))
    console.print(totals)
