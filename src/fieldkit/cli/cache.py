"""
fieldkit CLI - Cache command.

Inspect and maintain the local payload cache.
"""

from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fieldkit.cli.errors import ExitCode, handle_error
from fieldkit.core.catalog.cache import CacheStore
from fieldkit.core.config import load_config

console = Console()
app = typer.Typer(
    name="cache",
    help="Inspect and maintain the local payload cache",
    no_args_is_help=True,
)


def _get_store() -> CacheStore:
    return CacheStore(load_config().cache_dir)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@app.command()
def stats() -> None:
    """
    Show cached payloads and their total size.

    Examples:
        fieldkit cache stats
    """
    try:
        store = _get_store()
        entries = store.entries()
    except Exception as e:
        handle_error(e, "cache stats")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    if not entries:
        console.print(f"[yellow]Cache is empty[/yellow] [dim]({escape(str(store.root))})[/dim]")
        return

    table = Table(title=f"Cache: {escape(str(store.root))}", border_style="cyan")
    table.add_column("Tool", style="cyan", no_wrap=True)
    table.add_column("Version", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Fetched", style="dim")
    table.add_column("Hash", style="dim")

    for entry in entries:
        table.add_row(
            entry.tool_id,
            entry.version,
            _format_size(entry.size_bytes),
            entry.fetched_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            entry.content_hash[:12],
        )

    console.print(table)
    total = sum(entry.size_bytes for entry in entries)
    console.print(f"[dim]{len(entries)} entries, {_format_size(total)}[/dim]")


@app.command()
def verify() -> None:
    """
    Recompute every payload hash and discard corrupt entries.

    Examples:
        fieldkit cache verify
    """
    try:
        store = _get_store()
        before = store.cached_ids()
        verified = {entry.tool_id for entry in store.entries()}
    except Exception as e:
        handle_error(e, "cache verify")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    discarded = [tool_id for tool_id in before if tool_id not in verified]
    console.print(f"[green]{len(verified)} entries verified[/green]")
    if discarded:
        console.print(f"[yellow]Discarded {len(discarded)}: {', '.join(discarded)}[/yellow]")
        raise typer.Exit(ExitCode.GENERAL_ERROR)


@app.command()
def evict(
    tool_id: Annotated[str, typer.Argument(help="Tool whose cached payload to remove")],
) -> None:
    """
    Remove one tool's cached payload.

    Examples:
        fieldkit cache evict reindex
    """
    try:
        removed = _get_store().evict(tool_id)
    except ValueError as e:
        handle_error(e, "cache evict")
        raise typer.Exit(ExitCode.USER_ERROR)
    except Exception as e:
        handle_error(e, "cache evict")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    if not removed:
        console.print(f"[yellow]'{escape(tool_id)}' is not cached[/yellow]")
        raise typer.Exit(ExitCode.USER_ERROR)
    console.print(f"[green]Evicted {tool_id}[/green]")


@app.command()
def clear(
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """
    Remove every cached payload.

    Examples:
        fieldkit cache clear
        fieldkit cache clear --yes
    """
    if not yes and not typer.confirm("Remove all cached payloads?"):
        raise typer.Exit(ExitCode.SUCCESS)

    try:
        removed = _get_store().clear()
    except Exception as e:
        handle_error(e, "cache clear")
        raise typer.Exit(ExitCode.GENERAL_ERROR)

    console.print(f"[green]Removed {removed} entries[/green]")
