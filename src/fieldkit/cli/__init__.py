"""
fieldkit CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import typer
from rich.console import Console

from fieldkit import __version__
from fieldkit.cli import cache, catalog
from fieldkit.cli.errors import setup_logging
from fieldkit.core.config.env import load_layered_env

# Help panel names for command grouping
PANEL_CATALOG = "Catalog"
PANEL_MAINTENANCE = "Maintenance"

# Create the main Typer app
app = typer.Typer(
    name="fieldkit",
    help="Remote tool catalog for field machines",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
) -> None:
    """
    fieldkit - run maintenance tools from a central catalog.

    Tools are listed in a manifest published on a web server or share,
    downloaded on first use, cached locally and run with live output.

    Quick Start:
        1. export FIELDKIT_MANIFEST_SOURCE=https://example.com/toolkit/manifest.json
        2. fieldkit refresh          # Fetch the catalog
        3. fieldkit run check-disk   # Run a tool

    Configuration:
        ~/.config/fieldkit/config.json   # User settings
        .fieldkit.json                   # Project settings
        FIELDKIT_* environment variables # Highest precedence
    """
    # Load layered env files early so FIELDKIT_* settings are visible to load_config.
    # Precedence: OS env > project .env > user .env
    load_layered_env()
    setup_logging(debug)

    ctx.obj = {"debug": debug}


app.command(name="refresh", rich_help_panel=PANEL_CATALOG)(catalog.refresh)
app.command(name="status", rich_help_panel=PANEL_CATALOG)(catalog.status)
app.command(name="run", rich_help_panel=PANEL_CATALOG)(catalog.run)
app.command(name="download", rich_help_panel=PANEL_CATALOG)(catalog.download)
app.command(name="check", rich_help_panel=PANEL_CATALOG)(catalog.check)
app.command(name="history", rich_help_panel=PANEL_CATALOG)(catalog.history)
app.command(name="stats", rich_help_panel=PANEL_CATALOG)(catalog.stats)
app.add_typer(cache.app, name="cache", rich_help_panel=PANEL_MAINTENANCE)


@app.command(rich_help_panel=PANEL_MAINTENANCE)
def version() -> None:
    """Show fieldkit version."""
    console.print(f"fieldkit version {__version__}")
    raise typer.Exit(0)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
