"""
Standardized error handling and exit codes for the fieldkit CLI.
"""

import logging
import sys
import traceback
from enum import IntEnum

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from fieldkit.core.catalog.exceptions import CatalogError

console = Console(stderr=True)

# Global debug flag
_debug_mode = False


class ExitCode(IntEnum):
    """Standard exit codes for fieldkit CLI operations."""

    SUCCESS = 0
    """Operation completed successfully."""

    GENERAL_ERROR = 1
    """Generic error, or the tool failed without an exit code of its own."""

    USER_ERROR = 2
    """Unknown tool id or invalid input."""

    SIGINT = 130
    """Cancelled with Ctrl+C - Unix standard."""


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for fieldkit commands.

    Args:
        debug: If True, enable DEBUG level logging and full tracebacks
    """
    global _debug_mode
    _debug_mode = debug

    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def is_debug() -> bool:
    return _debug_mode


def handle_error(error: Exception, command_name: str) -> None:
    """
    Handle and display errors with appropriate user-friendly messages.

    Args:
        error: The exception that was raised
        command_name: Name of the command that failed
    """
    if isinstance(error, CatalogError):
        error_text = Text()
        error_text.append("Error: ", style="bold red")
        error_text.append(str(error))

        if error.context:
            error_text.append("\n\nContext:\n", style="dim")
            for key, value in error.context.items():
                error_text.append(f"  {key}: ", style="cyan")
                error_text.append(f"{value}\n", style="white")

        title = "[bold red]Error[/bold red]"
    else:
        error_text = Text()
        error_text.append("Unexpected error in ", style="bold red")
        error_text.append(command_name, style="bold yellow")
        error_text.append(": ", style="bold red")
        error_text.append(str(error))

        title = "[bold red]Unexpected Error[/bold red]"

    console.print()
    console.print(Panel(error_text, title=title, border_style="red", expand=False))

    if _debug_mode:
        console.print("\n[dim]Full traceback:[/dim]")
        console.print(traceback.format_exc())
    else:
        console.print("[dim]Run with --debug for full traceback[/dim]")
    console.print()
