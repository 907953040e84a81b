"""
Utility functions for CLI commands.

This module provides helper functions for output formatting and option
parsing shared by the commands.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.status import Status

console = Console()


def echo_success(message: str) -> None:
    """Print success message in green."""
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    """Print error message in red."""
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    """Print warning message in yellow."""
    click.secho(f"⚠ {message}", fg="yellow")


def echo_info(message: str) -> None:
    """Print info message in blue."""
    click.secho(f"ℹ {message}", fg="blue")


@contextmanager
def step_progress(message: str) -> Generator[None, None, None]:
    """Context manager with live spinner for step progress.

    Shows a Rich spinner with message while the context is active,
    then shows "✓ message" on success or "✗ message" on failure.
    """
    status = Status(f"[cyan]{message}...[/cyan]", spinner="dots", console=console)
    status.start()

    try:
        yield
        status.stop()
        console.print(f"[green]✓[/green] {message}")
    except BaseException:
        status.stop()
        console.print(f"[red]✗[/red] {message}")
        raise


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2h 30m 15s")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60

    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def split_pair(value: str) -> tuple[str, str]:
    """Split a ``src:dest`` option value; a single value applies to both sides.

    Raises:
        click.BadParameter: If either side is empty
    """
    if ":" in value:
        source, destination = value.split(":", 1)
    else:
        source = destination = value
    if not source or not destination:
        raise click.BadParameter(f"Expected NAME or SRC:DEST, got '{value}'")
    return source, destination


def load_flags_file(path: Path | None) -> dict[str, str]:
    """Load plugin flag values from a YAML or JSON mapping file.

    Raises:
        click.BadParameter: If the file is not a flat mapping
    """
    if path is None:
        return {}
    with open(path, encoding="utf-8") as f:
        data: Any = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise click.BadParameter(f"Flags file {path} must contain a mapping")
    return {str(key): "" if value is None else str(value) for key, value in data.items()}
