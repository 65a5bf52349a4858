"""Shared Rich console for operator-facing warnings and errors.

Everything user-facing goes to stderr so that stdout stays free for the
commands trudger spawns with inherited stdio.
"""

from rich.console import Console
from rich.markup import escape

console = Console(stderr=True, soft_wrap=True, highlight=False)


def warn(message: str) -> None:
    """Print a yellow ``Warning:`` line."""
    console.print(f"[yellow]Warning: {escape(message)}[/yellow]")


def error(message: str) -> None:
    """Print a red error line."""
    console.print(f"[red]{escape(message)}[/red]")


def info(message: str) -> None:
    console.print(escape(message))
