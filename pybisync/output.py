"""Output formatting for pybisync."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Prints user-facing messages with rich, or JSON when requested."""

    def __init__(self, json_output: bool = False, quiet: bool = False):
        """Initialize output formatter.

        Args:
            json_output: Emit machine readable JSON instead of text
            quiet: Suppress informational messages
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(highlight=False, soft_wrap=True)
        self.err_console = Console(stderr=True, highlight=False, soft_wrap=True)

    def print(self, message: str = "") -> None:
        """Print a plain message."""
        if self.quiet or self.json_output:
            return
        self.console.print(escape(message))

    def info(self, message: str) -> None:
        """Print an informational message."""
        if self.quiet or self.json_output:
            return
        self.console.print(escape(message))

    def success(self, message: str) -> None:
        """Print a success message."""
        if self.quiet or self.json_output:
            return
        self.console.print(f"[green]{escape(message)}[/green]")

    def warning(self, message: str) -> None:
        """Print a warning message to stderr."""
        if self.json_output:
            return
        self.err_console.print(f"[yellow]{escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        """Print an error message to stderr. Never suppressed."""
        self.err_console.print(f"[bold red]{escape(message)}[/bold red]")

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        """Print a two-column key/value table."""
        if self.quiet or self.json_output:
            return
        table = Table(title=title, show_header=False, box=None)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in items:
            table.add_row(escape(key), escape(value))
        self.console.print(table)

    def output_json(self, data: Any) -> None:
        """Dump data as indented JSON to stdout."""
        self.console.print_json(json.dumps(data, default=str))
