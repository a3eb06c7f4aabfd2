"""Console output for the mpyworkbench CLI."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Formats CLI output as rich text or JSON.

    Messages go to stderr so that JSON results on stdout stay parseable.
    """

    def __init__(
        self,
        json_output: bool = False,
        quiet: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        """Initialize output formatter.

        Args:
            json_output: Print results as JSON instead of tables
            quiet: Suppress info and success messages
            console: Console for results (defaults to stdout)
            err_console: Console for messages (defaults to stderr)
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(message, highlight=False)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.err_console.print(f"[green]✓[/green] {message}", highlight=False)

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]Warning:[/yellow] {message}", highlight=False)

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {message}", highlight=False)

    def output_json(self, data: Any) -> None:
        self.console.print_json(json.dumps(data, default=str))

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Print rows as a table, or as a JSON list in JSON mode.

        Args:
            rows: One dict per row
            columns: Keys to show, in order
            headers: Optional column titles keyed by column
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in rows])
            return
        headers = headers or {}
        table = Table(show_header=True, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            table.add_row(*("" if row.get(c) is None else str(row[c]) for c in columns))
        self.console.print(table)

    def print_summary(self, title: str, items: list[tuple[str, str]]) -> None:
        if self.quiet or self.json_output:
            return
        self.err_console.print(f"\n[bold]{title}[/bold]")
        for label, value in items:
            self.err_console.print(f"  {label}: {value}", highlight=False)

    def format_size(self, size_bytes: int) -> str:
        return format_size(size_bytes)
