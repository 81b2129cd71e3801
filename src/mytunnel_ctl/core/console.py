"""Operator-facing terminal output.

All commands print through a `Reporter` handed to them, never through a
module-level console, so tests can capture output with a recording console.
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape


def make_console(*, record: bool = False, width: int | None = None) -> Console:
    return Console(highlight=False, record=record, width=width)


class Reporter:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or make_console()

    def section(self, title: str) -> None:
        self.console.print()
        self.console.rule(f"[bold blue]{escape(title)}")

    def heading(self, text: str) -> None:
        self.console.print(f"[bold blue]{escape(text)}[/bold blue]")

    def step(self, text: str) -> None:
        self.console.print(f"[cyan]→[/cyan] {escape(text)}")

    def info(self, text: str) -> None:
        self.console.print(f"[blue]ℹ[/blue] {escape(text)}")

    def success(self, text: str) -> None:
        self.console.print(f"[green]✓[/green] {escape(text)}")

    def warning(self, text: str) -> None:
        self.console.print(f"[yellow]⚠[/yellow] {escape(text)}")

    def error(self, text: str) -> None:
        self.console.print(f"[red]✗[/red] {escape(text)}")

    def bullet(self, text: str) -> None:
        self.console.print(f"  - {escape(text)}")

    def line(self, text: str = "", *, style: str | None = None) -> None:
        self.console.print(escape(text), style=style)

    def block(self, text: str, *, indent: int = 2) -> None:
        pad = " " * indent
        for raw in text.splitlines():
            self.console.print(f"{pad}{escape(raw)}", style="dim")
