"""Terminal output: rich panels when interactive, plain lines otherwise."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

_THEME = Theme(
    {
        "summary.bullet": "bold #34d399",
        "summary.text": "#d6dee8",
        "panel.border": "#3b82f6",
        "status.icon.error": "bold #ff6b6b",
        "status.icon.warning": "bold #f9a825",
        "status.icon.success": "bold #34d399",
        "status.icon.info": "bold #38bdf8",
        "status.message": "#e5e7eb",
    }
)


class ConsoleLike(Protocol):
    def print(self, *objects: object, **kwargs: object) -> None: ...


class PlainConsole:
    """Minimal Console shim for non-interactive mode."""

    def print(self, *objects: object, **_: object) -> None:
        print(" ".join(str(obj) for obj in objects), flush=True)


@dataclass
class UI:
    plain: bool
    console: ConsoleLike = field(init=False)

    def __post_init__(self) -> None:
        if self.plain:
            self.console = PlainConsole()
        else:
            self.console = Console(theme=_THEME, highlight=False)

    def summary(self, title: str, lines: Iterable[str]) -> None:
        materialized = list(lines)
        if self.plain:
            self.console.print(f"-- {title} --")
            for line in materialized:
                self.console.print(line)
            return
        text = Text()
        for line in materialized:
            text.append("• ", style="summary.bullet")
            text.append(line + "\n", style="summary.text")
        self.console.print(
            Panel(
                text,
                title=f"  {title}  ",
                title_align="left",
                border_style="panel.border",
                box=box.ROUNDED,
                padding=(1, 2),
            )
        )

    def table(self, title: str, columns: list[str], rows: Iterable[Iterable[object]]) -> None:
        materialized = [[str(cell) for cell in row] for row in rows]
        if self.plain:
            self.console.print(f"-- {title} --")
            for row in materialized:
                self.console.print("\t".join(row))
            return
        table = Table(title=title, box=box.SIMPLE_HEAVY)
        for column in columns:
            table.add_column(column)
        for row in materialized:
            table.add_row(*row)
        self.console.print(table)

    def error(self, message: str) -> None:
        self._status("✗", "status.icon.error", message)

    def warning(self, message: str) -> None:
        self._status("!", "status.icon.warning", message)

    def success(self, message: str) -> None:
        self._status("✓", "status.icon.success", message)

    def info(self, message: str) -> None:
        if self.plain:
            self.console.print(message)
            return
        self._status("ℹ", "status.icon.info", message)

    def _status(self, icon: str, icon_style: str, message: str) -> None:
        if self.plain:
            self.console.print(f"{icon} {message}")
            return
        text = Text()
        text.append(f"{icon} ", style=icon_style)
        text.append(message, style="status.message")
        self.console.print(text)


def create_ui(plain: bool) -> UI:
    return UI(plain=plain)


__all__ = ["ConsoleLike", "PlainConsole", "UI", "create_ui"]
