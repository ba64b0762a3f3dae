from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from typing import Literal

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

OUTPUT_CHOICES = ("auto", "plain", "rich")
OutputMode = Literal["plain", "rich"]

STATUS_STYLES = {
    "pending": "white",
    "active": "bold cyan",
    "requires-clarification": "yellow",
    "done": "green",
    "failed": "red",
    "split": "magenta",
}


def add_output_mode_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        choices=OUTPUT_CHOICES,
        help="Output mode: auto (default), plain, or rich.",
    )


def _stream_is_tty(stream: object) -> bool:
    probe = getattr(stream, "isatty", None)
    if not callable(probe):
        return False
    try:
        return bool(probe())
    except (OSError, ValueError):
        return False


def resolve_output_mode(
    requested: str | None = None,
    *,
    is_tty: bool | None = None,
) -> OutputMode:
    selected = (requested or "auto").strip().lower()
    if selected not in OUTPUT_CHOICES:
        expected = ", ".join(OUTPUT_CHOICES)
        raise ValueError(f"invalid --output value {requested!r}; expected one of: {expected}")
    if selected == "auto":
        tty = _stream_is_tty(sys.stdout) if is_tty is None else bool(is_tty)
        return "rich" if tty else "plain"
    return "rich" if selected == "rich" else "plain"


def make_console(mode: OutputMode, *, stderr: bool = False) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        force_terminal=mode == "rich",
        no_color=mode != "rich",
        highlight=False,
        width=None if mode == "rich" else 160,
    )


def styled_status(status: str, mode: OutputMode) -> str:
    if mode != "rich":
        return status
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def render_table(
    console: Console,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str | None = None,
    no_wrap_columns: Sequence[int] = (),
) -> None:
    table = Table(title=title)
    no_wrap = set(no_wrap_columns)
    for idx, header in enumerate(headers):
        table.add_column(str(header), no_wrap=idx in no_wrap)
    for row in rows:
        table.add_row(*(str(value or "") for value in row))
    console.print(table)


def render_panel(console: Console, body: str, *, title: str | None = None) -> None:
    console.print(Panel(body, title=title))
