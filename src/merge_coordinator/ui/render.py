"""Human-readable output for ``mergeq``.

``--json`` output is written by the CLI directly and never passes through here.
Color is used only on a TTY and is disabled by ``NO_COLOR`` or ``--no-color``.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_STYLES = {"bold": "\033[1m", "yellow": "\033[33m"}
_RESET = "\033[0m"
_INDENT = "  "


def format_table(headers: Sequence[str], rows: Sequence[Sequence[object]]) -> list[str]:
    """Left-aligned columns separated by two spaces, with a dashed rule under the header."""
    cells = [[str(value) for value in row[: len(headers)]] for row in rows]
    widths = [
        max([len(header), *(len(row[index]) for row in cells if index < len(row))])
        for index, header in enumerate(headers)
    ]

    def line(values: Sequence[str]) -> str:
        padded = (value.ljust(width) for value, width in zip(values, widths, strict=False))
        return "  ".join(padded).rstrip()

    return [line(headers), line(["-" * width for width in widths]), *(line(row) for row in cells)]


class CLIRenderer:
    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._out = stream if stream is not None else sys.stdout
        self._color = (
            not no_color
            and not os.environ.get("NO_COLOR")
            and bool(getattr(self._out, "isatty", lambda: False)())
        )

    def _line(self, text: str = "") -> None:
        self._out.write(text + "\n")

    def _paint(self, text: str, style: str) -> str:
        return f"{_STYLES[style]}{text}{_RESET}" if self._color else text

    def heading(self, text: str) -> None:
        self._line(self._paint(text, "bold"))

    def section(self, title: str) -> None:
        self._line()
        self.heading(title)

    def kv(self, key: str, value: object) -> None:
        self._line(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._line(line)

    def blank(self) -> None:
        self._line()

    def warning(self, text: str) -> None:
        self._line(f"{_INDENT}{self._paint('Warning:', 'yellow')} {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._line(f"{_INDENT}{prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print ``rows`` under ``title``; an empty table prints nothing, title included."""
        if not rows:
            return
        if title:
            self.section(title)
        for line in format_table(headers, rows):
            self._line(_INDENT + line)

    def next_steps(self, commands: Sequence[str]) -> None:
        if commands:
            self.section("Next steps:")
            for command in commands:
                self._line(f"{_INDENT}$ {command}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer", "format_table"]
