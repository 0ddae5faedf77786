"""Decoded spreadsheet grids exchanged with the workbook codec.

A :class:`Sheet` is a header row plus data rows.  Cells hold plain values
(float, str, bool, date), ``None`` for an empty cell, or a
:class:`CellFormula` holding spreadsheet formula text.  Cell notes are
kept apart from the grid, keyed by ``A1`` address.
"""

from __future__ import annotations

import re
from typing import Any

_CELL_RE = re.compile(r"^(\$?)([A-Z]{1,3})(\$?)([0-9]+)$")
_PLAIN_SHEET_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CELL_LIKE_RE = re.compile(r"^[A-Za-z]{1,3}[0-9]+$")


class CellFormula:
    """Spreadsheet formula text, always starting with ``=``."""

    __slots__ = ("text",)

    def __init__(self, text: str) -> None:
        self.text = text if text.startswith("=") else "=" + text

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CellFormula):
            return NotImplemented
        return self.text == other.text

    def __hash__(self) -> int:
        return hash(self.text)

    def __repr__(self) -> str:
        return f"CellFormula({self.text!r})"


class Sheet:
    """One worksheet: ``name``, ``header`` cells, data ``rows`` and cell ``notes``."""

    def __init__(
        self,
        name: str,
        header: list[Any],
        rows: list[list[Any]] | None = None,
        notes: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.header = list(header)
        self.rows = [list(r) for r in rows] if rows else []
        self.notes = dict(notes) if notes else {}

    def column(self, index: int) -> list[Any]:
        """Cells of column *index* (0-based) across the data rows."""
        return [row[index] if index < len(row) else None for row in self.rows]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Sheet):
            return NotImplemented
        return (self.name, self.header, self.rows, self.notes) == (other.name, other.header, other.rows, other.notes)

    def __repr__(self) -> str:
        return f"Sheet({self.name!r}, header={self.header}, rows={len(self.rows)})"


def column_letter(idx: int) -> str:
    """Convert 0-based column index to letter(s): 0 -> ``A``, 26 -> ``AA``."""
    result = ""
    n = idx + 1
    while n > 0:
        n, rem = divmod(n - 1, 26)
        result = chr(65 + rem) + result
    return result


def column_index(letters: str) -> int:
    """Inverse of :func:`column_letter`."""
    n = 0
    for ch in letters.upper():
        n = n * 26 + (ord(ch) - 64)
    return n - 1


class CellAddress:
    """A parsed ``A1``-style address.

    Attributes:
        column: 0-based column index.
        row: 1-based spreadsheet row.
        absolute_row: True when the row is anchored (``B$2``).
    """

    __slots__ = ("column", "row", "absolute_column", "absolute_row")

    def __init__(self, column: int, row: int, absolute_column: bool = False, absolute_row: bool = False) -> None:
        self.column = column
        self.row = row
        self.absolute_column = absolute_column
        self.absolute_row = absolute_row

    @classmethod
    def parse(cls, text: str) -> CellAddress:
        match = _CELL_RE.match(text.upper())
        if match is None:
            raise ValueError(f"not a cell address: {text!r}")
        col_abs, letters, row_abs, row = match.groups()
        return cls(column_index(letters), int(row), bool(col_abs), bool(row_abs))

    def __repr__(self) -> str:
        return (
            f"{'$' if self.absolute_column else ''}{column_letter(self.column)}"
            f"{'$' if self.absolute_row else ''}{self.row}"
        )


def sheet_prefix(name: str) -> str:
    """``Sales`` -> ``Sales!``; names needing quotes -> ``'a.Sales'!``."""
    if _PLAIN_SHEET_RE.match(name) and not _CELL_LIKE_RE.match(name):
        return f"{name}!"
    return "'" + name.replace("'", "''") + "'!"
