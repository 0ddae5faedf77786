"""XLSX codec: decoded sheets <-> ``.xlsx`` workbook files.

Uses openpyxl.  Cell values, formula text and cell comments (the sheet
notes) cross the boundary; formatting, column widths, charts and number
formats are not written and are ignored on read.
"""

from __future__ import annotations

import datetime
import logging
import re
from pathlib import Path
from typing import Any

from tabcalc.translate.sheets import CellFormula, Sheet

logger = logging.getLogger(__name__)

# Functions newer than the original file format; spreadsheet applications
# expect them stored with the ``_xlfn.`` prefix.
FUTURE_FUNCTIONS = frozenset({
    "CONCAT",
    "IFS",
    "MAXIFS",
    "MINIFS",
    "PERCENTILE.INC",
    "QUARTILE.INC",
    "STDEV.P",
    "STDEV.S",
    "VAR.P",
    "VAR.S",
    "XLOOKUP",
})

_STRING_RE = re.compile(r'("(?:[^"]|"")*")')
_FUNC_RE = re.compile(r"(?<![A-Za-z0-9_.])([A-Za-z_][A-Za-z0-9_.]*)\(")
_XLFN_RE = re.compile(r"_xlfn\.(?:_xlws\.)?", re.IGNORECASE)

_COMMENT_AUTHOR = "tabcalc"
_MAX_SHEET_TITLE = 31
_BAD_TITLE_CHARS = set("[]:*?/\\")


def _outside_strings(text: str, fn: Any) -> str:
    parts = _STRING_RE.split(text)
    # Odd positions are the string literals themselves
    return "".join(p if i % 2 else fn(p) for i, p in enumerate(parts))


def add_xlfn_prefixes(text: str) -> str:
    """``=STDEV.S(A2:A4)`` -> ``=_xlfn.STDEV.S(A2:A4)``."""

    def sub(chunk: str) -> str:
        return _FUNC_RE.sub(
            lambda m: ("_xlfn." + m.group(1) if m.group(1).upper() in FUTURE_FUNCTIONS else m.group(1)) + "(",
            chunk,
        )

    return _outside_strings(text, sub)


def strip_xlfn_prefixes(text: str) -> str:
    """Inverse of :func:`add_xlfn_prefixes`."""
    return _outside_strings(text, lambda chunk: _XLFN_RE.sub("", chunk))


def _check_title(name: str) -> None:
    from tabcalc.errors import TranslationError

    if len(name) > _MAX_SHEET_TITLE or not name or _BAD_TITLE_CHARS & set(name):
        raise TranslationError(
            f"{name!r} cannot be a worksheet title (at most {_MAX_SHEET_TITLE} characters, none of []:*?/\\)"
        )


def _encode(cell: Any) -> Any:
    if isinstance(cell, CellFormula):
        return add_xlfn_prefixes(cell.text)
    return cell


def _decode(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("="):
        return CellFormula(strip_xlfn_prefixes(value))
    text = getattr(value, "text", None)
    if isinstance(text, str) and text.startswith("="):
        # Array formulas
        return CellFormula(strip_xlfn_prefixes(text))
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def write_workbook(sheets: list[Sheet], path: Path) -> Path:
    """Write *sheets* to an ``.xlsx`` file at *path*.

    Raises:
        TranslationError: A sheet name is not a valid worksheet title.
    """
    try:
        import openpyxl
        from openpyxl.comments import Comment
    except ImportError:
        raise ImportError(
            "openpyxl is required for XLSX export.  "
            "Install with: pip install openpyxl"
        )

    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for sheet in sheets:
        _check_title(sheet.name)
        ws = wb.create_sheet(title=sheet.name)
        ws.append(list(sheet.header))
        for row in sheet.rows:
            ws.append([_encode(c) for c in row])
        for address, text in sheet.notes.items():
            ws[address].comment = Comment(text, _COMMENT_AUTHOR)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(str(path))
    logger.debug("wrote %d sheets to %s", len(sheets), path)
    return path


def read_workbook(path: Path) -> list[Sheet]:
    """Read every non-empty worksheet of an ``.xlsx`` file as a :class:`Sheet`.

    Formula cells come back as :class:`CellFormula` (the stored formula,
    not a cached result).  Trailing empty rows and columns are dropped.
    """
    try:
        import openpyxl
    except ImportError:
        raise ImportError(
            "openpyxl is required for XLSX import.  "
            "Install with: pip install openpyxl"
        )

    wb = openpyxl.load_workbook(str(path), data_only=False)
    sheets: list[Sheet] = []
    for ws in wb.worksheets:
        grid = [list(r) for r in ws.iter_rows(values_only=True)]
        while grid and all(v is None for v in grid[-1]):
            grid.pop()
        if not grid:
            continue
        header = list(grid[0])
        while header and header[-1] is None:
            header.pop()
        width = len(header)
        rows = [[_decode(v) for v in (r + [None] * width)[:width]] for r in grid[1:]]
        notes = {
            cell.coordinate: cell.comment.text
            for row in ws.iter_rows()
            for cell in row
            if cell.comment is not None
        }
        sheets.append(Sheet(ws.title, header, rows, notes))
    wb.close()
    return sheets
