"""Model -> sheets.

Layout:

- one sheet per table, named ``table`` (``alias.table`` for included
  models), header row of column names in declaration order, one
  spreadsheet row per table row starting at row 2;
- one scalars sheet per model (``Scalars``, ``alias.Scalars``) with header
  ``Name``/``Value``: scalars first, then table aggregations named
  ``table.aggregation``.

Column metadata becomes a note on the header cell, scalar and aggregation
metadata a note on the value cell.

Formula references become cell coordinates: a row-wise read of a column
becomes the same-row cell, a reducing argument becomes the column's full
range and ``name[i]`` becomes the anchored cell ``$C$(i+2)``.
"""

from __future__ import annotations

import logging
from typing import Any

from lark import Tree

from tabcalc.errors import TabcalcError, TranslationError
from tabcalc.formulas.parser import parse_formula
from tabcalc.formulas.render import render_formula
from tabcalc.logging.events import EventType, emit_info
from tabcalc.model import Model, Scalar, Table
from tabcalc.resolver import COLUMN, Namespace, Target
from tabcalc.translate.sheets import CellFormula, Sheet, column_letter, sheet_prefix

logger = logging.getLogger(__name__)

DEFAULT_SCALARS_SHEET = "Scalars"


def table_sheet_name(namespace: Namespace, table: Table) -> str:
    return namespace.prefix + table.name


def scalars_sheet_name(namespace: Namespace, scalars_sheet: str = DEFAULT_SCALARS_SHEET) -> str:
    return namespace.prefix + scalars_sheet


def scalar_rows(model: Model) -> list[tuple[str, Scalar, Table | None]]:
    """``(row name, scalar, owning table)`` per scalars-sheet row, in order."""
    rows: list[tuple[str, Scalar, Table | None]] = [(s.name, s, None) for s in model.scalars.values()]
    for table in model.tables.values():
        for agg in table.aggregations.values():
            rows.append((f"{table.name}.{agg.name}", agg, table))
    return rows


class _Exporter:
    def __init__(self, model: Model, scalars_sheet: str) -> None:
        self.root = Namespace(model)
        self.scalars_sheet = scalars_sheet
        # namespace prefix -> local scalar name -> 1-based spreadsheet row
        self._scalar_row: dict[str, dict[str, int]] = {}

    def _scalar_cell(self, target: Target) -> tuple[str, int]:
        ns = target.namespace
        rows = self._scalar_row.get(ns.prefix)
        if rows is None:
            rows = {
                name: i + 2 for i, (name, _, _) in enumerate(scalar_rows(ns.model))
            }
            self._scalar_row[ns.prefix] = rows
        local = f"{target.table.name}.{target.name}" if target.table is not None else target.name
        return scalars_sheet_name(ns, self.scalars_sheet), rows[local]

    def translate(
        self,
        formula: str,
        namespace: Namespace,
        sheet: str,
        identifier: str,
        table: Table | None = None,
        section: str | None = None,
        row: int | None = None,
    ) -> str:
        """Render *formula* as a compact cell formula placed on *sheet*.

        Args:
            row: 0-based table row for row-wise formulas, ``None`` otherwise.
        """
        try:
            tree = parse_formula(formula)
        except TabcalcError as exc:
            raise TranslationError(str(exc), identifier, formula) from exc

        def rewrite(node: Tree, in_range: bool) -> str:
            name = str(node.children[0])
            target = namespace.locate(name, table, section)
            if target is None:
                raise TranslationError(f"unknown reference {name!r}", identifier, formula)

            owner = target.table if target.kind == COLUMN else None
            if owner is None:
                if node.data == "index_ref":
                    raise TranslationError(f"{name!r} is not a column", identifier, formula)
                target_sheet, target_row = self._scalar_cell(target)
                prefix = "" if target_sheet == sheet else sheet_prefix(target_sheet)
                return f"{prefix}B{target_row}"

            target_sheet = table_sheet_name(target.namespace, owner)
            prefix = "" if target_sheet == sheet else sheet_prefix(target_sheet)
            letter = column_letter(list(owner.columns).index(target.name))

            if node.data == "index_ref":
                index = _literal_index(node.children[1])
                if index is None:
                    raise TranslationError(
                        f"index of {name!r} must be a literal non-negative integer", identifier, formula
                    )
                if index >= target.row_count:
                    raise TranslationError(
                        f"{name}[{index}] is out of range ({target.row_count} rows)", identifier, formula
                    )
                return f"{prefix}${letter}${index + 2}"
            if in_range:
                return f"{prefix}{letter}2:{letter}{target.row_count + 1}"
            if row is None:
                raise TranslationError(
                    f"column {name!r} read outside a row context", identifier, formula
                )
            return f"{prefix}{letter}{row + 2}"

        return render_formula(tree, rewrite=rewrite, compact=True)

    def export(self) -> list[Sheet]:
        sheets: list[Sheet] = []
        reserved = self.scalars_sheet.casefold()
        for ns in self.root.walk():
            for table in ns.model.tables.values():
                if table.name.casefold() == reserved:
                    raise TranslationError(
                        f"table {table.name!r} has the same name as the scalars sheet; "
                        "rename the table or set scalars_sheet",
                        ns.prefix + table.name,
                    )
            for table in ns.model.tables.values():
                sheets.append(self._table_sheet(ns, table))
            sheets.append(self._scalars_sheet(ns))
        return sheets

    def _table_sheet(self, ns: Namespace, table: Table) -> Sheet:
        name = table_sheet_name(ns, table)
        columns = list(table.columns.values())
        rows: list[list[Any]] = []
        for i in range(table.row_count):
            cells: list[Any] = []
            for col in columns:
                if col.formula is not None:
                    text = self.translate(
                        col.formula, ns, name, f"{ns.prefix}{table.name}.{col.name}", table=table, row=i
                    )
                    cells.append(CellFormula(text))
                else:
                    cells.append(col.values[i])
            rows.append(cells)
        notes: dict[str, str] = {}
        for j, col in enumerate(columns):
            note = col.metadata.to_note()
            if note is not None:
                notes[f"{column_letter(j)}1"] = note
        return Sheet(name, [c.name for c in columns], rows, notes)

    def _scalars_sheet(self, ns: Namespace) -> Sheet:
        name = scalars_sheet_name(ns, self.scalars_sheet)
        rows: list[list[Any]] = []
        notes: dict[str, str] = {}
        for scalar_name, scalar, table in scalar_rows(ns.model):
            note = scalar.metadata.to_note()
            if note is not None:
                notes[f"B{len(rows) + 2}"] = note
            formula = scalar.formula
            if formula is None:
                rows.append([scalar_name, scalar.value])
                continue
            section = None
            if table is None and "." in scalar_name:
                section = scalar_name.rsplit(".", 1)[0]
            text = self.translate(formula, ns, name, ns.prefix + scalar_name, table=table, section=section)
            rows.append([scalar_name, CellFormula(text)])
        return Sheet(name, ["Name", "Value"], rows, notes)


def _literal_index(node: Any) -> int | None:
    if not isinstance(node, Tree) or node.data != "number":
        return None
    value = float(str(node.children[0]))
    if value != int(value):
        return None
    return int(value)


def export_model(model: Model, scalars_sheet: str = DEFAULT_SCALARS_SHEET) -> list[Sheet]:
    """Lay *model* and its includes out as sheets.

    Raises:
        TranslationError: A formula cannot be expressed with cell
            references (unknown reference, computed index, column read
            outside a row context).
    """
    sheets = _Exporter(model, scalars_sheet).export()
    emit_info(
        EventType.export_completed,
        f"Exported {len(sheets)} sheets",
        {"model": model.source or "<model>", "sheets": [s.name for s in sheets]},
    )
    logger.debug("exported %s", [s.name for s in sheets])
    return sheets
