"""Sheets -> model, the inverse of :mod:`tabcalc.translate.outbound`.

Sheets are grouped by namespace prefix: ``sales`` and ``Scalars`` belong
to the root model, ``plan.sales`` and ``plan.Scalars`` to an include
aliased ``plan`` (recorded as file ``plan.yaml``).

Every cell reference is mapped back to an identifier relative to the
formula's own model:

- a relative same-row cell in a row-wise formula -> the column (``cost``,
  ``other.cost``);
- a row-anchored cell -> an indexed read (``cost[0]``);
- a full-column range -> the column as a whole (``SUM(cost)``);
- a scalars-sheet value cell -> the scalar or ``table.aggregation``.

A formula column is rebuilt from all of its rows, which must agree on a
single model formula.  Cell notes written on export are read back as
column and scalar metadata.
"""

from __future__ import annotations

import logging
from typing import Any

from lark import Tree

from tabcalc.errors import TabcalcError, TranslationError
from tabcalc.formulas.parser import parse_cell_formula, unquote_sheet
from tabcalc.formulas.render import render_formula
from tabcalc.logging.events import EventType, emit_info
from tabcalc.model import Include, Model, Scalar, Table
from tabcalc.translate.outbound import DEFAULT_SCALARS_SHEET
from tabcalc.translate.sheets import CellAddress, CellFormula, Sheet, column_letter
from tabcalc.values import Column, Metadata, coerce_value, value_type

logger = logging.getLogger(__name__)


class _TableSheet:
    def __init__(self, sheet: Sheet, prefix: str, table: str) -> None:
        self.sheet = sheet
        self.prefix = prefix
        self.table = table
        self.columns = [str(h) for h in sheet.header]

    @property
    def row_count(self) -> int:
        return len(self.sheet.rows)


class _ScalarSheet:
    def __init__(self, sheet: Sheet, prefix: str) -> None:
        self.sheet = sheet
        self.prefix = prefix
        self.names = [str(row[0]) if row and row[0] is not None else "" for row in sheet.rows]


def _literal(value: Any) -> Any:
    if value is None:
        return None
    try:
        return coerce_value(value, value_type(value))
    except TypeError as exc:
        raise TranslationError(str(exc)) from exc


def _split_prefix(name: str) -> tuple[str, str]:
    """``plan.sales`` -> (``plan``, ``sales``); ``sales`` -> (``""``, ``sales``)."""
    if "." in name:
        prefix, local = name.rsplit(".", 1)
        return prefix, local
    return "", name


def _relative(prefix: str, target_prefix: str, what: str, identifier: str, formula: str) -> str:
    """Alias path from model *prefix* down to model *target_prefix*."""
    if target_prefix == prefix:
        return ""
    if not prefix:
        return target_prefix + "."
    if target_prefix.startswith(prefix + "."):
        return target_prefix[len(prefix) + 1:] + "."
    raise TranslationError(f"{what} lies outside the including model", identifier, formula)


class _Importer:
    def __init__(self, sheets: list[Sheet], scalars_sheet: str) -> None:
        self.tables: dict[str, _TableSheet] = {}
        self.scalar_sheets: dict[str, _ScalarSheet] = {}
        self.prefixes: list[str] = []
        for sheet in sheets:
            prefix, local = _split_prefix(sheet.name)
            if local == scalars_sheet:
                if list(sheet.header[:2]) != ["Name", "Value"]:
                    raise TranslationError(f"sheet {sheet.name!r}: expected header Name, Value")
                self.scalar_sheets[sheet.name] = _ScalarSheet(sheet, prefix)
            else:
                self.tables[sheet.name] = _TableSheet(sheet, prefix, local)
            if prefix not in self.prefixes:
                self.prefixes.append(prefix)
        if "" not in self.prefixes:
            self.prefixes.insert(0, "")

    # ------------------------------------------------------------------
    # Reference mapping
    # ------------------------------------------------------------------

    def _column_name(self, ts: _TableSheet, addr: CellAddress, identifier: str, formula: str) -> str:
        if addr.column >= len(ts.columns):
            raise TranslationError(f"{ts.sheet.name}!{addr!r} is outside the table", identifier, formula)
        return ts.columns[addr.column]

    def _column_ident(self, ts: _TableSheet, column: str, ctx: dict[str, Any], identifier: str, formula: str) -> str:
        rel = _relative(ctx["prefix"], ts.prefix, f"sheet {ts.sheet.name!r}", identifier, formula)
        if not rel and ts.table == ctx["table"]:
            return column
        return f"{rel}{ts.table}.{column}"

    def _cell(self, sheet_name: str, text: str, ctx: dict[str, Any], identifier: str, formula: str) -> str:
        addr = CellAddress.parse(text)
        if sheet_name in self.scalar_sheets:
            ss = self.scalar_sheets[sheet_name]
            index = addr.row - 2
            if addr.column != 1 or not 0 <= index < len(ss.names):
                raise TranslationError(f"{sheet_name}!{text} is not a scalar value cell", identifier, formula)
            rel = _relative(ctx["prefix"], ss.prefix, f"sheet {sheet_name!r}", identifier, formula)
            name = ss.names[index]
            head, _, rest = name.partition(".")
            if not rel and rest and head == ctx["table"]:
                return rest
            return rel + name

        ts = self.tables.get(sheet_name)
        if ts is None:
            raise TranslationError(f"unknown sheet {sheet_name!r}", identifier, formula)
        column = self._column_name(ts, addr, identifier, formula)
        index = addr.row - 2
        if not 0 <= index < ts.row_count:
            raise TranslationError(f"{sheet_name}!{text} is outside the table rows", identifier, formula)
        ident = self._column_ident(ts, column, ctx, identifier, formula)
        if ctx["row"] is not None and not addr.absolute_row:
            if index != ctx["row"]:
                raise TranslationError(
                    f"{sheet_name}!{text} refers to another row; anchor it ($) for a fixed cell",
                    identifier,
                    formula,
                )
            return ident
        return f"{ident}[{index}]"

    def _range(self, sheet_name: str, first: str, last: str, ctx: dict[str, Any], identifier: str, formula: str) -> str:
        ts = self.tables.get(sheet_name)
        if ts is None:
            raise TranslationError(f"range on {sheet_name!r} does not cover a table column", identifier, formula)
        a, b = CellAddress.parse(first), CellAddress.parse(last)
        if a.column != b.column or a.row != 2 or b.row != ts.row_count + 1:
            raise TranslationError(
                f"{sheet_name}!{first}:{last} must span one whole column (rows 2-{ts.row_count + 1})",
                identifier,
                formula,
            )
        column = self._column_name(ts, a, identifier, formula)
        return self._column_ident(ts, column, ctx, identifier, formula)

    def translate(self, text: str, ctx: dict[str, Any], identifier: str) -> str:
        """Model formula for cell formula *text* placed per *ctx*."""
        try:
            tree = parse_cell_formula(text)
        except TabcalcError as exc:
            raise TranslationError(str(exc), identifier, text) from exc

        def rewrite(node: Tree, in_range: bool) -> str:
            parts = [str(c) for c in node.children]
            rule = node.data
            if rule == "cell_ref":
                return self._cell(ctx["sheet"], parts[0], ctx, identifier, text)
            if rule == "sheet_cell_ref":
                return self._cell(unquote_sheet(parts[0]), parts[1], ctx, identifier, text)
            if rule == "range_ref":
                return self._range(ctx["sheet"], parts[0], parts[1], ctx, identifier, text)
            if rule == "sheet_range_ref":
                return self._range(unquote_sheet(parts[0]), parts[1], parts[2], ctx, identifier, text)
            raise TranslationError(f"named reference {parts[0]!r} is not supported", identifier, text)

        return render_formula(tree, rewrite=rewrite)

    # ------------------------------------------------------------------
    # Model building
    # ------------------------------------------------------------------

    def build(self) -> Model:
        models: dict[str, Model] = {}
        for prefix in self.prefixes:
            parts = prefix.split(".") if prefix else []
            # Intermediate includes may have no sheets of their own
            for depth in range(len(parts) + 1):
                key = ".".join(parts[:depth])
                if key in models:
                    continue
                models[key] = Model()
                if key:
                    parent, alias = _split_prefix(key)
                    models[parent].add_include(Include(f"{alias}.yaml", alias, models[key]))

        for ts in self.tables.values():
            models[ts.prefix].add_table(self._table(ts))
        for ss in self.scalar_sheets.values():
            self._scalars(ss, models[ss.prefix])
        return models[""]

    def _table(self, ts: _TableSheet) -> Table:
        table = Table(ts.table)
        for j, column in enumerate(ts.columns):
            identifier = f"{ts.sheet.name}.{column}"
            cells = ts.sheet.column(j)
            meta = Metadata.from_note(ts.sheet.notes.get(f"{column_letter(j)}1"))
            formulas = [c for c in cells if isinstance(c, CellFormula)]
            if not formulas:
                table.add_column(Column(column, cells, metadata=meta))
                continue
            if len(formulas) != len(cells):
                raise TranslationError("column mixes formulas and values", identifier)
            translated = set()
            for i, cell in enumerate(formulas):
                ctx = {"prefix": ts.prefix, "sheet": ts.sheet.name, "table": ts.table, "row": i}
                translated.add(self.translate(cell.text, ctx, identifier))
            if len(translated) != 1:
                raise TranslationError(
                    f"rows translate to different formulas: {sorted(translated)}", identifier
                )
            table.add_column(Column(column, formula=translated.pop(), metadata=meta))
        return table

    def _scalars(self, ss: _ScalarSheet, model: Model) -> None:
        for i, row in enumerate(ss.sheet.rows):
            if not row or row[0] is None:
                continue
            meta = Metadata.from_note(ss.sheet.notes.get(f"B{i + 2}"))
            name = str(row[0])
            cell = row[1] if len(row) > 1 else None
            head, _, rest = name.partition(".")
            owner = model.tables.get(head) if rest else None
            if isinstance(cell, CellFormula):
                ctx = {
                    "prefix": ss.prefix,
                    "sheet": ss.sheet.name,
                    "table": owner.name if owner is not None else None,
                    "row": None,
                }
                scalar = Scalar(rest if owner is not None else name, None, self.translate(cell.text, ctx, name), meta)
            else:
                scalar = Scalar(rest if owner is not None else name, _literal(cell), metadata=meta)
            if owner is not None:
                if scalar.formula is None:
                    raise TranslationError("table aggregation has no formula", name)
                owner.add_aggregation(scalar)
            else:
                model.add_scalar(scalar)


def import_sheets(sheets: list[Sheet], scalars_sheet: str = DEFAULT_SCALARS_SHEET) -> Model:
    """Rebuild a model (with includes) from decoded sheets.

    Raises:
        TranslationError: A reference cannot be mapped back to an
            identifier (partial range, off-row cell, header cell, unknown
            sheet), or a formula column's rows disagree.
        ModelError: The sheets do not form a valid model (empty or mixed
            columns, duplicate names).
    """
    model = _Importer(sheets, scalars_sheet).build()
    logger.debug("imported tables %s", list(model.tables))
    emit_info(
        EventType.import_completed,
        f"Imported {len(sheets)} sheets",
        {"sheets": [s.name for s in sheets], "tables": list(model.tables)},
    )
    return model
