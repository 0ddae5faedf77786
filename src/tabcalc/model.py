"""In-memory model: tables, scalars, includes and scenarios.

A :class:`Model` is one file unit.  It exclusively owns its tables and
scalars; an :class:`Include` is a non-owning alias onto another model
loaded for the same run.
"""

from __future__ import annotations

from typing import Any

from tabcalc.errors import ModelError, ModelParseError
from tabcalc.values import Column, Metadata, is_number, values_equal


class Table:
    """Named set of equal-length columns.

    Entries keep declaration order.  Row-wise formula columns live in
    :attr:`columns` next to data columns; formulas that reduce columns to a
    single value live in :attr:`aggregations`.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.columns: dict[str, Column] = {}
        self.aggregations: dict[str, Scalar] = {}

    def add_column(self, column: Column) -> Column:
        if column.name in self.columns or column.name in self.aggregations:
            raise ModelParseError(f"duplicate entry {column.name!r}", path=self.name)
        self.columns[column.name] = column
        return column

    def add_aggregation(self, scalar: Scalar) -> Scalar:
        if scalar.name in self.columns or scalar.name in self.aggregations:
            raise ModelParseError(f"duplicate entry {scalar.name!r}", path=self.name)
        self.aggregations[scalar.name] = scalar
        return scalar

    @property
    def data_columns(self) -> list[Column]:
        return [c for c in self.columns.values() if not c.is_formula]

    @property
    def formula_columns(self) -> list[Column]:
        return [c for c in self.columns.values() if c.is_formula]

    @property
    def row_count(self) -> int:
        data = self.data_columns
        return len(data[0]) if data else 0

    def validate(self) -> None:
        """Check the table has data and that all data columns share a length."""
        data = self.data_columns
        if not data:
            raise ModelParseError("table has no data columns", path=self.name)
        expected = len(data[0])
        for col in data[1:]:
            if len(col) != expected:
                raise ModelParseError(
                    f"column {col.name!r} has {len(col)} rows, "
                    f"expected {expected} (from {data[0].name!r})",
                    path=f"{self.name}.{col.name}",
                )

    def copy(self) -> Table:
        table = Table(self.name)
        table.columns = {k: c.copy() for k, c in self.columns.items()}
        table.aggregations = {k: s.copy() for k, s in self.aggregations.items()}
        return table

    def __repr__(self) -> str:
        return f"Table({self.name!r}, columns={list(self.columns)}, rows={self.row_count})"


class Scalar:
    """Named single value, literal or formula-defined."""

    def __init__(
        self,
        name: str,
        value: Any = None,
        formula: str | None = None,
        metadata: Metadata | None = None,
    ) -> None:
        self.name = name
        self.value = value
        self.formula = formula
        self.metadata = metadata if metadata is not None else Metadata()

    @property
    def is_formula(self) -> bool:
        return self.formula is not None

    @property
    def section(self) -> str | None:
        """Section prefix of a ``section.name`` scalar, else ``None``."""
        if "." in self.name:
            return self.name.rsplit(".", 1)[0]
        return None

    def copy(self) -> Scalar:
        return Scalar(self.name, self.value, self.formula, self.metadata)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Scalar):
            return NotImplemented
        if self.name != other.name or self.formula != other.formula:
            return False
        return values_equal([self.value], [other.value])

    def __repr__(self) -> str:
        if self.formula:
            return f"Scalar({self.name!r}, formula={self.formula!r}, value={self.value!r})"
        return f"Scalar({self.name!r}, value={self.value!r})"


class Include:
    """``(file, alias)`` pair, plus the model loaded for it."""

    def __init__(self, file: str, alias: str, model: Model | None = None) -> None:
        self.file = file
        self.alias = alias
        self.model = model

    def __repr__(self) -> str:
        return f"Include({self.file!r}, as={self.alias!r})"


class Model:
    """Collection of tables and scalars, plus includes and scenarios."""

    def __init__(self, source: str | None = None) -> None:
        self.source = source
        self.version: Any = None
        self.tables: dict[str, Table] = {}
        self.scalars: dict[str, Scalar] = {}
        self.includes: list[Include] = []
        self.scenarios: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    def add_table(self, table: Table) -> Table:
        if table.name in self.tables or table.name in self.scalars:
            raise ModelParseError(f"duplicate name {table.name!r}", path=table.name)
        self.tables[table.name] = table
        return table

    def add_scalar(self, scalar: Scalar) -> Scalar:
        if scalar.name in self.scalars or scalar.name in self.tables:
            raise ModelParseError(f"duplicate name {scalar.name!r}", path=scalar.name)
        self.scalars[scalar.name] = scalar
        return scalar

    def add_include(self, include: Include) -> Include:
        if self.include(include.alias) is not None:
            raise ModelParseError(f"duplicate include alias {include.alias!r}", path="includes")
        if include.alias in self.tables or include.alias in self.scalars:
            raise ModelParseError(
                f"include alias {include.alias!r} shadows a table or scalar", path="includes"
            )
        self.includes.append(include)
        return include

    def include(self, alias: str) -> Include | None:
        for inc in self.includes:
            if inc.alias == alias:
                return inc
        return None

    def find_column(self, name: str) -> tuple[Table, Column] | None:
        """Find ``table.column`` or a bare column name unique across tables."""
        if "." in name:
            table_name, col_name = name.split(".", 1)
            table = self.tables.get(table_name)
            if table is not None and col_name in table.columns:
                return table, table.columns[col_name]
            return None
        hits = [(t, t.columns[name]) for t in self.tables.values() if name in t.columns]
        return hits[0] if len(hits) == 1 else None

    # ------------------------------------------------------------------
    # Copies and comparison
    # ------------------------------------------------------------------

    def copy(self, _memo: dict[int, Model] | None = None) -> Model:
        """Deep copy; an included model shared by several aliases is copied once."""
        memo = {} if _memo is None else _memo
        if id(self) in memo:
            return memo[id(self)]
        model = Model(self.source)
        memo[id(self)] = model
        model.version = self.version
        model.tables = {k: t.copy() for k, t in self.tables.items()}
        model.scalars = {k: s.copy() for k, s in self.scalars.items()}
        model.scenarios = {k: dict(v) for k, v in self.scenarios.items()}
        model.includes = [
            Include(inc.file, inc.alias, inc.model.copy(memo) if inc.model is not None else None)
            for inc in self.includes
        ]
        return model

    def snapshot(self) -> dict[str, Any]:
        """Plain nested dict of every value and formula, for comparisons."""
        return {
            "tables": {
                t.name: {
                    "columns": {
                        c.name: {"formula": c.formula, "type": c.type.value if c.type else None, "values": c.values}
                        for c in t.columns.values()
                    },
                    "aggregations": {a.name: {"formula": a.formula, "value": a.value} for a in t.aggregations.values()},
                }
                for t in self.tables.values()
            },
            "scalars": {s.name: {"formula": s.formula, "value": s.value} for s in self.scalars.values()},
            "includes": {
                inc.alias: inc.model.snapshot() if inc.model is not None else inc.file for inc in self.includes
            },
        }

    def __repr__(self) -> str:
        return (
            f"Model({self.source!r}, tables={list(self.tables)}, "
            f"scalars={list(self.scalars)}, includes={[i.alias for i in self.includes]})"
        )


def apply_scenario(model: Model, name: str) -> Model:
    """Return a copy of *model* with scenario *name*'s overrides applied.

    An overridden formula scalar becomes a literal; an override for a name
    the model does not declare adds a literal scalar.  *model* is not
    mutated.

    Raises:
        ModelError: If the scenario is not defined.
    """
    if name not in model.scenarios:
        raise ModelError(
            f"Unknown scenario {name!r}. Available: {sorted(model.scenarios)}"
        )
    return apply_overrides(model, model.scenarios[name])


def apply_overrides(model: Model, overrides: dict[str, Any]) -> Model:
    """Return a copy of *model* with scalar values replaced by *overrides*."""
    result = model.copy()
    for key, value in overrides.items():
        target = result
        scalar_name = key
        # alias.scalar overrides reach into an included model
        head, _, rest = key.partition(".")
        inc = result.include(head) if rest else None
        if inc is not None and inc.model is not None:
            target, scalar_name = inc.model, rest
        scalar = target.scalars.get(scalar_name)
        if scalar is None:
            target.scalars[scalar_name] = Scalar(scalar_name, value)
            continue
        scalar.value = value
        scalar.formula = None
    return result


def numeric_scalars(model: Model) -> dict[str, float]:
    """Names and values of every numeric root scalar, in declaration order."""
    out: dict[str, float] = {}
    for s in model.scalars.values():
        if is_number(s.value):
            out[s.name] = float(s.value)
    for t in model.tables.values():
        for a in t.aggregations.values():
            if is_number(a.value):
                out[f"{t.name}.{a.name}"] = float(a.value)
    return out
