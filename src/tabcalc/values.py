"""Typed column values.

A column is homogeneous: every element shares one :class:`ColumnType`.
Types are detected once, when a column is built, so evaluators can rely
on homogeneity instead of re-checking element by element.

Storage is a typed ``polars.Series``; the Python list view is cached for
row-wise evaluation.
"""

from __future__ import annotations

import datetime
import math
import re
from enum import Enum
from typing import Any, ClassVar

import polars as pl
from pydantic import BaseModel, ConfigDict

from tabcalc.errors import ColumnTypeError

_DATE_RE = re.compile(r"^\d{4}-\d{2}(-\d{2})?$")


class ColumnType(str, Enum):
    number = "number"
    text = "text"
    date = "date"
    boolean = "boolean"


_DTYPES: dict[ColumnType, Any] = {
    ColumnType.number: pl.Float64,
    ColumnType.text: pl.Utf8,
    ColumnType.date: pl.Date,
    ColumnType.boolean: pl.Boolean,
}


def parse_date(text: str) -> datetime.date | None:
    """Parse ``YYYY-MM-DD`` or ``YYYY-MM`` (first of month); ``None`` otherwise."""
    if not _DATE_RE.match(text):
        return None
    try:
        if len(text) == 7:
            return datetime.date.fromisoformat(text + "-01")
        return datetime.date.fromisoformat(text)
    except ValueError:
        return None


def value_type(value: Any) -> ColumnType:
    """Classify a single value.

    Raises:
        TypeError: For values outside the four supported kinds.
    """
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return ColumnType.boolean
    if isinstance(value, (int, float)):
        return ColumnType.number
    if isinstance(value, datetime.datetime):
        return ColumnType.date
    if isinstance(value, datetime.date):
        return ColumnType.date
    if isinstance(value, str):
        if parse_date(value) is not None:
            return ColumnType.date
        return ColumnType.text
    raise TypeError(f"unsupported value {value!r} ({type(value).__name__})")


def coerce_value(value: Any, col_type: ColumnType) -> Any:
    """Convert *value* to the canonical Python representation of *col_type*."""
    if col_type is ColumnType.number:
        return float(value)
    if col_type is ColumnType.boolean:
        return bool(value)
    if col_type is ColumnType.date:
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, datetime.date):
            return value
        parsed = parse_date(str(value))
        if parsed is None:
            raise ValueError(f"not a date: {value!r}")
        return parsed
    return str(value)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def infer_column_type(name: str, values: list[Any]) -> ColumnType:
    """Detect the column type from the first element and enforce homogeneity.

    Raises:
        ColumnTypeError: If the column is empty or mixes types.
    """
    if not values:
        raise ColumnTypeError(name, "column is empty")
    try:
        first = value_type(values[0])
        for i, v in enumerate(values):
            t = value_type(v)
            if t is not first:
                raise ColumnTypeError(
                    name,
                    f"mixed types: element 0 is {first.value}, element {i} ({v!r}) is {t.value}",
                )
    except TypeError as exc:
        raise ColumnTypeError(name, str(exc)) from exc
    return first


class Metadata(BaseModel):
    """Descriptive annotations carried by a column or scalar.

    None of the fields take part in evaluation.  On export they become a
    cell note with one ``Label: text`` line per field that is set.
    """

    model_config = ConfigDict(frozen=True)

    unit: str | None = None
    notes: str | None = None
    source: str | None = None

    FIELDS: ClassVar[tuple[str, ...]] = ("unit", "notes", "source")

    def is_empty(self) -> bool:
        return self.unit is None and self.notes is None and self.source is None

    def as_dict(self) -> dict[str, str]:
        """Set fields only, in ``unit``, ``notes``, ``source`` order."""
        return {k: getattr(self, k) for k in self.FIELDS if getattr(self, k) is not None}

    def to_note(self) -> str | None:
        """Cell note text, or ``None`` when no field is set."""
        if self.is_empty():
            return None
        return "\n".join(f"{k.capitalize()}: {v}" for k, v in self.as_dict().items())

    @classmethod
    def from_note(cls, text: str | None) -> Metadata:
        """Parse :meth:`to_note` output; lines without a known label are skipped."""
        fields: dict[str, str] = {}
        for line in (text or "").splitlines():
            label, sep, rest = line.partition(":")
            key = label.strip().lower()
            if sep and key in cls.FIELDS:
                fields[key] = rest.strip()
        return cls(**fields)


class Column:
    """Named, homogeneous, ordered sequence of values.

    A data column is built from literal values.  A formula column starts
    empty and is filled by a calculation pass.
    """

    def __init__(
        self,
        name: str,
        values: list[Any] | None = None,
        col_type: ColumnType | None = None,
        formula: str | None = None,
        metadata: Metadata | None = None,
    ) -> None:
        self.name = name
        self.formula = formula
        self.metadata = metadata if metadata is not None else Metadata()
        self.series: pl.Series | None = None
        self.type: ColumnType | None = None
        self._values: list[Any] | None = None
        if values is not None:
            self.set_values(values, col_type)

    @property
    def is_formula(self) -> bool:
        return self.formula is not None

    @property
    def computed(self) -> bool:
        return self.series is not None

    @property
    def values(self) -> list[Any]:
        if self._values is None:
            self._values = [] if self.series is None else self.series.to_list()
        return self._values

    def set_values(self, values: list[Any], col_type: ColumnType | None = None) -> None:
        """Replace the column contents, validating homogeneity."""
        col_type = col_type or infer_column_type(self.name, values)
        try:
            coerced = [coerce_value(v, col_type) for v in values]
        except (TypeError, ValueError) as exc:
            raise ColumnTypeError(self.name, str(exc)) from exc
        if col_type is ColumnType.number and any(isinstance(v, bool) for v in values):
            raise ColumnTypeError(self.name, "boolean value in number column")
        self.type = col_type
        self.series = pl.Series(self.name, coerced, dtype=_DTYPES[col_type])
        self._values = coerced

    def clear(self) -> None:
        """Drop computed values (formula columns only)."""
        if self.is_formula:
            self.series = None
            self._values = None
            self.type = None

    def copy(self) -> Column:
        col = Column(self.name, formula=self.formula, metadata=self.metadata)
        col.series = self.series
        col.type = self.type
        col._values = None if self._values is None else list(self._values)
        return col

    def __len__(self) -> int:
        return 0 if self.series is None else len(self.series)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Column):
            return NotImplemented
        return (
            self.name == other.name
            and self.formula == other.formula
            and self.type == other.type
            and values_equal(self.values, other.values)
        )

    def __repr__(self) -> str:
        kind = f"formula={self.formula!r}" if self.is_formula else f"type={self.type}"
        return f"Column({self.name!r}, {kind}, len={len(self)})"


def values_equal(a: list[Any], b: list[Any], tol: float = 0.0) -> bool:
    """Element-wise equality, numbers compared within *tol* (NaN equals NaN)."""
    if len(a) != len(b):
        return False
    for x, y in zip(a, b):
        if is_number(x) and is_number(y):
            if math.isnan(x) and math.isnan(y):
                continue
            if abs(x - y) > tol and x != y:
                return False
        elif x != y:
            return False
    return True
