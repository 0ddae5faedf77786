"""Function specs and argument helpers shared by the ``fn_*`` modules.

Each category module exposes a ``dict[str, FunctionSpec]``; they are
merged into the single dispatch table in ``tabcalc.formulas.functions``.
"""

from __future__ import annotations

import datetime
import math
from typing import Any, Callable

from tabcalc.formulas.errors import FormulaFunctionError, FormulaTypeError


def all_args(index: int) -> bool:
    return True


def args_at(*positions: int) -> Callable[[int], bool]:
    """Range predicate: only the given argument positions read whole columns."""
    wanted = frozenset(positions)
    return lambda index: index in wanted


def args_from(start: int) -> Callable[[int], bool]:
    """Range predicate: every argument from *start* on reads whole columns."""
    return lambda index: index >= start


class FunctionSpec:
    """One entry of the function dispatch table.

    Attributes:
        name: Upper-case function name.
        impl: ``impl(args, ctx)``.  Eager functions get evaluated
            arguments; lazy ones get raw parse-tree nodes.
        min_args: Minimum argument count.
        max_args: Maximum argument count, ``None`` for variadic.
        range_args: Predicate on argument position; True means the
            argument is evaluated as a whole column rather than per row.
        lazy: Receive unevaluated nodes (IF, IFERROR, ISERROR).
    """

    __slots__ = ("name", "impl", "min_args", "max_args", "range_args", "lazy")

    def __init__(
        self,
        name: str,
        impl: Callable[..., Any],
        min_args: int = 0,
        max_args: int | None = None,
        range_args: Callable[[int], bool] | None = None,
        lazy: bool = False,
    ) -> None:
        self.name = name
        self.impl = impl
        self.min_args = min_args
        self.max_args = max_args
        self.range_args = range_args
        self.lazy = lazy

    def is_range_arg(self, index: int) -> bool:
        return self.range_args is not None and self.range_args(index)

    def check_arity(self, count: int) -> None:
        """Raise ``FormulaFunctionError`` if *count* arguments are not accepted."""
        lo, hi = self.min_args, self.max_args
        if lo <= count and (hi is None or count <= hi):
            return
        if hi is None:
            need = f"at least {lo} argument{'s' if lo != 1 else ''}"
        elif lo == hi:
            need = f"exactly {lo} argument{'s' if lo != 1 else ''}"
        else:
            need = f"{lo}-{hi} arguments"
        raise FormulaFunctionError(self.name, f"{self.name} requires {need}, got {count}")

    def __repr__(self) -> str:
        return f"FunctionSpec({self.name!r}, {self.min_args}..{self.max_args})"


def fn(
    table: dict[str, FunctionSpec],
    name: str,
    min_args: int = 0,
    max_args: int | None = None,
    range_args: Callable[[int], bool] | None = None,
    lazy: bool = False,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator adding a function to a category table.

    Args:
        table: The category dict to add to.
        name: Upper-case lookup name.

    Returns:
        The original function, unmodified.
    """

    def decorator(impl: Callable[..., Any]) -> Callable[..., Any]:
        table[name] = FunctionSpec(name, impl, min_args, max_args, range_args, lazy)
        return impl

    return decorator


# ---------------------------------------------------------------------------
# Argument coercion
# ---------------------------------------------------------------------------


def flatten(args: list[Any]) -> list[Any]:
    """Flatten one level of lists (whole-column arguments) in an argument list."""
    result: list[Any] = []
    for a in args:
        if isinstance(a, list):
            result.extend(a)
        else:
            result.append(a)
    return result


def to_number(value: Any, func_name: str) -> float:
    """Coerce a single argument to float; booleans count as 1/0."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, list):
        raise FormulaTypeError(f"{func_name}: expected a single value, got a column")
    raise FormulaTypeError(f"{func_name}: expected a number, got {value!r}")


def to_numbers(values: list[Any], func_name: str) -> list[float]:
    return [to_number(v, func_name) for v in flatten(values)]


def to_int(value: Any, func_name: str) -> int:
    n = to_number(value, func_name)
    if math.isnan(n) or math.isinf(n):
        raise FormulaTypeError(f"{func_name}: expected an integer, got {value!r}")
    return int(n)


def to_text(value: Any, func_name: str) -> str:
    """Text form of a value, spreadsheet style (``1.0`` -> ``1``, TRUE/FALSE)."""
    if isinstance(value, list):
        raise FormulaTypeError(f"{func_name}: expected a single value, got a column")
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime.date):
        return value.isoformat()
    return str(value)


def to_bool(value: Any, func_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    raise FormulaTypeError(f"{func_name}: expected a logical value, got {value!r}")


def as_column(value: Any, func_name: str) -> list[Any]:
    """Whole-column argument; a single value counts as a one-element column."""
    if isinstance(value, list):
        return value
    return [value]
