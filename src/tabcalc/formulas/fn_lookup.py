"""Lookup formula functions: MATCH, INDEX, XLOOKUP, CHOOSE.

Lookups operate on resolved columns.  Exact matching returns the first
satisfying position.  Approximate matching (MATCH type 1 / -1) requires
input sorted in the matching direction and raises otherwise rather than
guessing where an unsorted column would "probably" match.
"""

from __future__ import annotations

from typing import Any

from tabcalc.formulas.errors import FormulaFunctionError, FormulaTypeError
from tabcalc.formulas.registry import FunctionSpec, args_at, as_column, fn, to_int
from tabcalc.values import is_number

LOOKUP_FUNCTIONS: dict[str, FunctionSpec] = {}


def _same(a: Any, b: Any) -> bool:
    """Lookup equality: numbers by value, text ignoring case."""
    if is_number(a) and is_number(b):
        return float(a) == float(b)
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return type(a) is type(b) and a == b


def _comparable(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return True
    return type(a) is type(b)


def _is_sorted(values: list[Any], descending: bool) -> bool:
    pairs = zip(values, values[1:])
    if descending:
        return all(a >= b for a, b in pairs)
    return all(a <= b for a, b in pairs)


def find_position(value: Any, values: list[Any], match_type: int, func_name: str) -> int | None:
    """0-based position of *value* in *values*, or ``None`` when absent.

    Args:
        match_type: 0 exact; 1 largest value <= *value* (ascending input);
            -1 smallest value >= *value* (descending input).

    Raises:
        FormulaFunctionError: Approximate match on input not sorted in
            the required direction.
    """
    if match_type == 0:
        for i, v in enumerate(values):
            if _same(v, value):
                return i
        return None
    if match_type not in (1, -1):
        raise FormulaFunctionError(func_name, f"{func_name}: match type must be -1, 0 or 1, got {match_type}")
    if any(not _comparable(v, value) for v in values):
        raise FormulaTypeError(f"{func_name}: lookup value {value!r} not comparable with the lookup range")
    descending = match_type == -1
    if not _is_sorted(values, descending):
        order = "descending" if descending else "ascending"
        raise FormulaFunctionError(
            func_name, f"{func_name}: approximate match requires {order}-sorted input"
        )
    found: int | None = None
    for i, v in enumerate(values):
        if (v <= value) if not descending else (v >= value):
            found = i
        else:
            break
    return found


@fn(LOOKUP_FUNCTIONS, "MATCH", 2, 3, args_at(1))
def _fn_match(args: list, ctx: Any) -> float:
    """MATCH(value, range [, match_type]): 1-based position; match_type defaults to 1."""
    match_type = to_int(args[2], "MATCH") if len(args) == 3 else 1
    values = as_column(args[1], "MATCH")
    pos = find_position(args[0], values, match_type, "MATCH")
    if pos is None:
        raise FormulaFunctionError("MATCH", f"MATCH: value {args[0]!r} not found")
    return float(pos + 1)


@fn(LOOKUP_FUNCTIONS, "INDEX", 2, 3, args_at(0))
def _fn_index(args: list, ctx: Any) -> Any:
    """INDEX(range, row [, column]): value at 1-based row; column must be 1."""
    values = as_column(args[0], "INDEX")
    row = to_int(args[1], "INDEX")
    if len(args) == 3 and to_int(args[2], "INDEX") != 1:
        raise FormulaFunctionError("INDEX", "INDEX: a column range has a single column")
    if row < 1 or row > len(values):
        raise FormulaFunctionError(
            "INDEX", f"INDEX: row {row} out of range (range has {len(values)} rows)"
        )
    return values[row - 1]


@fn(LOOKUP_FUNCTIONS, "XLOOKUP", 3, 5, args_at(1, 2))
def _fn_xlookup(args: list, ctx: Any) -> Any:
    """XLOOKUP(value, lookup_range, return_range [, if_not_found [, match_mode]]).

    match_mode 0 is exact; -1 falls back to the next smaller item and 1 to
    the next larger one.  Neither needs sorted input.
    """
    value = args[0]
    lookup = as_column(args[1], "XLOOKUP")
    returns = as_column(args[2], "XLOOKUP")
    if len(lookup) != len(returns):
        raise FormulaTypeError(
            f"XLOOKUP: lookup range has {len(lookup)} rows, return range has {len(returns)}"
        )
    mode = to_int(args[4], "XLOOKUP") if len(args) == 5 else 0
    if mode not in (-1, 0, 1):
        raise FormulaFunctionError("XLOOKUP", f"XLOOKUP: match mode must be -1, 0 or 1, got {mode}")

    pos = find_position(value, lookup, 0, "XLOOKUP")
    if pos is None and mode != 0:
        best: int | None = None
        for i, v in enumerate(lookup):
            if not _comparable(v, value):
                continue
            if mode == -1 and v < value and (best is None or v > lookup[best]):
                best = i
            if mode == 1 and v > value and (best is None or v < lookup[best]):
                best = i
        pos = best
    if pos is not None:
        return returns[pos]
    if len(args) >= 4:
        return args[3]
    raise FormulaFunctionError("XLOOKUP", f"XLOOKUP: value {value!r} not found")


@fn(LOOKUP_FUNCTIONS, "CHOOSE", 2, None)
def _fn_choose(args: list, ctx: Any) -> Any:
    """CHOOSE(index, v1, v2, ...): 1-based pick."""
    index = to_int(args[0], "CHOOSE")
    if index < 1 or index >= len(args):
        raise FormulaFunctionError("CHOOSE", f"CHOOSE: index {index} out of range 1..{len(args) - 1}")
    return args[index]
