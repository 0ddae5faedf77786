"""Aggregation functions: reduce whole columns to one value.

Conditional variants (SUMIF, COUNTIFS, ...) build a boolean mask over
the criteria column(s) with polars, then reduce only masked positions.
Criteria are either a plain value (equality) or a string with a leading
comparison operator: ``">1000"``, ``"<>north"``, ``"=2024-01-31"``.
"""

from __future__ import annotations

import datetime
import math
import re
import statistics
from typing import Any

import polars as pl

from tabcalc.formulas.errors import (
    FormulaDivisionError,
    FormulaFunctionError,
    FormulaTypeError,
    MathDomainError,
)
from tabcalc.formulas.registry import (
    FunctionSpec,
    all_args,
    args_at,
    as_column,
    flatten,
    fn,
    to_number,
    to_numbers,
)
from tabcalc.values import is_number, parse_date

AGGREGATE_FUNCTIONS: dict[str, FunctionSpec] = {}

# Numeric equality tolerance for criteria matching
_EQ_TOL = 1e-10

_CRITERION_RE = re.compile(r"^\s*(>=|<=|<>|!=|>|<|=)?\s*(.*?)\s*$", re.S)


# ────────────────────────────────────────────────────────────────
# Plain aggregation
# ────────────────────────────────────────────────────────────────


@fn(AGGREGATE_FUNCTIONS, "SUM", 1, None, all_args)
def _fn_sum(args: list, ctx: Any) -> float:
    return float(sum(to_numbers(args, "SUM")))


def _average(values: list[float], func_name: str) -> float:
    if not values:
        raise FormulaDivisionError(f"{func_name}: no values to average")
    return sum(values) / len(values)


@fn(AGGREGATE_FUNCTIONS, "AVERAGE", 1, None, all_args)
def _fn_average(args: list, ctx: Any) -> float:
    return _average(to_numbers(args, "AVERAGE"), "AVERAGE")


@fn(AGGREGATE_FUNCTIONS, "AVG", 1, None, all_args)
def _fn_avg(args: list, ctx: Any) -> float:
    return _average(to_numbers(args, "AVG"), "AVG")


@fn(AGGREGATE_FUNCTIONS, "MIN", 1, None, all_args)
def _fn_min(args: list, ctx: Any) -> float:
    values = to_numbers(args, "MIN")
    return min(values) if values else 0.0


@fn(AGGREGATE_FUNCTIONS, "MAX", 1, None, all_args)
def _fn_max(args: list, ctx: Any) -> float:
    values = to_numbers(args, "MAX")
    return max(values) if values else 0.0


@fn(AGGREGATE_FUNCTIONS, "COUNT", 1, None, all_args)
def _fn_count(args: list, ctx: Any) -> float:
    """COUNT(values...): number of numeric values."""
    return float(sum(1 for v in flatten(args) if is_number(v)))


@fn(AGGREGATE_FUNCTIONS, "COUNTA", 1, None, all_args)
def _fn_counta(args: list, ctx: Any) -> float:
    """COUNTA(values...): number of non-empty values."""
    return float(sum(1 for v in flatten(args) if v is not None and v != ""))


@fn(AGGREGATE_FUNCTIONS, "PRODUCT", 1, None, all_args)
def _fn_product(args: list, ctx: Any) -> float:
    return float(math.prod(to_numbers(args, "PRODUCT")))


@fn(AGGREGATE_FUNCTIONS, "MEDIAN", 1, None, all_args)
def _fn_median(args: list, ctx: Any) -> float:
    values = to_numbers(args, "MEDIAN")
    if not values:
        raise MathDomainError("MEDIAN: no values")
    return float(statistics.median(values))


def _variance(values: list[float], sample: bool, func_name: str) -> float:
    need = 2 if sample else 1
    if len(values) < need:
        raise FormulaDivisionError(f"{func_name} requires at least {need} value(s)")
    if sample:
        return statistics.variance(values)
    return statistics.pvariance(values)


@fn(AGGREGATE_FUNCTIONS, "VAR", 1, None, all_args)
def _fn_var(args: list, ctx: Any) -> float:
    return _variance(to_numbers(args, "VAR"), True, "VAR")


@fn(AGGREGATE_FUNCTIONS, "VAR.S", 1, None, all_args)
def _fn_var_s(args: list, ctx: Any) -> float:
    return _variance(to_numbers(args, "VAR.S"), True, "VAR.S")


@fn(AGGREGATE_FUNCTIONS, "VAR.P", 1, None, all_args)
def _fn_var_p(args: list, ctx: Any) -> float:
    return _variance(to_numbers(args, "VAR.P"), False, "VAR.P")


@fn(AGGREGATE_FUNCTIONS, "STDEV", 1, None, all_args)
def _fn_stdev(args: list, ctx: Any) -> float:
    return math.sqrt(_variance(to_numbers(args, "STDEV"), True, "STDEV"))


@fn(AGGREGATE_FUNCTIONS, "STDEV.S", 1, None, all_args)
def _fn_stdev_s(args: list, ctx: Any) -> float:
    return math.sqrt(_variance(to_numbers(args, "STDEV.S"), True, "STDEV.S"))


@fn(AGGREGATE_FUNCTIONS, "STDEV.P", 1, None, all_args)
def _fn_stdev_p(args: list, ctx: Any) -> float:
    return math.sqrt(_variance(to_numbers(args, "STDEV.P"), False, "STDEV.P"))


def _percentile(values: list[float], k: float, func_name: str) -> float:
    """Inclusive percentile with linear interpolation (PERCENTILE.INC)."""
    if not values:
        raise MathDomainError(f"{func_name}: no values")
    if not 0.0 <= k <= 1.0:
        raise MathDomainError(f"{func_name}: k must be between 0 and 1, got {k}")
    ordered = sorted(values)
    rank = k * (len(ordered) - 1)
    lo = math.floor(rank)
    hi = math.ceil(rank)
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (rank - lo)


@fn(AGGREGATE_FUNCTIONS, "PERCENTILE", 2, 2, args_at(0))
def _fn_percentile(args: list, ctx: Any) -> float:
    """PERCENTILE(values, k): k-th percentile, k in [0, 1]."""
    values = to_numbers(as_column(args[0], "PERCENTILE"), "PERCENTILE")
    return _percentile(values, to_number(args[1], "PERCENTILE"), "PERCENTILE")


@fn(AGGREGATE_FUNCTIONS, "QUARTILE", 2, 2, args_at(0))
def _fn_quartile(args: list, ctx: Any) -> float:
    """QUARTILE(values, quart): quart in 0..4."""
    quart = to_number(args[1], "QUARTILE")
    if quart not in (0.0, 1.0, 2.0, 3.0, 4.0):
        raise MathDomainError(f"QUARTILE: quart must be 0-4, got {quart}")
    values = to_numbers(as_column(args[0], "QUARTILE"), "QUARTILE")
    return _percentile(values, quart / 4.0, "QUARTILE")


def _paired(args: list, func_name: str) -> tuple[list[float], list[float]]:
    xs = to_numbers(as_column(args[0], func_name), func_name)
    ys = to_numbers(as_column(args[1], func_name), func_name)
    if len(xs) != len(ys):
        raise FormulaTypeError(f"{func_name}: ranges differ in length ({len(xs)} vs {len(ys)})")
    return xs, ys


@fn(AGGREGATE_FUNCTIONS, "CORREL", 2, 2, all_args)
def _fn_correl(args: list, ctx: Any) -> float:
    """CORREL(xs, ys): Pearson correlation coefficient."""
    xs, ys = _paired(args, "CORREL")
    if len(xs) < 2:
        raise FormulaDivisionError("CORREL requires at least 2 pairs")
    mx = sum(xs) / len(xs)
    my = sum(ys) / len(ys)
    sxy = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    sxx = sum((x - mx) ** 2 for x in xs)
    syy = sum((y - my) ** 2 for y in ys)
    if sxx == 0 or syy == 0:
        raise FormulaDivisionError("CORREL: a range has zero variance")
    return sxy / math.sqrt(sxx * syy)


@fn(AGGREGATE_FUNCTIONS, "SUMPRODUCT", 1, None, all_args)
def _fn_sumproduct(args: list, ctx: Any) -> float:
    """SUMPRODUCT(a, b, ...): sum of element-wise products."""
    columns = [to_numbers(as_column(a, "SUMPRODUCT"), "SUMPRODUCT") for a in args]
    length = len(columns[0])
    if any(len(c) != length for c in columns):
        raise FormulaTypeError("SUMPRODUCT: ranges differ in length")
    return float(sum(math.prod(row) for row in zip(*columns)))


# ────────────────────────────────────────────────────────────────
# Criteria masks
# ────────────────────────────────────────────────────────────────


def parse_criterion(criterion: Any) -> tuple[str, Any]:
    """Split a criterion into ``(operator, operand)``.

    Non-string criteria mean equality.  In strings, the operand is read
    as a number, then a date, then TRUE/FALSE, else kept as text.
    """
    if not isinstance(criterion, str):
        return "=", criterion
    m = _CRITERION_RE.match(criterion)
    op = (m.group(1) if m else None) or "="
    text = m.group(2) if m else criterion
    if op == "!=":
        op = "<>"
    try:
        return op, float(text)
    except ValueError:
        pass
    parsed = parse_date(text)
    if parsed is not None:
        return op, parsed
    if text.upper() in ("TRUE", "FALSE"):
        return op, text.upper() == "TRUE"
    return op, text


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, datetime.date):
        return "date"
    return "text"


def _series(values: list[Any], func_name: str) -> tuple[pl.Series, str]:
    """Typed series for a (homogeneous) column, plus its value kind."""
    if not values:
        return pl.Series("range", [], dtype=pl.Float64), "number"
    kinds = {_kind(v) for v in values}
    if len(kinds) > 1:
        raise FormulaTypeError(f"{func_name}: criteria range mixes {sorted(kinds)}")
    kind = kinds.pop()
    dtype = {"number": pl.Float64, "text": pl.Utf8, "date": pl.Date, "boolean": pl.Boolean}[kind]
    data = [float(v) for v in values] if kind == "number" else values
    return pl.Series("range", data, dtype=dtype), kind


_NUMERIC_OPS = {
    "=": lambda s, v: (s - v).abs() <= _EQ_TOL,
    "<>": lambda s, v: (s - v).abs() > _EQ_TOL,
    ">": lambda s, v: s > v,
    "<": lambda s, v: s < v,
    ">=": lambda s, v: s >= v,
    "<=": lambda s, v: s <= v,
}

_ORDERED_OPS = {
    "=": lambda s, v: s == v,
    "<>": lambda s, v: s != v,
    ">": lambda s, v: s > v,
    "<": lambda s, v: s < v,
    ">=": lambda s, v: s >= v,
    "<=": lambda s, v: s <= v,
}


def criteria_mask(values: list[Any], criterion: Any, func_name: str = "criteria") -> pl.Series:
    """Boolean mask of the positions in *values* that satisfy *criterion*.

    Text equality ignores case.  A criterion of a different kind than the
    column matches nothing (everything, for ``<>``).
    """
    op, operand = parse_criterion(criterion)
    series, kind = _series(values, func_name)
    operand_kind = _kind(operand)

    if kind != operand_kind:
        fill = op == "<>"
        return pl.Series("mask", [fill] * len(series), dtype=pl.Boolean)
    if kind == "number":
        mask = _NUMERIC_OPS[op](series, float(operand))
    elif kind == "text":
        mask = _ORDERED_OPS[op](series.str.to_lowercase(), str(operand).lower())
    else:
        mask = _ORDERED_OPS[op](series, operand)
    return mask.fill_null(False)


def _masked(values: list[Any], mask: pl.Series, func_name: str) -> list[float]:
    """Numeric values at the masked positions."""
    if len(values) != len(mask):
        raise FormulaTypeError(
            f"{func_name}: value range has {len(values)} rows, criteria range has {len(mask)}"
        )
    numbers = pl.Series("values", to_numbers(values, func_name), dtype=pl.Float64)
    return numbers.filter(mask).to_list()


def _combined_mask(pairs: list[tuple[Any, Any]], func_name: str) -> pl.Series:
    """AND of the masks for every ``(range, criterion)`` pair."""
    mask: pl.Series | None = None
    for rng, crit in pairs:
        m = criteria_mask(as_column(rng, func_name), crit, func_name)
        if mask is not None and len(m) != len(mask):
            raise FormulaTypeError(f"{func_name}: criteria ranges differ in length")
        mask = m if mask is None else mask & m
    if mask is None:
        raise FormulaFunctionError(func_name, f"{func_name}: no criteria given")
    return mask


def _criteria_pairs(args: list, start: int, func_name: str) -> list[tuple[Any, Any]]:
    rest = args[start:]
    if len(rest) % 2 != 0 or not rest:
        raise FormulaFunctionError(
            func_name, f"{func_name} requires (range, criteria) pairs, got {len(rest)} arguments"
        )
    return [(rest[i], rest[i + 1]) for i in range(0, len(rest), 2)]


# ────────────────────────────────────────────────────────────────
# Conditional aggregation
# ────────────────────────────────────────────────────────────────


@fn(AGGREGATE_FUNCTIONS, "SUMIF", 2, 3, args_at(0, 2))
def _fn_sumif(args: list, ctx: Any) -> float:
    """SUMIF(range, criteria [, sum_range])."""
    rng = as_column(args[0], "SUMIF")
    target = as_column(args[2], "SUMIF") if len(args) == 3 else rng
    return float(sum(_masked(target, criteria_mask(rng, args[1], "SUMIF"), "SUMIF")))


@fn(AGGREGATE_FUNCTIONS, "COUNTIF", 2, 2, args_at(0))
def _fn_countif(args: list, ctx: Any) -> float:
    """COUNTIF(range, criteria)."""
    mask = criteria_mask(as_column(args[0], "COUNTIF"), args[1], "COUNTIF")
    return float(mask.sum())


@fn(AGGREGATE_FUNCTIONS, "AVERAGEIF", 2, 3, args_at(0, 2))
def _fn_averageif(args: list, ctx: Any) -> float:
    """AVERAGEIF(range, criteria [, average_range])."""
    rng = as_column(args[0], "AVERAGEIF")
    target = as_column(args[2], "AVERAGEIF") if len(args) == 3 else rng
    values = _masked(target, criteria_mask(rng, args[1], "AVERAGEIF"), "AVERAGEIF")
    return _average(values, "AVERAGEIF")


def _ifs_values(args: list, func_name: str) -> list[float]:
    target = as_column(args[0], func_name)
    mask = _combined_mask(_criteria_pairs(args, 1, func_name), func_name)
    return _masked(target, mask, func_name)


def _ifs_ranges(index: int) -> bool:
    # (value_range, crit_range1, crit1, crit_range2, crit2, ...)
    return index == 0 or index % 2 == 1


@fn(AGGREGATE_FUNCTIONS, "SUMIFS", 3, None, _ifs_ranges)
def _fn_sumifs(args: list, ctx: Any) -> float:
    """SUMIFS(sum_range, range1, criteria1, ...)."""
    return float(sum(_ifs_values(args, "SUMIFS")))


@fn(AGGREGATE_FUNCTIONS, "AVERAGEIFS", 3, None, _ifs_ranges)
def _fn_averageifs(args: list, ctx: Any) -> float:
    return _average(_ifs_values(args, "AVERAGEIFS"), "AVERAGEIFS")


@fn(AGGREGATE_FUNCTIONS, "MAXIFS", 3, None, _ifs_ranges)
def _fn_maxifs(args: list, ctx: Any) -> float:
    values = _ifs_values(args, "MAXIFS")
    return max(values) if values else 0.0


@fn(AGGREGATE_FUNCTIONS, "MINIFS", 3, None, _ifs_ranges)
def _fn_minifs(args: list, ctx: Any) -> float:
    values = _ifs_values(args, "MINIFS")
    return min(values) if values else 0.0


@fn(AGGREGATE_FUNCTIONS, "COUNTIFS", 2, None, lambda i: i % 2 == 0)
def _fn_countifs(args: list, ctx: Any) -> float:
    """COUNTIFS(range1, criteria1, ...)."""
    mask = _combined_mask(_criteria_pairs(args, 0, "COUNTIFS"), "COUNTIFS")
    return float(mask.sum())
