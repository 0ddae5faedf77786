"""Logical formula functions: IF, IFERROR, AND, OR, NOT."""

from __future__ import annotations

from typing import Any

from tabcalc.formulas.errors import ENGINE_ERRORS
from tabcalc.formulas.registry import FunctionSpec, flatten, fn, to_bool

LOGICAL_FUNCTIONS: dict[str, FunctionSpec] = {}


@fn(LOGICAL_FUNCTIONS, "IF", 2, 3, lazy=True)
def _fn_if(raw_args: list, ctx: Any) -> Any:
    """IF(condition, then_value [, else_value]): lazy evaluation."""
    condition = to_bool(ctx.eval(raw_args[0]), "IF")
    if condition:
        return ctx.eval(raw_args[1])
    if len(raw_args) == 3:
        return ctx.eval(raw_args[2])
    return False


@fn(LOGICAL_FUNCTIONS, "IFERROR", 2, 2, lazy=True)
def _fn_iferror(raw_args: list, ctx: Any) -> Any:
    """IFERROR(value, fallback): fallback if the first argument errors."""
    try:
        return ctx.eval(raw_args[0])
    except ENGINE_ERRORS:
        return ctx.eval(raw_args[1])


@fn(LOGICAL_FUNCTIONS, "AND", 1, None)
def _fn_and(args: list, ctx: Any) -> bool:
    """AND(a, b, ...): TRUE if all arguments are truthy."""
    return all(to_bool(a, "AND") for a in flatten(args))


@fn(LOGICAL_FUNCTIONS, "OR", 1, None)
def _fn_or(args: list, ctx: Any) -> bool:
    """OR(a, b, ...): TRUE if any argument is truthy."""
    return any(to_bool(a, "OR") for a in flatten(args))


@fn(LOGICAL_FUNCTIONS, "NOT", 1, 1)
def _fn_not(args: list, ctx: Any) -> bool:
    """NOT(a): logical negation."""
    return not to_bool(args[0], "NOT")
