"""Text formula functions: CONCAT, UPPER, LOWER, TRIM, LEN, LEFT, RIGHT, MID."""

from __future__ import annotations

from typing import Any

from tabcalc.formulas.errors import FormulaFunctionError
from tabcalc.formulas.registry import FunctionSpec, flatten, fn, to_int, to_text

TEXT_FUNCTIONS: dict[str, FunctionSpec] = {}


@fn(TEXT_FUNCTIONS, "CONCAT", 1, None)
def _fn_concat(args: list, ctx: Any) -> str:
    return "".join(to_text(a, "CONCAT") for a in flatten(args))


@fn(TEXT_FUNCTIONS, "CONCATENATE", 1, None)
def _fn_concatenate(args: list, ctx: Any) -> str:
    return "".join(to_text(a, "CONCATENATE") for a in args)


@fn(TEXT_FUNCTIONS, "UPPER", 1, 1)
def _fn_upper(args: list, ctx: Any) -> str:
    return to_text(args[0], "UPPER").upper()


@fn(TEXT_FUNCTIONS, "LOWER", 1, 1)
def _fn_lower(args: list, ctx: Any) -> str:
    return to_text(args[0], "LOWER").lower()


@fn(TEXT_FUNCTIONS, "TRIM", 1, 1)
def _fn_trim(args: list, ctx: Any) -> str:
    """TRIM(text): strip ends and collapse inner runs of spaces."""
    return " ".join(to_text(args[0], "TRIM").split())


@fn(TEXT_FUNCTIONS, "LEN", 1, 1)
def _fn_len(args: list, ctx: Any) -> float:
    return float(len(to_text(args[0], "LEN")))


def _count(args: list, index: int, func_name: str) -> int:
    n = to_int(args[index], func_name) if len(args) > index else 1
    if n < 0:
        raise FormulaFunctionError(func_name, f"{func_name}: count must be >= 0, got {n}")
    return n


@fn(TEXT_FUNCTIONS, "LEFT", 1, 2)
def _fn_left(args: list, ctx: Any) -> str:
    """LEFT(text [, n]): first n characters (default 1)."""
    return to_text(args[0], "LEFT")[: _count(args, 1, "LEFT")]


@fn(TEXT_FUNCTIONS, "RIGHT", 1, 2)
def _fn_right(args: list, ctx: Any) -> str:
    """RIGHT(text [, n]): last n characters (default 1)."""
    text = to_text(args[0], "RIGHT")
    n = _count(args, 1, "RIGHT")
    return text[len(text) - n:] if n else ""


@fn(TEXT_FUNCTIONS, "MID", 3, 3)
def _fn_mid(args: list, ctx: Any) -> str:
    """MID(text, start, n): n characters from 1-based start."""
    text = to_text(args[0], "MID")
    start = to_int(args[1], "MID")
    if start < 1:
        raise FormulaFunctionError("MID", f"MID: start must be >= 1, got {start}")
    n = _count(args, 2, "MID")
    return text[start - 1 : start - 1 + n]
