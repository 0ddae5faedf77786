"""Math formula functions: ROUND family, MOD, SQRT, POWER, logs."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from tabcalc.formulas.errors import FormulaDivisionError, MathDomainError
from tabcalc.formulas.registry import FunctionSpec, fn, to_int, to_number

MATH_FUNCTIONS: dict[str, FunctionSpec] = {}


@fn(MATH_FUNCTIONS, "ABS", 1, 1)
def _fn_abs(args: list, ctx: Any) -> float:
    return abs(to_number(args[0], "ABS"))


@fn(MATH_FUNCTIONS, "ROUND", 1, 2)
def _fn_round(args: list, ctx: Any) -> float:
    """ROUND(x [, digits]): halves round away from zero, as spreadsheets do."""
    x = to_number(args[0], "ROUND")
    digits = to_int(args[1], "ROUND") if len(args) == 2 else 0
    if math.isnan(x) or math.isinf(x):
        return x
    quant = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(x)).quantize(quant, rounding=ROUND_HALF_UP))


def _scaled(x: float, digits: int, op: Any) -> float:
    factor = 10.0 ** digits
    return op(round(x * factor, 9)) / factor


@fn(MATH_FUNCTIONS, "ROUNDUP", 1, 2)
def _fn_roundup(args: list, ctx: Any) -> float:
    """ROUNDUP(x [, digits]): away from zero."""
    x = to_number(args[0], "ROUNDUP")
    digits = to_int(args[1], "ROUNDUP") if len(args) == 2 else 0
    op = math.ceil if x >= 0 else math.floor
    return _scaled(x, digits, op)


@fn(MATH_FUNCTIONS, "ROUNDDOWN", 1, 2)
def _fn_rounddown(args: list, ctx: Any) -> float:
    """ROUNDDOWN(x [, digits]): toward zero."""
    x = to_number(args[0], "ROUNDDOWN")
    digits = to_int(args[1], "ROUNDDOWN") if len(args) == 2 else 0
    return _scaled(x, digits, math.trunc)


@fn(MATH_FUNCTIONS, "CEILING", 1, 2)
def _fn_ceiling(args: list, ctx: Any) -> float:
    """CEILING(x [, significance]): round up to a multiple of significance."""
    x = to_number(args[0], "CEILING")
    sig = to_number(args[1], "CEILING") if len(args) == 2 else 1.0
    if sig == 0:
        return 0.0
    return math.ceil(x / sig) * sig


@fn(MATH_FUNCTIONS, "FLOOR", 1, 2)
def _fn_floor(args: list, ctx: Any) -> float:
    """FLOOR(x [, significance]): round down to a multiple of significance."""
    x = to_number(args[0], "FLOOR")
    sig = to_number(args[1], "FLOOR") if len(args) == 2 else 1.0
    if sig == 0:
        raise FormulaDivisionError("FLOOR: significance is zero")
    return math.floor(x / sig) * sig


@fn(MATH_FUNCTIONS, "INT", 1, 1)
def _fn_int(args: list, ctx: Any) -> float:
    """INT(x): round down to the nearest integer."""
    return float(math.floor(to_number(args[0], "INT")))


@fn(MATH_FUNCTIONS, "MOD", 2, 2)
def _fn_mod(args: list, ctx: Any) -> float:
    """MOD(x, divisor): result has the sign of the divisor."""
    x = to_number(args[0], "MOD")
    d = to_number(args[1], "MOD")
    if d == 0:
        raise FormulaDivisionError("MOD: division by zero")
    return x - d * math.floor(x / d)


@fn(MATH_FUNCTIONS, "SIGN", 1, 1)
def _fn_sign(args: list, ctx: Any) -> float:
    x = to_number(args[0], "SIGN")
    return float((x > 0) - (x < 0))


@fn(MATH_FUNCTIONS, "SQRT", 1, 1)
def _fn_sqrt(args: list, ctx: Any) -> float:
    x = to_number(args[0], "SQRT")
    if x < 0:
        raise MathDomainError(f"SQRT of negative number {x}")
    return math.sqrt(x)


@fn(MATH_FUNCTIONS, "POWER", 2, 2)
def _fn_power(args: list, ctx: Any) -> float:
    return power(to_number(args[0], "POWER"), to_number(args[1], "POWER"))


def power(base: float, exp: float) -> float:
    """``base ** exp`` with errors mapped to formula errors."""
    try:
        result = base ** exp
    except ZeroDivisionError as exc:
        raise FormulaDivisionError("Division by zero: 0 raised to a negative power") from exc
    except OverflowError as exc:
        raise MathDomainError(f"Overflow computing {base} ^ {exp}") from exc
    if isinstance(result, complex):
        raise MathDomainError(f"{base} ^ {exp} has no real value")
    return float(result)


@fn(MATH_FUNCTIONS, "EXP", 1, 1)
def _fn_exp(args: list, ctx: Any) -> float:
    try:
        return math.exp(to_number(args[0], "EXP"))
    except OverflowError as exc:
        raise MathDomainError("EXP overflow") from exc


def _log(x: float, base: float | None, func_name: str) -> float:
    if x <= 0:
        raise MathDomainError(f"{func_name} of non-positive number {x}")
    if base is None:
        return math.log(x)
    if base <= 0 or base == 1:
        raise MathDomainError(f"{func_name}: invalid base {base}")
    return math.log(x, base)


@fn(MATH_FUNCTIONS, "LN", 1, 1)
def _fn_ln(args: list, ctx: Any) -> float:
    return _log(to_number(args[0], "LN"), None, "LN")


@fn(MATH_FUNCTIONS, "LOG10", 1, 1)
def _fn_log10(args: list, ctx: Any) -> float:
    x = to_number(args[0], "LOG10")
    if x <= 0:
        raise MathDomainError(f"LOG10 of non-positive number {x}")
    return math.log10(x)


@fn(MATH_FUNCTIONS, "LOG", 1, 2)
def _fn_log(args: list, ctx: Any) -> float:
    """LOG(x [, base]): base defaults to 10."""
    base = to_number(args[1], "LOG") if len(args) == 2 else 10.0
    return _log(to_number(args[0], "LOG"), base, "LOG")


@fn(MATH_FUNCTIONS, "PI", 0, 0)
def _fn_pi(args: list, ctx: Any) -> float:
    return math.pi
