"""Financial formula functions: discounting, rates, annuities, depreciation, FP&A.

Rate solvers (IRR, XIRR, RATE) use Newton-Raphson with a bisection
fallback.  Cash flows without a sign change have no rate at all and
raise :class:`MathDomainError`; a solver that runs out of iterations
raises :class:`ConvergenceError` instead, so the two outcomes stay
distinguishable.
"""

from __future__ import annotations

import datetime
import math
from typing import Any

from tabcalc.errors import ConvergenceError
from tabcalc.formulas.errors import (
    FormulaDivisionError,
    FormulaFunctionError,
    FormulaTypeError,
    MathDomainError,
)
from tabcalc.formulas.fn_date import coerce_date
from tabcalc.formulas.registry import (
    FunctionSpec,
    args_at,
    args_from,
    as_column,
    fn,
    to_int,
    to_number,
    to_numbers,
)
from tabcalc.solver import solve_rate

FINANCE_FUNCTIONS: dict[str, FunctionSpec] = {}

_DEFAULT_GUESS = 0.1


def _rate_options(ctx: Any, guess: float | None = None) -> dict[str, Any]:
    options = getattr(ctx, "options", None) or {}
    return {
        "guess": guess if guess is not None else float(options.get("rate_guess", _DEFAULT_GUESS)),
        "tolerance": float(options.get("rate_tolerance", 1e-10)),
        "max_iterations": int(options.get("rate_max_iterations", 100)),
    }


def _require_sign_change(values: list[float], func_name: str) -> None:
    if not (any(v > 0 for v in values) and any(v < 0 for v in values)):
        raise MathDomainError(
            f"{func_name}: cash flows need at least one positive and one negative value"
        )


def _solve(func_name: str, f: Any, df: Any, opts: dict[str, Any]) -> float:
    try:
        return solve_rate(
            f, opts["guess"], df=df, tolerance=opts["tolerance"], max_iterations=opts["max_iterations"]
        )
    except ConvergenceError as exc:
        raise ConvergenceError(f"{func_name}: did not converge ({exc})") from exc


# ---------------------------------------------------------------------------
# Discounting and internal rates
# ---------------------------------------------------------------------------


@fn(FINANCE_FUNCTIONS, "NPV", 2, None, args_from(1))
def _fn_npv(args: list, ctx: Any) -> float:
    """NPV(rate, cf1, cf2, ...): net present value.

    Discounts from t=1 (spreadsheet semantics): NPV = sum(cf_i / (1+rate)^i).
    Does NOT include an initial investment at t=0.
    """
    rate = to_number(args[0], "NPV")
    if rate == -1:
        raise FormulaDivisionError("NPV: rate of -1 discounts by zero")
    cashflows = to_numbers(args[1:], "NPV")
    return sum(cf / (1 + rate) ** i for i, cf in enumerate(cashflows, start=1))


def _npv0(cashflows: list[float], rate: float) -> float:
    return sum(cf / (1 + rate) ** i for i, cf in enumerate(cashflows))


def _dnpv0(cashflows: list[float], rate: float) -> float:
    return sum(-i * cf / (1 + rate) ** (i + 1) for i, cf in enumerate(cashflows))


@fn(FINANCE_FUNCTIONS, "IRR", 1, 2, args_at(0))
def _fn_irr(args: list, ctx: Any) -> float:
    """IRR(cashflows [, guess]): internal rate of return.

    All cashflows are at t=0, t=1, ... (equal periods).
    """
    cashflows = to_numbers([args[0]], "IRR")
    if len(cashflows) < 2:
        raise FormulaFunctionError("IRR", "IRR requires at least 2 cashflows")
    _require_sign_change(cashflows, "IRR")
    guess = to_number(args[1], "IRR") if len(args) == 2 else None
    return _solve(
        "IRR",
        lambda r: _npv0(cashflows, r),
        lambda r: _dnpv0(cashflows, r),
        _rate_options(ctx, guess),
    )


def _dated(values: Any, dates: Any, func_name: str) -> tuple[list[float], list[datetime.date]]:
    amounts = to_numbers([values], func_name)
    days = [coerce_date(d, func_name) for d in as_column(dates, func_name)]
    if len(amounts) != len(days) or not amounts:
        raise FormulaTypeError(
            f"{func_name}: values ({len(amounts)}) and dates ({len(days)}) must be non-empty and equal length"
        )
    return amounts, days


def _year_fractions(days: list[datetime.date]) -> list[float]:
    # Actual/365 from the first date
    d0 = days[0]
    return [(d - d0).days / 365.0 for d in days]


def _xnpv(amounts: list[float], years: list[float], rate: float) -> float:
    return sum(v / (1 + rate) ** t for v, t in zip(amounts, years))


def _dxnpv(amounts: list[float], years: list[float], rate: float) -> float:
    return sum(-t * v / (1 + rate) ** (t + 1) for v, t in zip(amounts, years) if t != 0)


@fn(FINANCE_FUNCTIONS, "XNPV", 3, 3, args_at(1, 2))
def _fn_xnpv(args: list, ctx: Any) -> float:
    """XNPV(rate, values, dates): NPV with specific dates.

    Day-count: Actual/365.
    """
    rate = to_number(args[0], "XNPV")
    if rate <= -1:
        raise MathDomainError(f"XNPV: rate must be greater than -1, got {rate}")
    amounts, days = _dated(args[1], args[2], "XNPV")
    return _xnpv(amounts, _year_fractions(days), rate)


@fn(FINANCE_FUNCTIONS, "XIRR", 2, 3, args_at(0, 1))
def _fn_xirr(args: list, ctx: Any) -> float:
    """XIRR(values, dates [, guess]): IRR with specific dates.

    Day-count: Actual/365.
    """
    amounts, days = _dated(args[0], args[1], "XIRR")
    _require_sign_change(amounts, "XIRR")
    years = _year_fractions(days)
    guess = to_number(args[2], "XIRR") if len(args) == 3 else None
    return _solve(
        "XIRR",
        lambda r: _xnpv(amounts, years, r),
        lambda r: _dxnpv(amounts, years, r),
        _rate_options(ctx, guess),
    )


@fn(FINANCE_FUNCTIONS, "MIRR", 3, 3, args_at(0))
def _fn_mirr(args: list, ctx: Any) -> float:
    """MIRR(cashflows, finance_rate, reinvest_rate): modified internal rate of return."""
    cashflows = to_numbers([args[0]], "MIRR")
    finance_rate = to_number(args[1], "MIRR")
    reinvest_rate = to_number(args[2], "MIRR")
    n = len(cashflows)
    if n < 2:
        raise FormulaFunctionError("MIRR", "MIRR requires at least 2 cashflows")
    pv_neg = sum(cf / (1 + finance_rate) ** i for i, cf in enumerate(cashflows) if cf < 0)
    fv_pos = sum(cf * (1 + reinvest_rate) ** (n - 1 - i) for i, cf in enumerate(cashflows) if cf > 0)
    if pv_neg == 0 or fv_pos == 0:
        raise MathDomainError("MIRR: cash flows need at least one positive and one negative value")
    return (-fv_pos / pv_neg) ** (1 / (n - 1)) - 1


# ---------------------------------------------------------------------------
# Annuities
# ---------------------------------------------------------------------------


def _annuity_args(args: list, func_name: str, start: int) -> tuple[float, int]:
    """Optional trailing (fv, type) or (pv, type) arguments from *start*."""
    extra = to_number(args[start], func_name) if len(args) > start else 0.0
    when = to_int(args[start + 1], func_name) if len(args) > start + 1 else 0
    if when not in (0, 1):
        raise FormulaFunctionError(func_name, f"{func_name}: type must be 0 or 1, got {when}")
    return extra, when


@fn(FINANCE_FUNCTIONS, "PMT", 3, 5)
def _fn_pmt(args: list, ctx: Any) -> float:
    """PMT(rate, nper, pv [, fv [, type]]): periodic payment."""
    rate, nper, pv = (to_number(a, "PMT") for a in args[:3])
    fv, when = _annuity_args(args, "PMT", 3)
    if nper == 0:
        raise FormulaDivisionError("PMT: nper cannot be zero")
    if rate == 0:
        return -(pv + fv) / nper
    growth = (1 + rate) ** nper
    return -(pv * growth + fv) * rate / ((1 + rate * when) * (growth - 1))


@fn(FINANCE_FUNCTIONS, "PV", 3, 5)
def _fn_pv(args: list, ctx: Any) -> float:
    """PV(rate, nper, pmt [, fv [, type]]): present value."""
    rate, nper, pmt = (to_number(a, "PV") for a in args[:3])
    fv, when = _annuity_args(args, "PV", 3)
    if rate == 0:
        return -(fv + pmt * nper)
    growth = (1 + rate) ** nper
    return -(fv + pmt * (1 + rate * when) * (growth - 1) / rate) / growth


@fn(FINANCE_FUNCTIONS, "FV", 3, 5)
def _fn_fv(args: list, ctx: Any) -> float:
    """FV(rate, nper, pmt [, pv [, type]]): future value."""
    rate, nper, pmt = (to_number(a, "FV") for a in args[:3])
    pv, when = _annuity_args(args, "FV", 3)
    if rate == 0:
        return -(pv + pmt * nper)
    growth = (1 + rate) ** nper
    return -(pv * growth + pmt * (1 + rate * when) * (growth - 1) / rate)


@fn(FINANCE_FUNCTIONS, "NPER", 3, 5)
def _fn_nper(args: list, ctx: Any) -> float:
    """NPER(rate, pmt, pv [, fv [, type]]): number of periods."""
    rate, pmt, pv = (to_number(a, "NPER") for a in args[:3])
    fv, when = _annuity_args(args, "NPER", 3)
    if rate == 0:
        if pmt == 0:
            raise FormulaDivisionError("NPER: payment cannot be zero at a zero rate")
        return -(pv + fv) / pmt
    adj = pmt * (1 + rate * when)
    num = adj - fv * rate
    den = adj + pv * rate
    if den == 0 or num / den <= 0:
        raise MathDomainError("NPER: no number of periods satisfies these values")
    return math.log(num / den) / math.log(1 + rate)


@fn(FINANCE_FUNCTIONS, "RATE", 3, 6)
def _fn_rate(args: list, ctx: Any) -> float:
    """RATE(nper, pmt, pv [, fv [, type [, guess]]]): rate per period."""
    nper, pmt, pv = (to_number(a, "RATE") for a in args[:3])
    fv, when = _annuity_args(args, "RATE", 3)
    guess = to_number(args[5], "RATE") if len(args) == 6 else None
    if nper <= 0:
        raise FormulaFunctionError("RATE", f"RATE: nper must be positive, got {nper}")
    _require_sign_change([pv, pmt, fv], "RATE")

    def f(r: float) -> float:
        if abs(r) < 1e-12:
            return pv + pmt * nper + fv
        growth = (1 + r) ** nper
        return pv * growth + pmt * (1 + r * when) * (growth - 1) / r + fv

    return _solve("RATE", f, None, _rate_options(ctx, guess))


# ---------------------------------------------------------------------------
# Depreciation
# ---------------------------------------------------------------------------


@fn(FINANCE_FUNCTIONS, "SLN", 3, 3)
def _fn_sln(args: list, ctx: Any) -> float:
    """SLN(cost, salvage, life): straight-line depreciation per period."""
    cost, salvage, life = (to_number(a, "SLN") for a in args)
    if life == 0:
        raise FormulaDivisionError("SLN: life cannot be zero")
    return (cost - salvage) / life


@fn(FINANCE_FUNCTIONS, "DDB", 4, 5)
def _fn_ddb(args: list, ctx: Any) -> float:
    """DDB(cost, salvage, life, period [, factor]): declining balance.

    Never depreciates below salvage.
    """
    cost, salvage, life, period = (to_number(a, "DDB") for a in args[:4])
    factor = to_number(args[4], "DDB") if len(args) == 5 else 2.0
    if life <= 0:
        raise FormulaFunctionError("DDB", f"DDB: life must be positive, got {life}")
    if period < 1 or period > life:
        raise FormulaFunctionError("DDB", f"DDB: period must be between 1 and {life}, got {period}")
    rate = factor / life
    remaining = cost
    depreciation = 0.0
    for _ in range(int(period)):
        depreciation = min(remaining * rate, max(remaining - salvage, 0.0))
        remaining -= depreciation
    return depreciation


# ---------------------------------------------------------------------------
# FP&A helpers
# ---------------------------------------------------------------------------


@fn(FINANCE_FUNCTIONS, "VARIANCE", 2, 2)
def _fn_variance(args: list, ctx: Any) -> float:
    """VARIANCE(actual, budget): actual minus budget."""
    return to_number(args[0], "VARIANCE") - to_number(args[1], "VARIANCE")


@fn(FINANCE_FUNCTIONS, "VARIANCE_PCT", 2, 2)
def _fn_variance_pct(args: list, ctx: Any) -> float:
    """VARIANCE_PCT(actual, budget): (actual - budget) / budget, as a fraction."""
    actual = to_number(args[0], "VARIANCE_PCT")
    budget = to_number(args[1], "VARIANCE_PCT")
    if budget == 0:
        raise FormulaDivisionError("VARIANCE_PCT: budget cannot be zero")
    return (actual - budget) / budget


@fn(FINANCE_FUNCTIONS, "VARIANCE_STATUS", 2, 3)
def _fn_variance_status(args: list, ctx: Any) -> float:
    """VARIANCE_STATUS(actual, budget [, threshold_or_type]).

    Returns 1 (favorable), -1 (unfavorable) or 0 (within threshold).  The
    third argument is a fractional threshold (default 0.01) or the text
    ``"cost"``, which flips favorability and keeps the default threshold.
    """
    actual = to_number(args[0], "VARIANCE_STATUS")
    budget = to_number(args[1], "VARIANCE_STATUS")
    threshold, is_cost = 0.01, False
    if len(args) == 3:
        third = args[2]
        if isinstance(third, str):
            is_cost = third.lower() == "cost"
        else:
            threshold = to_number(third, "VARIANCE_STATUS")
    if budget == 0:
        return float((actual > 0) - (actual < 0))
    pct = (actual - budget) / abs(budget)
    if abs(pct) <= threshold:
        return 0.0
    favorable = pct < 0 if is_cost else pct > 0
    return 1.0 if favorable else -1.0


@fn(FINANCE_FUNCTIONS, "BREAKEVEN_UNITS", 3, 3)
def _fn_breakeven_units(args: list, ctx: Any) -> float:
    """BREAKEVEN_UNITS(fixed_costs, unit_price, variable_cost_per_unit)."""
    fixed, price, variable = (to_number(a, "BREAKEVEN_UNITS") for a in args)
    margin = price - variable
    if margin <= 0:
        raise MathDomainError("BREAKEVEN_UNITS: unit_price must be greater than variable_cost")
    return fixed / margin


@fn(FINANCE_FUNCTIONS, "BREAKEVEN_REVENUE", 2, 2)
def _fn_breakeven_revenue(args: list, ctx: Any) -> float:
    """BREAKEVEN_REVENUE(fixed_costs, contribution_margin_ratio)."""
    fixed = to_number(args[0], "BREAKEVEN_REVENUE")
    ratio = to_number(args[1], "BREAKEVEN_REVENUE")
    if ratio <= 0 or ratio > 1:
        raise MathDomainError("BREAKEVEN_REVENUE: contribution margin ratio must be in (0, 1]")
    return fixed / ratio
