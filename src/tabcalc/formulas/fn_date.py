"""Date formula functions: DATE, YEAR, MONTH, DAY, EDATE, EOMONTH, DATEDIF.

TODAY is deliberately absent: every function here is deterministic.
"""

from __future__ import annotations

import calendar
import datetime
from typing import Any

from tabcalc.formulas.errors import FormulaFunctionError, FormulaTypeError
from tabcalc.formulas.registry import FunctionSpec, fn, to_int
from tabcalc.values import parse_date

DATE_FUNCTIONS: dict[str, FunctionSpec] = {}

# Spreadsheet epoch: 1899-12-30 (serial 1 = 1900-01-01 once the
# 1900 leap-year bug is accounted for)
EXCEL_EPOCH = datetime.date(1899, 12, 30)


def coerce_date(val: Any, func_name: str = "DATE") -> datetime.date:
    """Convert a value to a datetime.date.

    Accepts:
    - datetime.date objects (returned as-is)
    - ISO format strings ("YYYY-MM-DD" or "YYYY-MM")
    - spreadsheet serial numbers (int or float)
    """
    if isinstance(val, datetime.datetime):
        return val.date()
    if isinstance(val, datetime.date):
        return val
    if isinstance(val, str):
        parsed = parse_date(val)
        if parsed is None:
            raise FormulaTypeError(f"{func_name}: cannot parse date string {val!r}")
        return parsed
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        serial = int(val)
        if serial < 1:
            raise FormulaFunctionError(func_name, f"{func_name}: invalid date serial number {serial}")
        return EXCEL_EPOCH + datetime.timedelta(days=serial)
    raise FormulaTypeError(f"{func_name}: cannot coerce {type(val).__name__} to date")


def add_months(start: datetime.date, months: int, end_of_month: bool = False) -> datetime.date:
    total = (start.year * 12 + start.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    if end_of_month:
        return datetime.date(year, month, last_day)
    return datetime.date(year, month, min(start.day, last_day))


@fn(DATE_FUNCTIONS, "DATE", 3, 3)
def _fn_date(args: list, ctx: Any) -> datetime.date:
    """DATE(year, month, day): month overflow rolls into the year."""
    year, month, day = (to_int(a, "DATE") for a in args)
    try:
        first = add_months(datetime.date(year, 1, 1), month - 1)
        return first + datetime.timedelta(days=day - 1)
    except (ValueError, OverflowError) as exc:
        raise FormulaFunctionError("DATE", f"Invalid date: {exc}") from exc


@fn(DATE_FUNCTIONS, "YEAR", 1, 1)
def _fn_year(args: list, ctx: Any) -> float:
    return float(coerce_date(args[0], "YEAR").year)


@fn(DATE_FUNCTIONS, "MONTH", 1, 1)
def _fn_month(args: list, ctx: Any) -> float:
    return float(coerce_date(args[0], "MONTH").month)


@fn(DATE_FUNCTIONS, "DAY", 1, 1)
def _fn_day(args: list, ctx: Any) -> float:
    return float(coerce_date(args[0], "DAY").day)


@fn(DATE_FUNCTIONS, "EDATE", 2, 2)
def _fn_edate(args: list, ctx: Any) -> datetime.date:
    """EDATE(start_date, months): same day-of-month, clamped to month end."""
    return add_months(coerce_date(args[0], "EDATE"), to_int(args[1], "EDATE"))


@fn(DATE_FUNCTIONS, "EOMONTH", 2, 2)
def _fn_eomonth(args: list, ctx: Any) -> datetime.date:
    """EOMONTH(start_date, months): end of month, offset by months.

    EOMONTH(DATE(2024,1,15), 1) => 2024-02-29 (last day of Feb 2024).
    """
    return add_months(coerce_date(args[0], "EOMONTH"), to_int(args[1], "EOMONTH"), end_of_month=True)


@fn(DATE_FUNCTIONS, "DATEDIF", 3, 3)
def _fn_datedif(args: list, ctx: Any) -> float:
    """DATEDIF(start, end, unit): whole years ("Y"), months ("M") or days ("D")."""
    start = coerce_date(args[0], "DATEDIF")
    end = coerce_date(args[1], "DATEDIF")
    unit = str(args[2]).upper()
    if end < start:
        raise FormulaFunctionError("DATEDIF", "DATEDIF: end date is before start date")
    if unit == "D":
        return float((end - start).days)
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    if unit == "M":
        return float(months)
    if unit == "Y":
        return float(months // 12)
    raise FormulaFunctionError("DATEDIF", f"DATEDIF: unsupported unit {args[2]!r} (use Y, M or D)")
