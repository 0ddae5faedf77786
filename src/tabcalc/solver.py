"""Numerical root finding and what-if analysis.

Primitives:

- :func:`bisect` -- bracketing root finder used by goal-seek/break-even
  and as the fallback for rate solving.
- :func:`newton_raphson` -- derivative-based solver used by IRR, XIRR
  and RATE.

Model drivers (:func:`goal_seek`, :func:`break_even`,
:func:`sensitivity`) re-run a full calculation pass per trial.  Loops
are bounded by an iteration budget and can be cancelled through a
``cancel`` callable; a trial that fails is reported, never retried or
replaced by a default.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable

from pydantic import BaseModel, Field

from tabcalc.errors import (
    ConvergenceError,
    IterationBudgetError,
    ModelError,
    NoSignChangeError,
    SolverCancelled,
    TabcalcError,
)
from tabcalc.logging.events import EventType, emit_info, emit_warning

logger = logging.getLogger(__name__)

Objective = Callable[[float], float]
CancelCheck = Callable[[], bool]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


def _check_cancel(cancel: CancelCheck | None, iteration: int) -> None:
    if cancel is not None and cancel():
        raise SolverCancelled(f"Solver cancelled after {iteration} iterations")


def bisect(
    f: Objective,
    lower: float,
    upper: float,
    *,
    target: float = 0.0,
    tolerance: float = 1e-4,
    xtol: float | None = None,
    max_iterations: int = 100,
    cancel: CancelCheck | None = None,
) -> tuple[float, float, int]:
    """Find x in [lower, upper] with ``|f(x) - target| <= tolerance``.

    Args:
        f: Objective; must be continuous on the bracket.
        lower: Lower bound.
        upper: Upper bound.
        target: Value to reach.
        tolerance: Accepted distance from *target*.
        xtol: Also accept the midpoint once the bracket half-width is
            below this.
        max_iterations: Iteration budget (midpoint evaluations).
        cancel: Optional callable; returning True aborts the loop.

    Returns:
        ``(x, f(x), iterations)``.

    Raises:
        NoSignChangeError: ``f - target`` has the same sign at both bounds.
        IterationBudgetError: Budget exhausted before reaching tolerance.
        SolverCancelled: *cancel* returned True.
    """
    lo, hi = (lower, upper) if lower <= upper else (upper, lower)
    f_lo = f(lo) - target
    if abs(f_lo) <= tolerance:
        return lo, f_lo + target, 0
    f_hi = f(hi) - target
    if abs(f_hi) <= tolerance:
        return hi, f_hi + target, 0
    if f_lo * f_hi > 0:
        raise NoSignChangeError(lo, hi)

    mid = (lo + hi) / 2
    for iteration in range(1, max_iterations + 1):
        _check_cancel(cancel, iteration)
        mid = (lo + hi) / 2
        f_mid = f(mid) - target
        if abs(f_mid) <= tolerance or (xtol is not None and (hi - lo) / 2 < xtol):
            return mid, f_mid + target, iteration
        if mid in (lo, hi):
            # bracket no longer shrinks at float resolution
            break
        if f_lo * f_mid < 0:
            hi = mid
        else:
            lo, f_lo = mid, f_mid
    raise IterationBudgetError(max_iterations, last=mid)


def newton_raphson(
    f: Objective,
    guess: float,
    *,
    df: Objective | None = None,
    tolerance: float = 1e-10,
    max_iterations: int = 100,
    cancel: CancelCheck | None = None,
) -> float:
    """Solve ``f(x) = 0`` by Newton-Raphson from *guess*.

    Args:
        f: Objective.
        guess: Starting point.
        df: Derivative of *f*; a central difference is used when omitted.
        tolerance: Convergence threshold on the step size.
        max_iterations: Iteration budget.

    Raises:
        ConvergenceError: Derivative vanished or iterate left the reals.
        IterationBudgetError: Budget exhausted.
    """

    def derivative(x: float) -> float:
        if df is not None:
            return df(x)
        h = 1e-6 * max(1.0, abs(x))
        return (f(x + h) - f(x - h)) / (2 * h)

    x = guess
    for iteration in range(1, max_iterations + 1):
        _check_cancel(cancel, iteration)
        try:
            fx = f(x)
            dfx = derivative(x)
        except (ZeroDivisionError, OverflowError) as exc:
            raise ConvergenceError(f"Newton-Raphson failed at x={x}: {exc}") from exc
        if isinstance(fx, complex) or isinstance(dfx, complex):
            raise ConvergenceError(f"Newton-Raphson left the real line at x={x}")
        if not math.isfinite(fx) or not math.isfinite(dfx):
            raise ConvergenceError(f"Newton-Raphson diverged at x={x}")
        if abs(dfx) < 1e-14:
            raise ConvergenceError(f"Newton-Raphson derivative vanished at x={x}")
        step = fx / dfx
        x_new = x - step
        if abs(x_new - x) < tolerance:
            return x_new
        x = x_new
    raise IterationBudgetError(max_iterations, last=x)


def solve_rate(
    f: Objective,
    guess: float,
    *,
    df: Objective | None = None,
    bracket: tuple[float, float] = (-0.99, 10.0),
    tolerance: float = 1e-10,
    max_iterations: int = 100,
) -> float:
    """Rate solving: Newton-Raphson first, bisection on *bracket* as fallback.

    Raises:
        ConvergenceError: Neither method converged.
    """
    try:
        return newton_raphson(f, guess, df=df, tolerance=tolerance, max_iterations=max_iterations)
    except ConvergenceError as newton_exc:
        logger.debug("newton failed (%s); falling back to bisection", newton_exc)
        try:
            x, _, _ = bisect(
                f, bracket[0], bracket[1], tolerance=tolerance, xtol=tolerance,
                max_iterations=max_iterations * 2,
            )
            return x
        except ConvergenceError:
            raise ConvergenceError(f"Rate did not converge: {newton_exc}") from newton_exc


def parse_range(spec: str) -> list[float]:
    """Parse ``"start,end,step"`` into an inclusive list of values.

    Raises:
        ValueError: Malformed spec, ``step <= 0`` or ``start > end``.
    """
    parts = [p.strip() for p in spec.split(",")]
    if len(parts) != 3:
        raise ValueError(f"Range must be 'start,end,step', got {spec!r}")
    try:
        start, end, step = (float(p) for p in parts)
    except ValueError as exc:
        raise ValueError(f"Range values must be numbers: {spec!r}") from exc
    if step <= 0:
        raise ValueError(f"Range step must be positive, got {step}")
    if start > end:
        raise ValueError(f"Range start {start} is greater than end {end}")
    values: list[float] = []
    i = 0
    # slack so a float-accumulated end point is still included
    while start + i * step <= end + step * 0.001:
        values.append(start + i * step)
        i += 1
    return values


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------


class GoalSeekResult(BaseModel):
    """Outcome of a goal-seek (or break-even) search."""

    output: str
    vary: str
    target: float
    value: float
    achieved: float
    iterations: int
    lower: float
    upper: float


class TrialError(BaseModel):
    """A sensitivity trial whose calculation failed."""

    inputs: dict[str, float]
    error: str


class SensitivityResult(BaseModel):
    """1-D list (``series``) or 2-D matrix (``matrix``) of output values.

    ``matrix[i][j]`` corresponds to ``values[i]`` and ``values2[j]``.
    Failed trials hold ``None`` and are listed in ``errors``.
    """

    output: str
    vary: str
    values: list[float]
    vary2: str | None = None
    values2: list[float] | None = None
    series: list[float | None] | None = None
    matrix: list[list[float | None]] | None = None
    errors: list[TrialError] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Model drivers
# ---------------------------------------------------------------------------


def _trial(
    model: Any,
    overrides: dict[str, float],
    output: str,
    options: dict[str, Any] | None = None,
) -> float:
    """Evaluate *output* after one full calculation with *overrides*."""
    from tabcalc.engine import calculate, lookup_value
    from tabcalc.model import apply_overrides

    result = calculate(apply_overrides(model, overrides), options)
    value = lookup_value(result, output)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ModelError(f"Output {output!r} is not numeric: {value!r}")
    return float(value)


def _current_value(model: Any, vary: str, options: dict[str, Any] | None = None) -> float:
    from tabcalc.engine import calculate, lookup_value

    scalar = model.scalars.get(vary)
    if scalar is not None and not scalar.is_formula and isinstance(scalar.value, (int, float)):
        return float(scalar.value)
    value = lookup_value(calculate(model, options), vary)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ModelError(f"Input {vary!r} is not numeric: {value!r}")
    return float(value)


def default_bounds(current: float) -> tuple[float, float]:
    """Search bounds around the current input: 0.01x to 100x (or +/-1000 at zero)."""
    if current == 0:
        return -1000.0, 1000.0
    a, b = current * 0.01, current * 100.0
    return min(a, b), max(a, b)


def _widen_lower(lo: float, factor: float) -> float:
    return lo / factor if lo > 0 else lo * factor


def _widen_upper(hi: float, factor: float) -> float:
    return hi * factor if hi > 0 else hi / factor


def goal_seek(
    model: Any,
    output: str,
    vary: str,
    target: float = 0.0,
    *,
    lower: float | None = None,
    upper: float | None = None,
    tolerance: float = 1e-4,
    max_iterations: int = 100,
    options: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> GoalSeekResult:
    """Find the value of input scalar *vary* that drives *output* to *target*.

    An omitted bound defaults around the current input (or, when the other
    bound is given and the default would cross it, around that bound).
    Only defaulted bounds are widened (x10, x100, x1000) when the output
    does not change sign over them; a given bound is kept as is.

    Args:
        options: Evaluation settings passed to every trial calculation.

    Raises:
        NoSignChangeError: No sign change within the (widened) bounds.
        IterationBudgetError: Budget exhausted.
        RowErrors, UnknownReferenceError, ...: A trial calculation failed.
    """
    widen_lo, widen_hi = lower is None, upper is None
    if widen_lo or widen_hi:
        lo_default, hi_default = default_bounds(_current_value(model, vary, options))
        if lower is None:
            lower = lo_default if upper is None or lo_default < upper else default_bounds(upper)[0]
        if upper is None:
            upper = hi_default if hi_default > lower else default_bounds(lower)[1]
    if lower >= upper:
        raise ValueError(f"Lower bound {lower} must be below upper bound {upper}")

    def f(x: float) -> float:
        return _trial(model, {vary: x}, output, options)

    lo, hi = lower, upper
    if (widen_lo or widen_hi) and (f(lo) - target) * (f(hi) - target) > 0:
        for factor in (10.0, 100.0, 1000.0):
            _check_cancel(cancel, 0)
            exp_lo = _widen_lower(lower, factor) if widen_lo else lower
            exp_hi = _widen_upper(upper, factor) if widen_hi else upper
            if (f(exp_lo) - target) * (f(exp_hi) - target) <= 0:
                lo, hi = exp_lo, exp_hi
                logger.debug("goal_seek widened bounds to [%s, %s]", lo, hi)
                break
        else:
            raise NoSignChangeError(
                lower,
                upper,
                f"No sign change in bounds: target {target} for {output!r} "
                f"may not be reachable by varying {vary!r}",
            )

    try:
        x, achieved, iterations = bisect(
            f, lo, hi, target=target, tolerance=tolerance,
            max_iterations=max_iterations, cancel=cancel,
        )
    except ConvergenceError as exc:
        emit_warning(
            EventType.solver_failed,
            f"goal_seek {output!r} via {vary!r}: {exc}",
            {"output": output, "vary": vary, "target": target},
        )
        raise
    emit_info(
        EventType.solver_converged,
        f"goal_seek {output!r} via {vary!r} converged in {iterations} iterations",
        {"output": output, "vary": vary, "value": x, "iterations": iterations},
    )
    return GoalSeekResult(
        output=output, vary=vary, target=target, value=x, achieved=achieved,
        iterations=iterations, lower=lo, upper=hi,
    )


def break_even(
    model: Any,
    output: str,
    vary: str,
    *,
    lower: float | None = None,
    upper: float | None = None,
    tolerance: float = 1e-4,
    max_iterations: int = 100,
    options: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> GoalSeekResult:
    """Goal-seek *output* to zero by varying *vary*."""
    return goal_seek(
        model, output, vary, 0.0, lower=lower, upper=upper, tolerance=tolerance,
        max_iterations=max_iterations, options=options, cancel=cancel,
    )


def sensitivity(
    model: Any,
    output: str,
    vary: str,
    values: list[float] | str,
    vary2: str | None = None,
    values2: list[float] | str | None = None,
    *,
    options: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> SensitivityResult:
    """Tabulate *output* over one or two input scalars.

    Args:
        values: Values for *vary*, or a ``"start,end,step"`` range.
        vary2: Optional second input; produces a matrix.
        values2: Values (or range) for *vary2*.
        options: Evaluation settings passed to every trial calculation.
    """
    xs = parse_range(values) if isinstance(values, str) else list(values)
    if (vary2 is None) != (values2 is None):
        raise ValueError("vary2 and values2 must be given together")
    ys = parse_range(values2) if isinstance(values2, str) else (list(values2) if values2 is not None else None)

    result = SensitivityResult(output=output, vary=vary, values=xs, vary2=vary2, values2=ys)
    count = 0

    def run(overrides: dict[str, float]) -> float | None:
        nonlocal count
        count += 1
        _check_cancel(cancel, count)
        try:
            return _trial(model, overrides, output, options)
        except TabcalcError as exc:
            result.errors.append(TrialError(inputs=overrides, error=str(exc)))
            return None

    if vary2 is None or ys is None:
        result.series = [run({vary: x}) for x in xs]
    else:
        result.matrix = [[run({vary: x, vary2: y}) for y in ys] for x in xs]
    emit_info(
        EventType.sensitivity_completed,
        f"sensitivity {output!r}: {count} trials, {len(result.errors)} failed",
        {"output": output, "vary": vary, "vary2": vary2, "trials": count},
    )
    return result
