"""The command surface: pure functions of a model plus parameters.

Each command takes already-loaded models and returns a result (a model,
sheets, or a pydantic record) or raises a :class:`TabcalcError`.  File
access, output formatting and exit codes belong to the caller
(:mod:`tabcalc.cli`).
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from tabcalc.engine import Calculator, calculate as run_calculation, lookup_value
from tabcalc.errors import ModelError, TabcalcError, UnknownReferenceError
from tabcalc.graph import build_graph
from tabcalc.logging.events import EventType, emit_info, emit_warning
from tabcalc.model import Model, apply_scenario, numeric_scalars
from tabcalc.project import DEFAULT_CONFIG, scaffold_project
from tabcalc.resolver import Namespace
from tabcalc.solver import (
    CancelCheck,
    GoalSeekResult,
    SensitivityResult,
    break_even as solve_break_even,
    goal_seek as solve_goal_seek,
    sensitivity as solve_sensitivity,
)
from tabcalc.translate import export_model, import_sheets
from tabcalc.translate.sheets import Sheet
from tabcalc.units import UnitWarning, check_units
from tabcalc.values import is_number

logger = logging.getLogger(__name__)

_COST_LIKE_RE = re.compile(r"expense|cost|cogs", re.IGNORECASE)

_RATE_KEYS = ("rate_guess", "rate_tolerance", "rate_max_iterations")


def _config(config: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(DEFAULT_CONFIG)
    if config:
        merged.update(config)
    return merged


def eval_options(config: dict[str, Any] | None) -> dict[str, Any]:
    """The evaluation settings a calculation pass reads from *config*."""
    cfg = _config(config)
    return {key: cfg[key] for key in _RATE_KEYS}


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------


class CalculateSummary(BaseModel):
    """Computed values of a calculated model, for display and JSON output."""

    scalars: dict[str, Any] = Field(default_factory=dict)
    tables: dict[str, dict[str, list[Any]]] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, model: Model) -> CalculateSummary:
        scalars: dict[str, Any] = {s.name: s.value for s in model.scalars.values()}
        tables: dict[str, dict[str, list[Any]]] = {}
        for table in model.tables.values():
            tables[table.name] = {c.name: c.values for c in table.columns.values()}
            for agg in table.aggregations.values():
                scalars[f"{table.name}.{agg.name}"] = agg.value
        return cls(scalars=scalars, tables=tables)


class Mismatch(BaseModel):
    identifier: str
    current: Any
    expected: Any
    diff: float | None = None


class ValidateResult(BaseModel):
    """Stored scalar values compared with freshly calculated ones.

    ``warnings`` holds unit findings; they do not affect ``valid``.
    """

    valid: bool
    tolerance: float
    checked: int
    mismatches: list[Mismatch] = Field(default_factory=list)
    warnings: list[UnitWarning] = Field(default_factory=list)


class AuditNode(BaseModel):
    """One identifier in a dependency tree.

    ``cycle`` marks a node already on the path from the root; its
    dependencies are not expanded again.
    """

    identifier: str
    kind: str
    formula: str | None = None
    value: Any = None
    cycle: bool = False
    dependencies: list[AuditNode] = Field(default_factory=list)


class AuditResult(BaseModel):
    root: AuditNode
    error: str | None = None


class CompareRow(BaseModel):
    identifier: str
    values: dict[str, Any]


class CompareResult(BaseModel):
    scenarios: list[str]
    rows: list[CompareRow] = Field(default_factory=list)


class VarianceRow(BaseModel):
    identifier: str
    budget: float
    actual: float
    variance: float
    variance_pct: float
    favorable: bool
    exceeds_threshold: bool

    @property
    def status(self) -> str:
        if self.exceeds_threshold:
            return "ALERT - Favorable" if self.favorable else "ALERT - Unfavorable"
        return "Favorable" if self.favorable else "Unfavorable"


class VarianceResult(BaseModel):
    threshold: float
    rows: list[VarianceRow] = Field(default_factory=list)

    @property
    def favorable_count(self) -> int:
        return sum(1 for r in self.rows if r.favorable)

    @property
    def unfavorable_count(self) -> int:
        return len(self.rows) - self.favorable_count

    @property
    def alert_count(self) -> int:
        return sum(1 for r in self.rows if r.exceeds_threshold)


VARIANCE_HEADER = ["Variable", "Budget", "Actual", "Variance", "Var %", "Status"]


def variance_sheet(result: VarianceResult, name: str = "Variance") -> Sheet:
    """Variance report as one sheet; ``Var %`` is a fraction (0.1 for 10%)."""
    rows: list[list[Any]] = [
        [r.identifier, r.budget, r.actual, r.variance, r.variance_pct / 100.0, r.status]
        for r in result.rows
    ]
    rows.extend([[], [], [f"Threshold: {result.threshold:g}%"]])
    return Sheet(name, VARIANCE_HEADER, rows)


def variance_report(result: VarianceResult) -> dict[str, Any]:
    """Variance report as a plain mapping for YAML output."""
    return {
        "metadata": {
            "threshold_pct": result.threshold,
            "total_items": len(result.rows),
            "favorable_count": result.favorable_count,
            "alert_count": result.alert_count,
        },
        "variances": {
            r.identifier: {
                "budget": r.budget,
                "actual": r.actual,
                "variance": r.variance,
                "variance_pct": round(r.variance_pct, 2),
                "is_favorable": r.favorable,
                "exceeds_threshold": r.exceeds_threshold,
            }
            for r in result.rows
        },
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def calculate(model: Model, scenario: str | None = None, config: dict[str, Any] | None = None) -> Model:
    """Calculated copy of *model*, optionally under scenario *scenario*."""
    if scenario:
        model = apply_scenario(model, scenario)
    return run_calculation(model, eval_options(config))


def _stored_values(model: Model) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for s in model.scalars.values():
        if s.is_formula:
            out[s.name] = s.value
    for t in model.tables.values():
        for a in t.aggregations.values():
            out[f"{t.name}.{a.name}"] = a.value
    return out


def validate(model: Model, tolerance: float | None = None, config: dict[str, Any] | None = None) -> ValidateResult:
    """Compare stored formula-scalar values with a fresh calculation.

    A formula scalar with no stored value is not checked.  Every formula
    is also checked for unit consistency.
    """
    cfg = _config(config)
    tol = float(cfg["validate_tolerance"] if tolerance is None else tolerance)
    calculated = run_calculation(model, eval_options(cfg))
    stored = _stored_values(model)
    fresh = _stored_values(calculated)

    mismatches: list[Mismatch] = []
    checked = 0
    for identifier, current in stored.items():
        if current is None:
            continue
        checked += 1
        expected = fresh.get(identifier)
        if is_number(current) and is_number(expected):
            diff = abs(float(current) - float(expected))
            if diff > tol:
                mismatches.append(Mismatch(identifier=identifier, current=current, expected=expected, diff=diff))
        elif current != expected:
            mismatches.append(Mismatch(identifier=identifier, current=current, expected=expected))

    warnings = check_units(model)
    result = ValidateResult(
        valid=not mismatches, tolerance=tol, checked=checked, mismatches=mismatches, warnings=warnings
    )
    for w in warnings:
        logger.warning("unit check: %s", w)
    source = model.source or "<model>"
    if result.valid:
        emit_info(
            EventType.validate_pass,
            f"All {checked} stored values match",
            {"model": source, "unit_warnings": len(warnings)},
        )
    else:
        emit_warning(
            EventType.validate_fail,
            f"{len(mismatches)} stored values differ from their formulas",
            {"model": source, "identifiers": [m.identifier for m in mismatches], "unit_warnings": len(warnings)},
        )
    return result


def audit(model: Model, identifier: str, config: dict[str, Any] | None = None) -> AuditResult:
    """Dependency tree of *identifier* with calculated values.

    The tree is built from the static dependency graph, so it is available
    even when calculation fails (a cycle, say); values are then omitted and
    the failure is reported in ``error``.

    Raises:
        UnknownReferenceError: *identifier* names nothing in the model.
    """
    graph = build_graph(model.copy())
    target = Namespace(model).locate(identifier)
    if target is None:
        raise UnknownReferenceError(identifier)

    calc = Calculator(model, eval_options(config))
    error: str | None = None
    try:
        calc.run()
    except TabcalcError as exc:
        error = str(exc)
    values = calc.values if error is None else {}

    def node(key: str, path: set[str]) -> AuditNode:
        gnode = graph.nodes[key]
        out = AuditNode(
            identifier=key,
            kind=gnode.kind,
            formula=gnode.formula,
            value=values.get(key),
        )
        if key in path:
            out.cycle = True
            return out
        inner = path | {key}
        out.dependencies = [node(dep, inner) for dep in sorted(graph.dependencies[key])]
        return out

    return AuditResult(root=node(target.key, set()), error=error)


def export(model: Model, config: dict[str, Any] | None = None) -> list[Sheet]:
    """Lay *model* out as spreadsheet sheets."""
    return export_model(model, _config(config)["scalars_sheet"])


def import_(sheets: list[Sheet], config: dict[str, Any] | None = None) -> Model:
    """Rebuild a model from spreadsheet sheets."""
    return import_sheets(sheets, _config(config)["scalars_sheet"])


def compare(
    model: Model,
    scenarios: list[str] | None = None,
    identifiers: list[str] | None = None,
    config: dict[str, Any] | None = None,
) -> CompareResult:
    """Calculate *model* under each scenario and tabulate the results.

    Args:
        scenarios: Scenario names; all declared scenarios when omitted.
        identifiers: Outputs to tabulate; every numeric scalar and table
            aggregation when omitted.

    Raises:
        ModelError: No scenarios, or an unknown scenario name.
    """
    names = list(scenarios) if scenarios else list(model.scenarios)
    if not names:
        raise ModelError("Model defines no scenarios to compare")
    options = eval_options(config)
    results = {name: run_calculation(apply_scenario(model, name), options) for name in names}

    if identifiers:
        wanted = list(identifiers)
    else:
        wanted = []
        for calculated in results.values():
            for key in numeric_scalars(calculated):
                if key not in wanted:
                    wanted.append(key)

    rows = []
    for ident in wanted:
        row = {}
        for name, calculated in results.items():
            try:
                row[name] = lookup_value(calculated, ident)
            except TabcalcError:
                row[name] = None
        rows.append(CompareRow(identifier=ident, values=row))
    return CompareResult(scenarios=names, rows=rows)


def variance(
    budget: Model,
    actual: Model,
    threshold: float | None = None,
    config: dict[str, Any] | None = None,
) -> VarianceResult:
    """Budget-vs-actual variance for every numeric scalar of either model.

    Variance is ``actual - budget``; the percentage is relative to the
    budget and 0 when the budget is (near) zero.  Lower is favourable for
    cost-like names (``expense``, ``cost``, ``cogs``), higher otherwise.
    """
    cfg = _config(config)
    limit = float(cfg["variance_threshold"] if threshold is None else threshold)
    options = eval_options(cfg)
    b = numeric_scalars(run_calculation(budget, options))
    a = numeric_scalars(run_calculation(actual, options))

    rows = []
    for name in sorted(set(b) | set(a)):
        bv, av = b.get(name, 0.0), a.get(name, 0.0)
        diff = av - bv
        pct = diff / bv * 100.0 if abs(bv) > 1e-4 else 0.0
        favorable = av <= bv if _COST_LIKE_RE.search(name) else av >= bv
        rows.append(VarianceRow(
            identifier=name,
            budget=bv,
            actual=av,
            variance=diff,
            variance_pct=pct,
            favorable=favorable,
            exceeds_threshold=abs(pct) >= limit,
        ))
    return VarianceResult(threshold=limit, rows=rows)


def sensitivity(
    model: Model,
    output: str,
    vary: str,
    values: list[float] | str,
    vary2: str | None = None,
    values2: list[float] | str | None = None,
    config: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> SensitivityResult:
    """Tabulate *output* over a range of one or two input scalars."""
    try:
        return solve_sensitivity(
            model, output, vary, values, vary2, values2, options=eval_options(config), cancel=cancel
        )
    except ValueError as exc:
        raise ModelError(str(exc)) from exc


def goal_seek(
    model: Model,
    output: str,
    vary: str,
    target: float = 0.0,
    lower: float | None = None,
    upper: float | None = None,
    tolerance: float | None = None,
    config: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> GoalSeekResult:
    """Find the value of *vary* that makes *output* equal *target*."""
    cfg = _config(config)
    return solve_goal_seek(
        model,
        output,
        vary,
        target,
        lower=lower,
        upper=upper,
        tolerance=float(cfg["goal_seek_tolerance"] if tolerance is None else tolerance),
        max_iterations=int(cfg["goal_seek_max_iterations"]),
        options=eval_options(cfg),
        cancel=cancel,
    )


def break_even(
    model: Model,
    output: str,
    vary: str,
    lower: float | None = None,
    upper: float | None = None,
    config: dict[str, Any] | None = None,
    cancel: CancelCheck | None = None,
) -> GoalSeekResult:
    """Find the value of *vary* that makes *output* zero."""
    cfg = _config(config)
    return solve_break_even(
        model,
        output,
        vary,
        lower=lower,
        upper=upper,
        tolerance=float(cfg["goal_seek_tolerance"]),
        max_iterations=int(cfg["goal_seek_max_iterations"]),
        options=eval_options(cfg),
        cancel=cancel,
    )


def init(target_dir: Path) -> Path:
    """Scaffold a demo project in *target_dir*; returns the model path."""
    model_path = scaffold_project(target_dir)
    logger.debug("scaffolded %s", model_path)
    return model_path
