"""Calculation pass: the central unit of computation in tabcalc.

A pass copies the model, builds the dependency graph over it and every
included model, orders the graph, evaluates each node once and writes the
results back into the copy.  The input model is never mutated, and
nothing is written back unless every node evaluated cleanly.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from tabcalc.errors import CycleError, ModelError, RowErrors, TabcalcError, UnknownReferenceError
from tabcalc.graph import DependencyGraph, build_graph
from tabcalc.logging.events import (
    EventLevel,
    EventType,
    emit,
    error_code_for,
    make_calc_event,
)
from tabcalc.model import Model
from tabcalc.resolver import AGGREGATION, COLUMN, Namespace, ScalarResolver
from tabcalc.values import infer_column_type

logger = logging.getLogger(__name__)

_INDEXED_RE = re.compile(r"^(?P<name>[^\[\]]+)\[(?P<index>-?\d+)\]$")


def new_run_id() -> str:
    """Sortable, unique identifier for one calculation pass."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}_{uuid.uuid4().hex[:6]}"


class Calculator:
    """Runs one calculation pass over a model.

    Usage::

        calc = Calculator(model)
        result = calc.run()
        print(result.scalars["total_profit"].value)

    Attributes:
        model: The input model (left untouched).
        options: Evaluation settings (``rate_guess``, ``rate_tolerance``, ...).
        graph: Dependency graph of the last pass.
        order: Evaluation order of the last pass.
        values: Computed values by graph key.
        timings_ms: Phase timings of the last pass.
    """

    def __init__(
        self,
        model: Model,
        options: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.model = model
        self.options = dict(options or {})
        self.run_id = run_id or new_run_id()
        self.graph: DependencyGraph | None = None
        self.order: list[str] = []
        self.values: dict[str, Any] = {}
        self.timings_ms: dict[str, float] = {}

    def run(self) -> Model:
        """Evaluate every formula and return the calculated copy.

        Raises:
            ModelError: Structural problems (unknown references, cycles,
                include cycles, malformed tables).
            RowErrors: A formula column failed on one or more rows.
            TabcalcError: Any other evaluation failure, attributed to the
                identifier whose formula failed.
        """
        source = self.model.source or "<model>"
        emit(make_calc_event(
            EventType.calc_started,
            EventLevel.info,
            "Calculation started",
            run_id=self.run_id,
            model=source,
        ), run_id=self.run_id)

        try:
            t0 = time.monotonic()
            result = self.model.copy()
            self.graph = build_graph(result)
            self.timings_ms["build_graph"] = round((time.monotonic() - t0) * 1000, 2)

            t0 = time.monotonic()
            self.order = self.graph.topological_order()
            self.timings_ms["order"] = round((time.monotonic() - t0) * 1000, 2)

            t0 = time.monotonic()
            resolver = ScalarResolver(self.graph, self.options)
            for key in self.order:
                resolver.resolve_key(key)
            self.values = resolver.values
            self.timings_ms["evaluate"] = round((time.monotonic() - t0) * 1000, 2)

            self._write_back(self.graph, self.values)
        except RowErrors as exc:
            emit(make_calc_event(
                EventType.calc_row_errors,
                EventLevel.error,
                str(exc),
                run_id=self.run_id,
                model=source,
                error_code=error_code_for(exc),
                extra={
                    "identifier": exc.identifier,
                    "formula": exc.formula,
                    "rows": [row for row, _ in exc.errors],
                },
            ), run_id=self.run_id)
            self._failed(source, exc)
            raise
        except TabcalcError as exc:
            self._failed(source, exc)
            raise

        emit(make_calc_event(
            EventType.calc_completed,
            EventLevel.info,
            f"Calculation completed: {len(self.graph.formula_nodes())} formulas",
            run_id=self.run_id,
            model=source,
            extra={"timings_ms": self.timings_ms, "nodes": len(self.order)},
        ), run_id=self.run_id)
        logger.debug("calculated %s in %s", source, self.timings_ms)
        return result

    def _failed(self, source: str, exc: TabcalcError) -> None:
        extra: dict[str, Any] = {"error": str(exc)}
        if exc.identifier:
            extra["identifier"] = exc.identifier
        if isinstance(exc, CycleError):
            extra["members"] = exc.members
        emit(make_calc_event(
            EventType.calc_failed,
            EventLevel.error,
            f"Calculation failed: {exc}",
            run_id=self.run_id,
            model=source,
            error_code=error_code_for(exc),
            extra=extra,
        ), run_id=self.run_id)

    @staticmethod
    def _write_back(graph: DependencyGraph, values: dict[str, Any]) -> None:
        # Check every column type before touching the model
        typed = {}
        for node in graph.formula_nodes():
            if node.kind == COLUMN:
                try:
                    typed[node.key] = infer_column_type(node.key, values[node.key])
                except TabcalcError as exc:
                    exc.attach(node.key, node.formula)
                    raise

        for node in graph.formula_nodes():
            value = values[node.key]
            if node.kind == COLUMN:
                node.owning_table().columns[node.name].set_values(value, typed[node.key])
            else:
                node.value_holder().value = value


def calculate(model: Model, options: dict[str, Any] | None = None) -> Model:
    """Run one calculation pass and return the calculated copy of *model*."""
    return Calculator(model, options).run()


def lookup_value(model: Model, identifier: str) -> Any:
    """Read the stored value of *identifier* from a (calculated) model.

    Accepts scalar names (``tax_rate``, ``assumptions.tax_rate``),
    ``table.aggregation``, ``table.column`` (whole column as a list),
    ``table.column[index]`` and ``alias.``-prefixed forms of all of these.

    Raises:
        UnknownReferenceError: *identifier* names nothing in the model.
        ModelError: The index is out of range, or a non-column is indexed.
    """
    index: int | None = None
    match = _INDEXED_RE.match(identifier.strip())
    name = identifier.strip()
    if match:
        name, index = match.group("name"), int(match.group("index"))

    target = Namespace(model).locate(name)
    if target is None:
        raise UnknownReferenceError(name)

    table = target.table
    if target.kind == COLUMN and table is not None:
        values = table.columns[target.name].values
        if index is None:
            return values
        if not 0 <= index < len(values):
            raise ModelError(f"{identifier!r}: index out of range (column has {len(values)} rows)")
        return values[index]

    if index is not None:
        raise ModelError(f"{identifier!r}: {name!r} is not a column and cannot be indexed")
    if target.kind == AGGREGATION and table is not None:
        return table.aggregations[target.name].value
    return target.namespace.model.scalars[target.name].value
