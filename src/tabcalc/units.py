"""Unit consistency checks over formulas.

Units come from the ``unit`` metadata of columns, scalars and
aggregations.  Each is sorted into a category: a currency (``CAD``,
``USD``, ``$``, ...), percentage, count, a time unit, a dimensionless ratio,
or unknown.  Formulas are walked over their parse trees, so the unit of
an undeclared formula entry is inferred from what it reads:

- ``a + b`` / ``a - b`` need compatible units and keep that unit;
- multiplying by a percentage, ratio or count keeps the other operand's
  unit (``qty * price`` is a currency);
- dividing two values of one unit gives a ratio;
- ``SUM``, ``AVERAGE``, ``ROUND`` and similar keep their first argument's
  unit, ``COUNT`` and friends give a count, ``IRR`` and friends a
  percentage.

An unknown unit is compatible with everything.  Findings are warnings:
they never stop a calculation.
"""

from __future__ import annotations

import logging
from enum import Enum

from lark import Tree
from pydantic import BaseModel, ConfigDict

from tabcalc.graph import DependencyGraph, GraphNode, build_graph
from tabcalc.model import Model
from tabcalc.resolver import COLUMN

logger = logging.getLogger(__name__)


class UnitCategory(str, Enum):
    currency = "currency"
    percentage = "percentage"
    count = "count"
    time = "time"
    ratio = "ratio"
    unknown = "unknown"


_ALIASES: dict[str, tuple[UnitCategory, str]] = {}
for _names, _category, _display in (
    (("%", "percent", "percentage"), UnitCategory.percentage, "%"),
    (("count", "units", "items", "qty", "quantity"), UnitCategory.count, "count"),
    (("days", "day", "d"), UnitCategory.time, "days"),
    (("months", "month", "mo"), UnitCategory.time, "months"),
    (("years", "year", "yr"), UnitCategory.time, "years"),
    (("hours", "hour", "hr"), UnitCategory.time, "hours"),
    (("ratio", "factor", "multiplier", "x"), UnitCategory.ratio, "ratio"),
):
    for _name in _names:
        _ALIASES[_name] = (_category, _display)

CURRENCIES = frozenset({"cad", "usd", "eur", "gbp", "jpy", "cny", "$"})


class Unit(BaseModel):
    """A unit category plus its display name (``CAD``, ``months``, ...)."""

    model_config = ConfigDict(frozen=True)

    category: UnitCategory
    name: str

    def __str__(self) -> str:
        return self.name


def parse_unit(text: str) -> Unit:
    """Classify a ``unit`` metadata string; case is ignored."""
    key = text.strip().lower()
    if key in CURRENCIES:
        return Unit(category=UnitCategory.currency, name=text.strip().upper())
    if key in _ALIASES:
        category, display = _ALIASES[key]
        return Unit(category=category, name=display)
    return Unit(category=UnitCategory.unknown, name=text.strip())


RATIO = Unit(category=UnitCategory.ratio, name="ratio")
PERCENTAGE = Unit(category=UnitCategory.percentage, name="%")
COUNT = Unit(category=UnitCategory.count, name="count")

_SCALING = frozenset({UnitCategory.percentage, UnitCategory.ratio})
_SAME_KIND = frozenset({UnitCategory.count, UnitCategory.ratio, UnitCategory.percentage})


def can_add(a: Unit, b: Unit) -> bool:
    """Whether values in units *a* and *b* may be added or subtracted."""
    if UnitCategory.unknown in (a.category, b.category):
        return True
    if a.category != b.category:
        return False
    if a.category in _SAME_KIND:
        return True
    # Currencies and time units must match exactly
    return a.name == b.name


class UnitWarning(BaseModel):
    """One unit finding for a formula entry."""

    location: str
    formula: str
    message: str
    severity: str = "warning"

    def __str__(self) -> str:
        return f"{self.location}: {self.message} ({self.formula})"


# Functions whose result carries the unit of one argument (by position)
_CARRY_ARG: dict[str, int] = {
    name: 0
    for name in (
        "SUM", "AVERAGE", "AVG", "MIN", "MAX", "MEDIAN", "PERCENTILE", "QUARTILE",
        "STDEV", "STDEV.S", "STDEV.P", "ABS", "ROUND", "ROUNDUP", "ROUNDDOWN",
        "CEILING", "FLOOR", "INT", "INDEX", "SLN", "MAXIFS", "MINIFS",
    )
}
_CARRY_ARG.update({"NPV": 1, "PV": 2, "FV": 2, "PMT": 2, "XLOOKUP": 2, "SUMIF": 2, "AVERAGEIF": 2})
# Result is whichever branch has a unit
_BRANCHES: dict[str, tuple[int, ...]] = {"IF": (1, 2), "IFERROR": (0, 1)}
_COUNTING = frozenset({"COUNT", "COUNTA", "COUNTIF", "COUNTIFS"})
_RATES = frozenset({"IRR", "XIRR", "MIRR", "RATE"})


class UnitValidator:
    """Infers formula units across a model and its includes.

    Args:
        model: The model to check; it must build a dependency graph.
    """

    def __init__(self, model: Model, graph: DependencyGraph | None = None) -> None:
        self.graph = graph or build_graph(model)
        self.declared: dict[str, Unit] = {}
        for key, node in self.graph.nodes.items():
            unit = _metadata_unit(node)
            if unit:
                self.declared[key] = parse_unit(unit)
        self._inferred: dict[str, Unit | None] = {}
        self._warnings: dict[str, UnitWarning] = {}

    def validate(self) -> list[UnitWarning]:
        """At most one warning per formula entry, in declaration order."""
        for node in self.graph.formula_nodes():
            self._formula_unit(node)
        warnings = [self._warnings[key] for key in self.graph.nodes if key in self._warnings]
        logger.debug("unit check: %d warnings", len(warnings))
        return warnings

    def unit_of(self, key: str) -> Unit | None:
        """Declared unit of *key*, else the unit inferred from its formula."""
        if key in self.declared:
            return self.declared[key]
        node = self.graph.nodes.get(key)
        if node is None or node.formula is None:
            return None
        return self._formula_unit(node)

    def _formula_unit(self, node: GraphNode) -> Unit | None:
        if node.key in self._inferred:
            return self._inferred[node.key]
        # Placeholder guards against cycles
        self._inferred[node.key] = None
        if node.tree is None:
            return None
        found: list[str] = []
        unit = self._walk(node.tree, node, found)
        declared = self.declared.get(node.key)
        if (
            not found
            and declared is not None
            and unit is not None
            and not can_add(declared, unit)
            and not {declared.category, unit.category} <= _SCALING
        ):
            found.append(f"Declared unit {declared} but the formula gives {unit}")
        if found:
            self._warnings[node.key] = UnitWarning(location=node.key, formula=node.formula or "", message=found[0])
        self._inferred[node.key] = unit
        return unit

    def _walk(self, tree: Tree, node: GraphNode, found: list[str]) -> Unit | None:
        rule = tree.data
        if rule in ("ref", "index_ref"):
            if rule == "index_ref":
                self._walk_child(tree.children[1], node, found)
            target = node.namespace.locate(str(tree.children[0]), node.table, node.section)
            return self.unit_of(target.key) if target is not None else None
        if rule == "func_call":
            return self._call(tree, node, found)

        units = [self._walk_child(c, node, found) for c in tree.children]
        if rule in ("add", "sub"):
            a, b = units
            if a is not None and b is not None and not can_add(a, b):
                found.append(_mismatch(rule, a, b))
            return a if a is not None else b
        if rule == "mul":
            a, b = units
            if a is None or a.category in _SCALING or a.category is UnitCategory.count:
                return b if b is not None else a
            return a
        if rule == "div":
            a, b = units
            if a is not None and b is not None and a.category is not UnitCategory.unknown and a == b:
                return RATIO
            if b is None or b.category in _SCALING:
                return a
            return None
        if rule in ("start", "neg", "pos", "percent"):
            return units[0]
        return None

    def _walk_child(self, child: object, node: GraphNode, found: list[str]) -> Unit | None:
        return self._walk(child, node, found) if isinstance(child, Tree) else None

    def _call(self, tree: Tree, node: GraphNode, found: list[str]) -> Unit | None:
        name = str(tree.children[0]).upper()
        args_node = tree.children[1] if len(tree.children) > 1 else None
        args = args_node.children if isinstance(args_node, Tree) else []
        units = [self._walk_child(a, node, found) for a in args]
        if name in _COUNTING:
            return COUNT
        if name in _RATES:
            return PERCENTAGE
        if name in _BRANCHES:
            for i in _BRANCHES[name]:
                if i < len(units) and units[i] is not None:
                    return units[i]
            return None
        if name == "CHOOSE":
            return next((u for u in units[1:] if u is not None), None)
        index = _CARRY_ARG.get(name)
        if index is not None and index < len(units):
            return units[index]
        return None


def _metadata_unit(node: GraphNode) -> str | None:
    if node.kind == COLUMN:
        return node.owning_table().columns[node.name].metadata.unit
    return node.value_holder().metadata.unit


def _mismatch(rule: str, a: Unit, b: Unit) -> str:
    if rule == "add" and {a.category, b.category} == {UnitCategory.percentage, UnitCategory.currency}:
        return "Adding percentage to currency - did you mean to multiply?"
    return f"Mixing incompatible units in addition/subtraction: {a} and {b}"


def check_units(model: Model, graph: DependencyGraph | None = None) -> list[UnitWarning]:
    """Unit warnings for every formula of *model* and its includes."""
    return UnitValidator(model, graph).validate()
