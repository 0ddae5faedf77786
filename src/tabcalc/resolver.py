"""Identifier resolution for one calculation pass.

Static side: a :class:`Namespace` binds one model under an alias prefix
and maps an identifier, as written in a formula, to the :class:`Target`
that produces it.  Lookup order:

1. a column or aggregation of the current table (row context only);
2. a scalar of the same file, exact or within the caller's section;
3. ``table.column`` or ``table.aggregation`` of the same file;
4. ``alias.rest`` through a declared include.

Runtime side: :class:`ScalarResolver` computes and memoizes values by
graph key, guarding against re-entry so a cycle is reported instead of
recursing forever.  :class:`RowScope` and :class:`ScalarScope` adapt it
to the evaluator's ``Scope`` protocol.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterator

from tabcalc.errors import (
    CycleError,
    IncludeCycleError,
    RowErrors,
    TabcalcError,
    UnknownReferenceError,
)
from tabcalc.formulas.errors import ENGINE_ERRORS, FormulaError, FormulaRefError, FormulaTypeError
from tabcalc.formulas.evaluator import evaluate
from tabcalc.model import Model, Table

if TYPE_CHECKING:
    from tabcalc.graph import DependencyGraph, GraphNode

logger = logging.getLogger(__name__)

COLUMN = "column"
AGGREGATION = "aggregation"
SCALAR = "scalar"


class Target:
    """What an identifier refers to.

    Attributes:
        kind: ``"column"``, ``"aggregation"`` or ``"scalar"``.
        namespace: Namespace owning the producer.
        table: Owning table for columns and aggregations.
        name: Column, aggregation or scalar name within its owner.
        key: Flat graph key (``alias.table.column``, ``alias.scalar``, ...).
    """

    __slots__ = ("kind", "namespace", "table", "name", "key")

    def __init__(self, kind: str, namespace: Namespace, table: Table | None, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.table = table
        self.name = name
        local = f"{table.name}.{name}" if table is not None else name
        self.key = namespace.prefix + local

    @property
    def row_count(self) -> int:
        return self.table.row_count if self.table is not None else 0

    def __repr__(self) -> str:
        return f"Target({self.kind}, {self.key!r})"


class Namespace:
    """One model bound under an alias prefix (``""`` for the root)."""

    def __init__(self, model: Model, prefix: str = "", parent: Namespace | None = None) -> None:
        self.model = model
        self.prefix = prefix
        self.parent = parent
        self._children: dict[str, Namespace] = {}
        self._cache: dict[tuple[str, str | None, str | None], Target | None] = {}

    def child(self, alias: str) -> Namespace | None:
        """Namespace of include *alias*, or ``None`` if not declared."""
        if alias in self._children:
            return self._children[alias]
        inc = self.model.include(alias)
        if inc is None or inc.model is None:
            return None
        ns = Namespace(inc.model, f"{self.prefix}{alias}.", self)
        self._children[alias] = ns
        return ns

    def walk(self) -> Iterator[Namespace]:
        """This namespace, then every reachable include, depth first.

        Raises:
            IncludeCycleError: If a model includes itself transitively.
        """
        chain: list[Model] = []

        def visit(ns: Namespace) -> Iterator[Namespace]:
            if any(m is ns.model for m in chain):
                names = [m.source or "<model>" for m in chain] + [ns.model.source or "<model>"]
                raise IncludeCycleError(names)
            chain.append(ns.model)
            yield ns
            for inc in ns.model.includes:
                sub = ns.child(inc.alias)
                if sub is not None:
                    yield from visit(sub)
            chain.pop()

        yield from visit(self)

    def locate(self, name: str, table: Table | None = None, section: str | None = None) -> Target | None:
        """Resolve *name* as written in a formula; ``None`` if nothing matches.

        Args:
            name: Identifier, possibly dotted.
            table: Current table for row context and table aggregations.
            section: Section of the scalar whose formula is being resolved.
        """
        cache_key = (name, table.name if table is not None else None, section)
        if cache_key not in self._cache:
            self._cache[cache_key] = self._locate(name, table, section)
        return self._cache[cache_key]

    def _locate(self, name: str, table: Table | None, section: str | None) -> Target | None:
        model = self.model
        if table is not None:
            if name in table.columns:
                return Target(COLUMN, self, table, name)
            if name in table.aggregations:
                return Target(AGGREGATION, self, table, name)

        if name in model.scalars:
            return Target(SCALAR, self, None, name)
        if section is not None and f"{section}.{name}" in model.scalars:
            return Target(SCALAR, self, None, f"{section}.{name}")

        head, _, rest = name.partition(".")
        if not rest:
            return None
        owner = model.tables.get(head)
        if owner is not None:
            if rest in owner.columns:
                return Target(COLUMN, self, owner, rest)
            if rest in owner.aggregations:
                return Target(AGGREGATION, self, owner, rest)
            return None
        sub = self.child(head)
        if sub is not None:
            return sub.locate(rest)
        return None

    def __repr__(self) -> str:
        return f"Namespace({self.prefix!r}, {self.model!r})"


# ---------------------------------------------------------------------------
# Runtime resolution
# ---------------------------------------------------------------------------


class ScalarResolver:
    """Computes graph nodes on demand, memoized for one pass.

    Values are keyed by graph key: a list for columns, a single value for
    scalars and aggregations.
    """

    def __init__(self, graph: DependencyGraph, options: dict[str, Any] | None = None) -> None:
        self.graph = graph
        self.options = options or {}
        self.values: dict[str, Any] = {}
        self._in_progress: list[str] = []

    def resolve(self, target: Target) -> Any:
        return self.resolve_key(target.key)

    def resolve_key(self, key: str) -> Any:
        """Value of graph node *key*, computing it (and its inputs) if needed.

        Raises:
            CycleError: If *key* is reached again while being computed.
            RowErrors: If a formula column has per-row errors.
        """
        if key in self.values:
            return self.values[key]
        if key in self._in_progress:
            start = self._in_progress.index(key)
            path = self._in_progress[start:] + [key]
            raise CycleError(self._in_progress[start:], path)

        node = self.graph.nodes[key]
        self._in_progress.append(key)
        try:
            if node.formula is None:
                value = self._literal(node)
            elif node.kind == COLUMN:
                value = self._compute_column(node)
            else:
                value = self._compute_scalar(node)
        finally:
            self._in_progress.pop()
        self.values[key] = value
        return value

    def column_values(self, target: Target) -> list[Any]:
        return self.resolve(target)

    @staticmethod
    def _literal(node: GraphNode) -> Any:
        if node.kind == COLUMN:
            return node.owning_table().columns[node.name].values
        return node.value_holder().value

    def _compute_scalar(self, node: GraphNode) -> Any:
        scope = ScalarScope(self, node.namespace, node.table, node.section)
        try:
            value = evaluate(node.tree, scope, options=self.options)
        except TabcalcError as exc:
            exc.attach(node.key, node.formula)
            raise
        except (ArithmeticError, ValueError) as exc:
            logger.debug("%s failed: %s", node.key, exc)
            raise FormulaError(str(exc)).attach(node.key, node.formula) from exc
        if isinstance(value, list):
            raise FormulaTypeError(
                "formula yields a column where a single value is expected"
            ).attach(node.key, node.formula)
        return value

    def _compute_column(self, node: GraphNode) -> list[Any]:
        table = node.owning_table()
        rows = table.row_count
        values: list[Any] = []
        errors: list[tuple[int, str]] = []
        for i in range(rows):
            scope = RowScope(self, node.namespace, table, i)
            try:
                value = evaluate(node.tree, scope, options=self.options)
                if isinstance(value, list):
                    raise FormulaTypeError("row formula yields a column, not a value")
            except ENGINE_ERRORS as exc:
                errors.append((i, str(exc)))
                value = None
            values.append(value)
        if errors:
            raise RowErrors(node.key, node.formula, errors)
        return values


class _ModelScope:
    """Evaluator scope over a namespace, backed by a :class:`ScalarResolver`."""

    row: int | None = None

    def __init__(
        self,
        resolver: ScalarResolver,
        namespace: Namespace,
        table: Table | None = None,
        section: str | None = None,
    ) -> None:
        self.resolver = resolver
        self.namespace = namespace
        self.table = table
        self.section = section

    def _target(self, name: str) -> Target:
        target = self.namespace.locate(name, self.table, self.section)
        if target is None:
            raise UnknownReferenceError(name)
        return target

    def resolve(self, name: str, array: bool) -> Any:
        target = self._target(name)
        if target.kind != COLUMN:
            return self.resolver.resolve(target)
        values = self.resolver.column_values(target)
        if array:
            return values
        if self.row is None:
            raise FormulaTypeError(
                f"{name!r} is a column; read it inside a function that takes whole columns "
                f"or index it with {name}[i]"
            )
        if self.row >= len(values):
            raise FormulaRefError(f"{name}[{self.row}]")
        return values[self.row]

    def resolve_index(self, name: str, index: int) -> Any:
        target = self._target(name)
        if target.kind != COLUMN:
            raise FormulaTypeError(f"{name!r} is not a column and cannot be indexed")
        values = self.resolver.column_values(target)
        if index < 0 or index >= len(values):
            raise FormulaRefError(f"{name}[{index}]")
        return values[index]


class RowScope(_ModelScope):
    """Scope for one row of a table: bare columns yield that row's element."""

    def __init__(self, resolver: ScalarResolver, namespace: Namespace, table: Table, row: int) -> None:
        super().__init__(resolver, namespace, table)
        self.row = row


class ScalarScope(_ModelScope):
    """Scope for scalars and table aggregations: columns only as whole ranges."""
