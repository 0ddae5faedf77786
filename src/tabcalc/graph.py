"""Dependency graph over every identifier of a model and its includes.

Nodes are keyed by flat identifier: ``table.column``, ``table.aggregation``
and ``scalar`` in the root model, prefixed with ``alias.`` for included
models.  Edges point from consumer to producer.
"""

from __future__ import annotations

import heapq
import logging
from typing import Callable, Iterable

from lark import Tree

from tabcalc.errors import CycleError, ModelError, TabcalcError, UnknownReferenceError
from tabcalc.formulas.functions import check_functions
from tabcalc.formulas.parser import iter_ref_uses, parse_formula
from tabcalc.model import Model, Scalar, Table
from tabcalc.resolver import AGGREGATION, COLUMN, SCALAR, Namespace

logger = logging.getLogger(__name__)


def topological_sort(
    nodes: Iterable[str],
    edges: dict[str, set[str]],
    on_cycle: Callable[[list[str], list[str]], Exception] = CycleError,
) -> list[str]:
    """Order *nodes* so every node comes after the nodes it depends on.

    Kahn's algorithm; ties are broken by position in *nodes*, so the
    result is deterministic.

    Args:
        nodes: Node keys in declaration order.
        edges: ``node -> dependencies``.  Dependencies outside *nodes*
            are ignored.
        on_cycle: Builds the exception for ``(members, path)``.

    Raises:
        Whatever *on_cycle* returns, naming every node on a cycle.
    """
    order_index = {key: i for i, key in enumerate(nodes)}
    in_degree: dict[str, int] = {}
    dependents: dict[str, list[str]] = {key: [] for key in order_index}
    for key in order_index:
        deps = {d for d in edges.get(key, ()) if d in order_index}
        in_degree[key] = len(deps)
        for dep in deps:
            dependents[dep].append(key)

    heap = [order_index[key] for key, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)
    keys = list(order_index)
    order: list[str] = []
    while heap:
        key = keys[heapq.heappop(heap)]
        order.append(key)
        for consumer in dependents[key]:
            in_degree[consumer] -= 1
            if in_degree[consumer] == 0:
                heapq.heappush(heap, order_index[consumer])

    if len(order) != len(keys):
        done = set(order)
        leftover = [key for key in keys if key not in done]
        members, path = find_cycles(leftover, edges)
        raise on_cycle(members, path)
    return order


def find_cycles(nodes: list[str], edges: dict[str, set[str]]) -> tuple[list[str], list[str]]:
    """Cycle members among *nodes* plus one concrete cycle path.

    Members are the nodes of every strongly connected component that
    contains a cycle (a self-edge counts).  Nodes that merely depend on a
    cycle are left out.
    """
    position = {key: i for i, key in enumerate(nodes)}

    def succ(key: str) -> list[str]:
        return sorted((d for d in edges.get(key, ()) if d in position), key=position.__getitem__)

    # Kosaraju, first pass: finish order
    visited: set[str] = set()
    finished: list[str] = []
    for root in nodes:
        if root in visited:
            continue
        visited.add(root)
        stack = [(root, iter(succ(root)))]
        while stack:
            key, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                stack.pop()
                finished.append(key)
            elif nxt not in visited:
                visited.add(nxt)
                stack.append((nxt, iter(succ(nxt))))

    # Second pass on the reversed graph
    reverse: dict[str, list[str]] = {key: [] for key in nodes}
    for key in nodes:
        for dep in succ(key):
            reverse[dep].append(key)
    assigned: set[str] = set()
    components: list[list[str]] = []
    for root in reversed(finished):
        if root in assigned:
            continue
        component = []
        stack = [root]
        assigned.add(root)
        while stack:
            key = stack.pop()
            component.append(key)
            for prev in reverse[key]:
                if prev not in assigned:
                    assigned.add(prev)
                    stack.append(prev)
        components.append(component)

    cyclic = [
        c for c in components
        if len(c) > 1 or c[0] in edges.get(c[0], ())
    ]
    members = sorted(key for c in cyclic for key in c)
    if not cyclic:
        return members, []

    # One concrete cycle: BFS inside the first component back to its start
    first = min(cyclic, key=lambda c: min(position[k] for k in c))
    inside = set(first)
    start = min(first, key=position.__getitem__)
    parents: dict[str, str] = {}
    frontier = [start]
    seen = {start}
    while frontier:
        nxt_frontier = []
        for key in frontier:
            for dep in succ(key):
                if dep not in inside:
                    continue
                if dep == start:
                    chain = [key]
                    while chain[-1] != start:
                        chain.append(parents[chain[-1]])
                    return members, chain[::-1] + [start]
                if dep not in seen:
                    seen.add(dep)
                    parents[dep] = key
                    nxt_frontier.append(dep)
        frontier = nxt_frontier
    return members, []


class GraphNode:
    """One identifier of the model: a column, a table aggregation or a scalar.

    Attributes:
        key: Flat graph key.
        kind: ``"column"``, ``"aggregation"`` or ``"scalar"``.
        namespace: Namespace of the owning model.
        table: Owning table (columns and aggregations).
        name: Name within the owner.
        formula: Formula text, ``None`` for literal data.
        scalar: The model's :class:`Scalar` for scalars and aggregations.
        tree: Parse tree, set once the node's formula is linked.
    """

    __slots__ = ("key", "kind", "namespace", "table", "name", "formula", "scalar", "tree")

    def __init__(
        self,
        kind: str,
        namespace: Namespace,
        table: Table | None,
        name: str,
        formula: str | None = None,
        scalar: Scalar | None = None,
    ) -> None:
        self.kind = kind
        self.namespace = namespace
        self.table = table
        self.name = name
        self.formula = formula
        self.scalar = scalar
        self.tree: Tree | None = None
        local = f"{table.name}.{name}" if table is not None else name
        self.key = namespace.prefix + local

    @property
    def section(self) -> str | None:
        """Section of a section-declared scalar, for bare sibling references."""
        if self.kind == SCALAR and self.scalar is not None:
            return self.scalar.section
        return None

    def owning_table(self) -> Table:
        if self.table is None:
            raise ModelError(f"{self.key!r} does not belong to a table")
        return self.table

    def value_holder(self) -> Scalar:
        """The scalar or aggregation record that stores this node's value."""
        if self.scalar is None:
            raise ModelError(f"{self.key!r} is not a scalar or aggregation")
        return self.scalar

    def __repr__(self) -> str:
        return f"GraphNode({self.kind}, {self.key!r})"


class DependencyGraph:
    """Node arena plus consumer -> producer adjacency sets."""

    def __init__(self, root: Namespace | None = None) -> None:
        self.root = root
        self.nodes: dict[str, GraphNode] = {}
        # key -> keys it reads from
        self.dependencies: dict[str, set[str]] = {}
        # key -> keys that read from it (reverse edges)
        self.dependents: dict[str, set[str]] = {}

    def add_node(self, node: GraphNode) -> GraphNode:
        if node.key in self.nodes:
            raise ModelError(f"Identifier {node.key!r} is defined twice")
        self.nodes[node.key] = node
        self.dependencies[node.key] = set()
        self.dependents[node.key] = set()
        return node

    def add_edge(self, consumer: str, producer: str) -> None:
        self.dependencies[consumer].add(producer)
        self.dependents[producer].add(consumer)

    def formula_nodes(self) -> list[GraphNode]:
        return [n for n in self.nodes.values() if n.formula is not None]

    def topological_order(self) -> list[str]:
        """Every key, producers before consumers, ties in declaration order.

        Raises:
            CycleError: Naming every identifier on a cycle.
        """
        return topological_sort(self.nodes, self.dependencies)

    def upstream(self, key: str) -> set[str]:
        """Every key *key* depends on, directly or transitively."""
        return self._reach(key, self.dependencies)

    def downstream(self, key: str) -> set[str]:
        """Every key that depends on *key*, directly or transitively."""
        return self._reach(key, self.dependents)

    @staticmethod
    def _reach(key: str, adjacency: dict[str, set[str]]) -> set[str]:
        seen: set[str] = set()
        stack = list(adjacency.get(key, ()))
        while stack:
            cur = stack.pop()
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(adjacency.get(cur, ()))
        return seen


def build_graph(model: Model) -> DependencyGraph:
    """Build the dependency graph of *model* and every reachable include.

    Each formula is parsed, its function calls checked, and each
    reference resolved statically to the node that produces it.

    Raises:
        ModelParseError: A table is malformed.
        FormulaParseError, FormulaFunctionError: A formula is malformed.
        UnknownReferenceError: A reference resolves to nothing.
        ModelError: A row-wise reference crosses into a table with a
            different row count.
        IncludeCycleError: Included models include each other.
    """
    root = Namespace(model)
    graph = DependencyGraph(root)
    for ns in root.walk():
        for table in ns.model.tables.values():
            table.validate()
            for col in table.columns.values():
                graph.add_node(GraphNode(COLUMN, ns, table, col.name, col.formula))
            for agg in table.aggregations.values():
                graph.add_node(GraphNode(AGGREGATION, ns, table, agg.name, agg.formula, agg))
        for scalar in ns.model.scalars.values():
            graph.add_node(GraphNode(SCALAR, ns, None, scalar.name, scalar.formula, scalar))

    for node in graph.formula_nodes():
        _link(graph, node)
    logger.debug("graph: %d nodes, %d formulas", len(graph.nodes), len(graph.formula_nodes()))
    return graph


def _link(graph: DependencyGraph, node: GraphNode) -> None:
    if node.formula is None:
        return
    try:
        tree = parse_formula(node.formula)
        check_functions(tree)
    except TabcalcError as exc:
        exc.attach(node.key, node.formula)
        raise
    node.tree = tree

    for use in iter_ref_uses(tree):
        target = node.namespace.locate(use.name, node.table, node.section)
        if target is None:
            raise UnknownReferenceError(use.name, node.formula, node.key)
        row_wise = node.kind == COLUMN and not use.in_range and not use.indexed
        if (
            row_wise
            and target.kind == COLUMN
            and node.table is not None
            and target.table is not node.table
            and target.row_count != node.table.row_count
        ):
            raise ModelError(
                f"row-wise reference to {target.key!r} ({target.row_count} rows) "
                f"from a table with {node.table.row_count} rows"
            ).attach(node.key, node.formula)
        graph.add_edge(node.key, target.key)
