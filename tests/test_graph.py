"""Tests for dependency graph construction and ordering."""

from __future__ import annotations

import pytest

from tabcalc.document import parse_document
from tabcalc.errors import CycleError, ModelError, UnknownReferenceError
from tabcalc.graph import build_graph, find_cycles, topological_sort
from tabcalc.model import Include
from tabcalc.project import DEMO_MODEL


# ---------------------------------------------------------------------------
# Ordering primitives
# ---------------------------------------------------------------------------


class TestTopologicalSort:
    def test_ties_follow_declaration_order(self):
        order = topological_sort(["c", "a", "b"], {"c": {"b"}})
        assert order == ["a", "b", "c"]

    def test_independent_nodes_keep_order(self):
        assert topological_sort(["z", "y", "x"], {}) == ["z", "y", "x"]

    def test_external_dependencies_ignored(self):
        assert topological_sort(["a"], {"a": {"outside"}}) == ["a"]

    def test_cycle_raises(self):
        with pytest.raises(CycleError) as exc_info:
            topological_sort(["a", "b", "c"], {"a": {"b"}, "b": {"a"}, "c": {"a"}})
        assert exc_info.value.members == ["a", "b"]
        assert exc_info.value.path == ["a", "b", "a"]

    def test_custom_cycle_error(self):
        with pytest.raises(ValueError):
            topological_sort(["a"], {"a": {"a"}}, on_cycle=lambda members, path: ValueError(members))


class TestFindCycles:
    def test_dependents_of_a_cycle_are_not_members(self):
        members, _ = find_cycles(["a", "b", "c"], {"a": {"b"}, "b": {"a"}, "c": {"a"}})
        assert members == ["a", "b"]

    def test_self_edge(self):
        members, path = find_cycles(["x"], {"x": {"x"}})
        assert members == ["x"]
        assert path == ["x", "x"]

    def test_two_separate_cycles(self):
        edges = {"a": {"b"}, "b": {"a"}, "c": {"d"}, "d": {"c"}}
        members, path = find_cycles(["a", "b", "c", "d"], edges)
        assert members == ["a", "b", "c", "d"]
        assert path[0] == path[-1] == "a"

    def test_acyclic(self):
        assert find_cycles(["a", "b"], {"a": {"b"}}) == ([], [])


# ---------------------------------------------------------------------------
# Model graphs
# ---------------------------------------------------------------------------


class TestBuildGraph:
    def test_demo_nodes_and_edges(self):
        graph = build_graph(parse_document(DEMO_MODEL))
        assert "sales.profit" in graph.nodes
        assert graph.nodes["sales.total"].kind == "aggregation"
        assert graph.nodes["assumptions.tax_rate"].kind == "scalar"
        assert graph.dependencies["sales.profit"] == {"sales.revenue", "sales.cost"}
        assert graph.dependencies["total_profit"] == {"sales.profit"}

    def test_order_puts_producers_first(self):
        graph = build_graph(parse_document(DEMO_MODEL))
        order = graph.topological_order()
        assert order.index("sales.profit") < order.index("sales.margin")
        assert order.index("total_profit") < order.index("net_income")

    def test_upstream_and_downstream(self):
        graph = build_graph(parse_document(DEMO_MODEL))
        assert graph.upstream("net_income") >= {"total_profit", "sales.profit", "sales.revenue"}
        assert "net_income" in graph.downstream("sales.cost")
        assert graph.upstream("sales.revenue") == set()

    def test_section_sibling_reference(self):
        model = parse_document("""
assumptions:
  rate: {value: 0.1}
  double: {formula: "=rate * 2"}
""")
        graph = build_graph(model)
        assert graph.dependencies["assumptions.double"] == {"assumptions.rate"}

    def test_unknown_reference(self):
        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph(parse_document('x: "=y + 1"'))
        assert exc_info.value.reference == "y"
        assert exc_info.value.identifier == "x"

    def test_self_reference_is_a_cycle(self):
        graph = build_graph(parse_document('x: "=x + 1"'))
        with pytest.raises(CycleError) as exc_info:
            graph.topological_order()
        assert exc_info.value.members == ["x"]

    def test_row_count_mismatch(self):
        model = parse_document("""
a:
  v: [1, 2]
b:
  w: [1, 2, 3]
  c: "=a.v * 2"
""")
        with pytest.raises(ModelError, match="row-wise reference"):
            build_graph(model)

    def test_range_reference_across_tables_allowed(self):
        model = parse_document("""
a:
  v: [1, 2]
b:
  w: [1, 2, 3]
  share: "=w / SUM(a.v)"
""")
        graph = build_graph(model)
        assert graph.dependencies["b.share"] == {"b.w", "a.v"}

    def test_include_keys_are_prefixed(self):
        shared = parse_document("rate: 0.1\n", source="shared.yaml")
        model = parse_document('x: "=plan.rate * 2"\n', source="root.yaml")
        model.includes.append(Include("shared.yaml", "plan", shared))
        graph = build_graph(model)
        assert "plan.rate" in graph.nodes
        assert graph.dependencies["x"] == {"plan.rate"}


class TestGraphNode:
    def test_owners(self):
        graph = build_graph(parse_document(DEMO_MODEL))
        profit = graph.nodes["sales.profit"]
        assert profit.owning_table().name == "sales"
        with pytest.raises(ModelError, match="not a scalar"):
            profit.value_holder()

        tax = graph.nodes["assumptions.tax_rate"]
        assert tax.value_holder().value == 0.25
        with pytest.raises(ModelError, match="does not belong to a table"):
            tax.owning_table()

        total = graph.nodes["sales.total"]
        assert total.owning_table().name == "sales"
        assert total.value_holder().name == "total"
