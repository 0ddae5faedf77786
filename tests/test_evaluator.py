"""Tests for the tree-walking evaluator."""

from __future__ import annotations

import pytest

from tabcalc.formulas import (
    DictScope,
    FormulaDivisionError,
    FormulaRefError,
    FormulaTypeError,
    evaluate,
    evaluate_formula,
    parse_formula,
)


class TestRowMode:
    def test_column_reads_current_row(self):
        ctx = {"revenue": [100.0, 200.0], "cost": [40.0, 90.0]}
        assert evaluate_formula("=revenue - cost", ctx, row=1) == 110.0

    def test_scalar_broadcasts(self):
        ctx = {"revenue": [100.0, 200.0], "rate": 0.5}
        assert evaluate_formula("=revenue * rate", ctx, row=0) == 50.0

    def test_column_outside_row_context(self):
        with pytest.raises(FormulaTypeError, match="is a column"):
            evaluate_formula("=revenue + 1", {"revenue": [1.0]})

    def test_indexed_read(self):
        ctx = {"revenue": [100.0, 200.0]}
        assert evaluate_formula("=revenue[1] - revenue[0]", ctx) == 100.0
        with pytest.raises(FormulaRefError):
            evaluate_formula("=revenue[2]", ctx)

    def test_unknown_reference_lists_available(self):
        with pytest.raises(FormulaRefError) as exc_info:
            evaluate_formula("=nope", {"a": 1.0})
        assert exc_info.value.available == ["a"]


class TestArrayMode:
    def test_elementwise_operators(self):
        tree = parse_formula("=a * 2 + b")
        assert evaluate(tree, DictScope({"a": [1.0, 2.0], "b": 1.0}), array=True) == [3.0, 5.0]

    def test_length_mismatch(self):
        tree = parse_formula("=a + b")
        with pytest.raises(FormulaTypeError, match="length mismatch"):
            evaluate(tree, DictScope({"a": [1.0, 2.0], "b": [1.0]}), array=True)

    def test_sum_of_expression(self):
        assert evaluate_formula("=SUM(a * b)", {"a": [1.0, 2.0], "b": [3.0, 4.0]}) == 11.0

    def test_single_value_function_maps_over_column(self):
        assert evaluate_formula("=SUM(ROUND(a, 0))", {"a": [1.4, 1.6]}) == 3.0


class TestOperators:
    def test_division_by_zero(self):
        with pytest.raises(FormulaDivisionError):
            evaluate_formula("=1 / 0", {})

    def test_text_comparison_ignores_case(self):
        assert evaluate_formula('="North" = "north"', {}) is True

    def test_mixed_kind_ordering_is_an_error(self):
        with pytest.raises(FormulaTypeError, match="Cannot compare"):
            evaluate_formula('=1 < "a"', {})

    def test_mixed_kind_equality_is_false(self):
        assert evaluate_formula('=1 = "1"', {}) is False

    def test_concat_formats_numbers(self):
        assert evaluate_formula('="Q" & 4', {}) == "Q4"

    def test_text_in_arithmetic(self):
        with pytest.raises(FormulaTypeError, match="needs numbers"):
            evaluate_formula('="a" + 1', {})
