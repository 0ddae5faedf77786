"""Tests for root finding and what-if drivers."""

from __future__ import annotations

import math

import pytest

from tabcalc.document import parse_document
from tabcalc.errors import (
    ConvergenceError,
    IterationBudgetError,
    NoSignChangeError,
    SolverCancelled,
)
from tabcalc.project import DEMO_MODEL
from tabcalc.solver import (
    bisect,
    break_even,
    default_bounds,
    goal_seek,
    newton_raphson,
    parse_range,
    sensitivity,
    solve_rate,
)


@pytest.fixture
def demo():
    return parse_document(DEMO_MODEL, source="model.yaml")


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------


class TestBisect:
    def test_square_root(self):
        x, fx, iterations = bisect(lambda x: x * x - 2, 0.0, 2.0, tolerance=1e-10)
        assert x == pytest.approx(math.sqrt(2), abs=1e-8)
        assert iterations > 0

    def test_target(self):
        x, achieved, _ = bisect(lambda x: 2 * x, 0.0, 10.0, target=5.0)
        assert x == pytest.approx(2.5, abs=1e-4)
        assert achieved == pytest.approx(5.0, abs=1e-4)

    def test_root_at_bound(self):
        assert bisect(lambda x: x, 0.0, 1.0) == (0.0, 0.0, 0)

    def test_no_sign_change(self):
        with pytest.raises(NoSignChangeError):
            bisect(lambda x: x * x + 1, -1.0, 1.0)

    def test_budget(self):
        with pytest.raises(IterationBudgetError) as exc_info:
            bisect(lambda x: x - 0.3, 0.0, 1.0, tolerance=1e-15, max_iterations=3)
        assert exc_info.value.iterations == 3

    def test_cancel(self):
        with pytest.raises(SolverCancelled):
            bisect(lambda x: x - 0.3, 0.0, 1.0, cancel=lambda: True)


class TestNewton:
    def test_converges(self):
        assert newton_raphson(lambda x: x * x - 2, 1.0) == pytest.approx(math.sqrt(2))

    def test_explicit_derivative(self):
        assert newton_raphson(lambda x: x**3 - 8, 3.0, df=lambda x: 3 * x * x) == pytest.approx(2.0)

    def test_vanishing_derivative(self):
        with pytest.raises(ConvergenceError, match="vanished"):
            newton_raphson(lambda x: x * x + 1, 0.0)

    def test_rate_falls_back_to_bisection(self):
        # Newton overshoots on arctan from a distant guess
        assert solve_rate(lambda r: math.atan(r - 0.05), 5.0) == pytest.approx(0.05, abs=1e-8)


class TestParseRange:
    def test_inclusive(self):
        assert parse_range("0,1,0.25") == [0.0, 0.25, 0.5, 0.75, 1.0]

    def test_float_end_point_included(self):
        assert parse_range("0.1,0.3,0.1") == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.parametrize("spec", ["1,0,1", "0,1,0", "a,b,c", "1,2"])
    def test_invalid(self, spec: str):
        with pytest.raises(ValueError):
            parse_range(spec)


# ---------------------------------------------------------------------------
# Model drivers
# ---------------------------------------------------------------------------


class TestGoalSeek:
    def test_default_bounds(self):
        assert default_bounds(150.0) == pytest.approx((1.5, 15000.0))
        assert default_bounds(-2.0) == pytest.approx((-200.0, -0.02))
        assert default_bounds(0.0) == (-1000.0, 1000.0)

    def test_break_even_fixed_costs(self, demo):
        result = break_even(demo, "net_income", "assumptions.fixed_costs")
        assert result.value == pytest.approx(262.5, abs=1e-3)
        assert result.achieved == pytest.approx(0.0, abs=1e-4)
        assert demo.scalars["assumptions.fixed_costs"].value == 150

    def test_target_tax_rate(self, demo):
        result = goal_seek(demo, "net_income", "assumptions.tax_rate", 100.0)
        assert result.value == pytest.approx(1 - 250 / 350, abs=1e-5)

    def test_default_bounds_widen(self, demo):
        result = goal_seek(demo, "net_income", "assumptions.fixed_costs", -20000.0)
        assert result.value == pytest.approx(20262.5, abs=1e-3)
        assert result.upper == 150000.0

    def test_explicit_bounds_not_widened(self, demo):
        with pytest.raises(NoSignChangeError):
            goal_seek(demo, "net_income", "assumptions.fixed_costs", 0.0, lower=0.0, upper=100.0)

    def test_given_lower_bound_kept(self):
        model = parse_document("x: 5\ny: \"=x - 50\"\n")
        with pytest.raises(NoSignChangeError):
            goal_seek(model, "y", "x", 0.0, lower=60.0)

    def test_given_upper_bound_kept(self):
        model = parse_document("x: 5\ny: \"=x - 50\"\n")
        result = goal_seek(model, "y", "x", 0.0, upper=100.0)
        assert result.value == pytest.approx(50.0, abs=1e-3)
        assert result.upper == 100.0

    def test_only_defaulted_side_widens(self):
        model = parse_document("x: 5\ny: \"=x - 5000\"\n")
        result = goal_seek(model, "y", "x", 0.0, lower=1.0)
        assert result.value == pytest.approx(5000.0, abs=1e-2)
        assert result.lower == 1.0
        assert result.upper == 5000.0

    def test_default_side_moves_past_given_bound(self):
        model = parse_document("x: 5\ny: \"=x - 5000\"\n")
        result = goal_seek(model, "y", "x", 0.0, lower=1000.0)
        assert result.lower == 1000.0
        assert result.upper == 100000.0
        assert result.value == pytest.approx(5000.0, abs=1e-2)


class TestSensitivity:
    def test_one_dimension(self, demo):
        result = sensitivity(demo, "net_income", "assumptions.tax_rate", [0.2, 0.3])
        assert result.series == pytest.approx([130.0, 95.0])
        assert result.matrix is None

    def test_two_dimensions(self, demo):
        result = sensitivity(
            demo, "net_income", "assumptions.tax_rate", [0.2, 0.3],
            "assumptions.fixed_costs", "100,200,100",
        )
        assert result.values2 == [100.0, 200.0]
        assert result.matrix == [
            pytest.approx([180.0, 80.0]),
            pytest.approx([145.0, 45.0]),
        ]

    def test_failed_trial_reported(self):
        model = parse_document('d: 1\nx: "=1 / d"\n')
        result = sensitivity(model, "x", "d", [0.0, 1.0])
        assert result.series == [None, 1.0]
        assert len(result.errors) == 1
        assert result.errors[0].inputs == {"d": 0.0}

    def test_unpaired_second_input(self, demo):
        with pytest.raises(ValueError):
            sensitivity(demo, "net_income", "assumptions.tax_rate", [0.2], vary2="assumptions.fixed_costs")

    def test_cancel(self, demo):
        with pytest.raises(SolverCancelled):
            sensitivity(demo, "net_income", "assumptions.tax_rate", [0.2, 0.3], cancel=lambda: True)
