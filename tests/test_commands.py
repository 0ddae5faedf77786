"""Tests for the command surface."""

from __future__ import annotations

from pathlib import Path

import pytest

from tabcalc import commands
from tabcalc.document import parse_document
from tabcalc.errors import ModelError, UnknownReferenceError
from tabcalc.project import DEMO_MODEL


@pytest.fixture
def demo():
    return parse_document(DEMO_MODEL, source="model.yaml")


class TestCalculate:
    def test_scenario(self, demo):
        result = commands.calculate(demo, scenario="downside")
        assert result.scalars["net_income"].value == pytest.approx(95.0)
        assert demo.scalars["assumptions.tax_rate"].value == 0.25

    def test_summary(self, demo):
        summary = commands.CalculateSummary.from_model(commands.calculate(demo))
        assert summary.scalars["sales.total"] == 350.0
        assert summary.tables["sales"]["profit"] == [60.0, 110.0, 180.0]

    def test_eval_options(self):
        assert commands.eval_options({"rate_guess": 0.05}) == {
            "rate_guess": 0.05,
            "rate_tolerance": 1e-10,
            "rate_max_iterations": 100,
        }


class TestValidate:
    def test_calculated_model_is_valid(self, demo):
        result = commands.validate(commands.calculate(demo))
        assert result.valid
        assert result.checked == 3

    def test_stale_value(self, demo):
        calculated = commands.calculate(demo)
        calculated.scalars["net_income"].value = 100.0
        result = commands.validate(calculated)
        assert not result.valid
        assert [m.identifier for m in result.mismatches] == ["net_income"]
        assert result.mismatches[0].diff == pytest.approx(12.5)

    def test_within_tolerance(self, demo):
        calculated = commands.calculate(demo)
        calculated.scalars["net_income"].value = 112.5 + 1e-6
        assert commands.validate(calculated).valid
        assert not commands.validate(calculated, tolerance=1e-9).valid

    def test_unset_values_not_checked(self, demo):
        result = commands.validate(demo)
        assert result.valid
        assert result.checked == 0

    def test_unit_warnings_do_not_fail(self):
        model = parse_document('a: {value: 1, unit: CAD}\nb: {value: 2, unit: USD}\nc: {value: 3, formula: "=a + b"}\n')
        result = commands.validate(model)
        assert result.valid
        assert [w.location for w in result.warnings] == ["c"]
        assert "CAD and USD" in result.warnings[0].message


class TestAudit:
    def test_tree(self, demo):
        result = commands.audit(demo, "net_income")
        root = result.root
        assert result.error is None
        assert root.value == pytest.approx(112.5)
        assert [d.identifier for d in root.dependencies] == [
            "assumptions.fixed_costs",
            "assumptions.tax_rate",
            "total_profit",
        ]
        profit = root.dependencies[2].dependencies[0]
        assert profit.identifier == "sales.profit"
        assert profit.kind == "column"
        assert profit.value == [60.0, 110.0, 180.0]

    def test_cycle_is_marked(self):
        model = parse_document('a: "=b + 1"\nb: "=a + 1"\n')
        result = commands.audit(model, "a")
        assert "Circular reference" in result.error
        b = result.root.dependencies[0]
        assert b.identifier == "b"
        assert b.dependencies[0].identifier == "a"
        assert b.dependencies[0].cycle
        assert b.dependencies[0].value is None

    def test_unknown(self, demo):
        with pytest.raises(UnknownReferenceError):
            commands.audit(demo, "nope")


class TestCompare:
    def test_all_scenarios(self, demo):
        result = commands.compare(demo)
        assert result.scenarios == ["downside", "upside"]
        rows = {r.identifier: r.values for r in result.rows}
        assert rows["net_income"] == {"downside": pytest.approx(95.0), "upside": pytest.approx(162.5)}
        assert rows["sales.total"] == {"downside": 350.0, "upside": 350.0}

    def test_selected_identifiers(self, demo):
        result = commands.compare(demo, ["upside"], ["net_income", "nope"])
        assert [r.identifier for r in result.rows] == ["net_income", "nope"]
        assert result.rows[1].values == {"upside": None}

    def test_no_scenarios(self):
        with pytest.raises(ModelError, match="no scenarios"):
            commands.compare(parse_document("x: 1\n"))

    def test_unknown_scenario(self, demo):
        with pytest.raises(ModelError, match="Unknown scenario"):
            commands.compare(demo, ["sideways"])


class TestVariance:
    def test_favourability(self):
        budget = parse_document("revenue: 100\ncost: 50\n")
        actual = parse_document("revenue: 90\ncost: 40\nbonus: 5\n")
        result = commands.variance(budget, actual)
        rows = {r.identifier: r for r in result.rows}
        assert list(rows) == ["bonus", "cost", "revenue"]

        assert rows["cost"].variance == -10.0
        assert rows["cost"].variance_pct == pytest.approx(-20.0)
        assert rows["cost"].favorable
        assert not rows["revenue"].favorable
        assert rows["bonus"].variance_pct == 0.0
        assert rows["bonus"].favorable

        assert result.favorable_count == 2
        assert result.unfavorable_count == 1
        assert result.alert_count == 2

    def test_threshold(self):
        budget = parse_document("revenue: 100\ncost: 50\n")
        actual = parse_document("revenue: 90\ncost: 40\n")
        result = commands.variance(budget, actual, threshold=15.0)
        assert [r.identifier for r in result.rows if r.exceeds_threshold] == ["cost"]

    def test_status(self):
        budget = parse_document("revenue: 100\ncost: 50\nrent: 10\n")
        actual = parse_document("revenue: 130\ncost: 60\nrent: 9.5\n")
        rows = {r.identifier: r for r in commands.variance(budget, actual).rows}
        assert rows["revenue"].status == "ALERT - Favorable"
        assert rows["cost"].status == "ALERT - Unfavorable"
        assert rows["rent"].status == "Unfavorable"

    def test_report_mapping(self):
        budget = parse_document("revenue: 100\ncost: 50\n")
        actual = parse_document("revenue: 90\ncost: 40\n")
        report = commands.variance_report(commands.variance(budget, actual))
        assert report["metadata"] == {
            "threshold_pct": 10.0,
            "total_items": 2,
            "favorable_count": 1,
            "alert_count": 2,
        }
        assert list(report["variances"]) == ["cost", "revenue"]
        assert report["variances"]["cost"] == {
            "budget": 50.0,
            "actual": 40.0,
            "variance": -10.0,
            "variance_pct": -20.0,
            "is_favorable": True,
            "exceeds_threshold": True,
        }

    def test_report_sheet(self):
        budget = parse_document("revenue: 100\n")
        actual = parse_document("revenue: 110\n")
        sheet = commands.variance_sheet(commands.variance(budget, actual, threshold=5.0))
        assert sheet.header == ["Variable", "Budget", "Actual", "Variance", "Var %", "Status"]
        assert sheet.rows[0][:4] == ["revenue", 100.0, 110.0, 10.0]
        assert sheet.rows[0][4] == pytest.approx(0.1)
        assert sheet.rows[0][5] == "ALERT - Favorable"
        assert sheet.rows[-1] == ["Threshold: 5%"]


class TestWhatIf:
    def test_goal_seek_uses_config(self, demo):
        result = commands.goal_seek(demo, "net_income", "assumptions.fixed_costs", 0.0, config={"goal_seek_tolerance": 1e-8})
        assert result.value == pytest.approx(262.5, abs=1e-7)

    def test_break_even(self, demo):
        result = commands.break_even(demo, "net_income", "assumptions.fixed_costs")
        assert result.value == pytest.approx(262.5, abs=1e-3)

    def test_trials_use_rate_settings(self):
        model = parse_document("t:\n  cf: [-100, 230, -132]\nk: 1\nr: \"=IRR(t.cf)\"\n")
        config = {"rate_guess": 0.25}
        assert commands.calculate(model, config=config).scalars["r"].value == pytest.approx(0.2)
        assert commands.calculate(model).scalars["r"].value == pytest.approx(0.1)

        result = commands.sensitivity(model, "r", "k", [1.0, 2.0], config=config)
        assert result.series == pytest.approx([0.2, 0.2])

    def test_goal_seek_trials_use_rate_settings(self):
        model = parse_document("t:\n  cf: [-100, 230, -132]\nk: 1\nr: \"=IRR(t.cf) * k\"\n")
        result = commands.goal_seek(model, "r", "k", 0.4, config={"rate_guess": 0.25})
        assert result.value == pytest.approx(2.0, abs=1e-3)

    def test_bad_range(self, demo):
        with pytest.raises(ModelError, match="greater than end"):
            commands.sensitivity(demo, "net_income", "assumptions.tax_rate", "1,0,1")


class TestInit:
    def test_scaffold(self, tmp_path: Path):
        model_path = commands.init(tmp_path / "proj")
        assert model_path == tmp_path / "proj" / "model.yaml"
        assert (tmp_path / "proj" / "tabcalc.yaml").exists()

    def test_existing_files_kept(self, tmp_path: Path):
        (tmp_path / "model.yaml").write_text("x: 1\n")
        commands.init(tmp_path)
        assert (tmp_path / "model.yaml").read_text() == "x: 1\n"
