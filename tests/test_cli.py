"""Tests for the tabcalc command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from tabcalc.cli import main


@pytest.fixture(autouse=True)
def _detach_log():
    yield
    from tabcalc.logging.events import clear_log_dir

    clear_log_dir()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A scaffolded demo project; returns the model path."""
    runner = CliRunner()
    result = runner.invoke(main, ["init", str(tmp_path)])
    assert result.exit_code == 0, result.output
    return tmp_path / "model.yaml"


def _run(*args: str):
    return CliRunner().invoke(main, [str(a) for a in args])


class TestInit:
    def test_scaffold(self, tmp_path: Path) -> None:
        result = _run("init", tmp_path / "proj")
        assert result.exit_code == 0
        assert "Created project model" in result.output
        assert (tmp_path / "proj" / "model.yaml").exists()
        assert (tmp_path / "proj" / "tabcalc.yaml").exists()

    def test_version(self) -> None:
        result = _run("--version")
        assert result.exit_code == 0
        assert "tabcalc" in result.output


class TestCalculate:
    def test_dry_run_json(self, project: Path) -> None:
        before = project.read_text()
        result = _run("calculate", project, "--dry-run", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["scalars"]["net_income"] == pytest.approx(112.5)
        assert data["tables"]["sales"]["profit"] == [60.0, 110.0, 180.0]
        assert project.read_text() == before

    def test_writes_values_back(self, project: Path) -> None:
        result = _run("calculate", project)
        assert result.exit_code == 0, result.output
        assert "Wrote" in result.output
        doc = yaml.safe_load(project.read_text())
        assert doc["net_income"]["value"] == pytest.approx(112.5)
        assert doc["sales"]["profit"] == "=revenue - cost"

    def test_scenario_does_not_write(self, project: Path) -> None:
        before = project.read_text()
        result = _run("calculate", project, "--scenario", "downside", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["scalars"]["net_income"] == pytest.approx(95.0)
        assert project.read_text() == before

    def test_unknown_scenario(self, project: Path) -> None:
        result = _run("calculate", project, "--scenario", "sideways")
        assert result.exit_code == 1
        assert "Unknown scenario" in result.output

    def test_events_logged(self, project: Path) -> None:
        _run("calculate", project, "--dry-run")
        log = project.parent / "logs" / "events.ndjson"
        types = [json.loads(line)["event_type"] for line in log.read_text().splitlines()]
        assert "calc_completed" in types

    def test_missing_model(self, tmp_path: Path) -> None:
        result = _run("calculate", tmp_path / "nope.yaml")
        assert result.exit_code == 2


class TestValidateAudit:
    def test_validate_after_calculate(self, project: Path) -> None:
        _run("calculate", project)
        result = _run("validate", project)
        assert result.exit_code == 0, result.output
        assert "Status: PASS" in result.output

    def test_validate_stale_value(self, tmp_path: Path) -> None:
        model = tmp_path / "model.yaml"
        model.write_text('a: 2\nb: {value: 5, formula: "=a * 2"}\n')
        result = _run("validate", model)
        assert result.exit_code == 1
        assert "Status: FAIL" in result.output

    def test_validate_reports_unit_warnings(self, tmp_path: Path) -> None:
        model = tmp_path / "model.yaml"
        model.write_text('price: {value: 100, unit: CAD}\ntax: {value: 0.1, unit: "%"}\ngross: "=price + tax"\n')
        result = _run("validate", model)
        assert result.exit_code == 0, result.output
        assert "Status: PASS" in result.output
        assert "Warning: gross: Adding percentage to currency" in result.output

    def test_audit_tree(self, project: Path) -> None:
        result = _run("audit", project, "net_income")
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("net_income = 112.5")
        assert any(line.startswith("  total_profit = 350") for line in lines)

    def test_audit_cycle(self, tmp_path: Path) -> None:
        model = tmp_path / "model.yaml"
        model.write_text('a: "=b + 1"\nb: "=a + 1"\n')
        result = _run("audit", model, "a")
        assert result.exit_code == 0
        assert "(cycle)" in result.output

    def test_audit_unknown(self, project: Path) -> None:
        result = _run("audit", project, "nope")
        assert result.exit_code == 1
        assert "Unknown reference" in result.output


class TestCompareVariance:
    def test_compare_json(self, project: Path) -> None:
        result = _run("compare", project, "--id", "net_income", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["scenarios"] == ["downside", "upside"]
        assert data["rows"][0]["values"]["upside"] == pytest.approx(162.5)

    def test_compare_table(self, project: Path) -> None:
        result = _run("compare", project, "-s", "upside")
        assert result.exit_code == 0, result.output
        assert "upside" in result.output
        assert "net_income" in result.output

    def test_variance(self, tmp_path: Path) -> None:
        budget = tmp_path / "budget.yaml"
        actual = tmp_path / "actual.yaml"
        budget.write_text("revenue: 100\ncost: 50\n")
        actual.write_text("revenue: 90\ncost: 40\n")
        result = _run("variance", budget, actual, "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["favorable_count"] == 1
        assert data["alert_count"] == 2

        text = _run("variance", budget, actual, "--threshold", "15")
        assert "Alerts (>= 15%): 1" in text.output

    def test_variance_yaml_report(self, tmp_path: Path) -> None:
        budget = tmp_path / "budget.yaml"
        actual = tmp_path / "actual.yaml"
        budget.write_text("revenue: 100\ncost: 50\n")
        actual.write_text("revenue: 90\ncost: 40\n")
        out = tmp_path / "reports" / "variance.yaml"
        result = _run("variance", budget, actual, "--output", out)
        assert result.exit_code == 0, result.output
        assert out.read_text().startswith("# Variance report\n# Threshold: 10%\n")
        data = yaml.safe_load(out.read_text())
        assert data["metadata"]["alert_count"] == 2
        assert data["variances"]["revenue"]["is_favorable"] is False

    def test_variance_xlsx_report(self, tmp_path: Path) -> None:
        openpyxl = pytest.importorskip("openpyxl")
        budget = tmp_path / "budget.yaml"
        actual = tmp_path / "actual.yaml"
        budget.write_text("revenue: 100\n")
        actual.write_text("revenue: 120\n")
        out = tmp_path / "variance.xlsx"
        result = _run("variance", budget, actual, "-o", out)
        assert result.exit_code == 0, result.output
        ws = openpyxl.load_workbook(str(out))["Variance"]
        assert ws["A2"].value == "revenue"
        assert ws["F2"].value == "ALERT - Favorable"

    def test_variance_report_format_rejected(self, tmp_path: Path) -> None:
        budget = tmp_path / "budget.yaml"
        budget.write_text("revenue: 100\n")
        result = _run("variance", budget, budget, "--output", tmp_path / "variance.csv")
        assert result.exit_code == 2
        assert "use .xlsx or .yaml" in result.output
        assert not (tmp_path / "variance.csv").exists()


class TestSolverCommands:
    def test_goal_seek_json(self, project: Path) -> None:
        result = _run(
            "goal-seek", project, "--output", "net_income",
            "--vary", "assumptions.fixed_costs", "--target", "0", "--json",
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["value"] == pytest.approx(262.5, abs=1e-3)

    def test_goal_seek_unreachable(self, project: Path) -> None:
        result = _run(
            "goal-seek", project, "--output", "net_income",
            "--vary", "assumptions.fixed_costs", "--lower", "0", "--upper", "100",
        )
        assert result.exit_code == 1
        assert "No sign change" in result.output

    def test_break_even(self, project: Path) -> None:
        result = _run("break-even", project, "--output", "net_income", "--vary", "assumptions.fixed_costs")
        assert result.exit_code == 0, result.output
        assert result.output.startswith("assumptions.fixed_costs = 262.5")

    def test_sensitivity(self, project: Path) -> None:
        result = _run(
            "sensitivity", project, "--output", "net_income",
            "--vary", "assumptions.tax_rate", "--range", "0.2,0.3,0.1", "--json",
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["series"] == pytest.approx([130.0, 95.0])

    def test_sensitivity_bad_range(self, project: Path) -> None:
        result = _run(
            "sensitivity", project, "--output", "net_income",
            "--vary", "assumptions.tax_rate", "--range", "1,0,1",
        )
        assert result.exit_code == 1


class TestExportImport:
    def test_round_trip(self, project: Path) -> None:
        pytest.importorskip("openpyxl")
        xlsx = project.parent / "model.xlsx"
        result = _run("export", project, xlsx)
        assert result.exit_code == 0, result.output
        assert "Exported 2 sheets" in result.output

        rebuilt = project.parent / "rebuilt.yaml"
        result = _run("import", xlsx, rebuilt)
        assert result.exit_code == 0, result.output
        assert "Imported 1 tables" in result.output

        result = _run("calculate", rebuilt, "--dry-run", "--json")
        assert json.loads(result.stdout)["scalars"]["net_income"] == pytest.approx(112.5)


class TestEvents:
    def test_global_log(self, project: Path) -> None:
        _run("calculate", project, "--dry-run")
        result = _run("events", project.parent, "--type", "calc_completed")
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert len(lines) == 1
        assert "INFO    calc_completed:" in lines[0]

    def test_last_run(self, project: Path) -> None:
        _run("calculate", project, "--dry-run")
        result = _run("events", project.parent, "--last")
        assert result.exit_code == 0, result.output
        assert [line.split()[2] for line in result.output.splitlines()] == [
            "calc_started:",
            "calc_completed:",
        ]

    def test_empty(self, tmp_path: Path) -> None:
        assert "No events found." in _run("events", tmp_path).output
        assert "No calculations logged." in _run("events", tmp_path, "--last").output
        assert "No events found for run r1." in _run("events", tmp_path, "--run-id", "r1").output
