"""Tests for project configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path

import pytest

from tabcalc.errors import ModelError
from tabcalc.project import DEFAULT_CONFIG, load_project_config, scaffold_project


class TestProjectConfig:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        assert load_project_config(tmp_path) == DEFAULT_CONFIG

    def test_flat_override(self, tmp_path: Path) -> None:
        (tmp_path / "tabcalc.yaml").write_text("validate_tolerance: 0.01\nscalars_sheet: Inputs\n")
        config = load_project_config(tmp_path)
        assert config["validate_tolerance"] == 0.01
        assert config["scalars_sheet"] == "Inputs"
        assert config["variance_threshold"] == 10.0

    def test_nested_solver_blocks(self, tmp_path: Path) -> None:
        (tmp_path / "tabcalc.yaml").write_text(
            "goal_seek:\n  tolerance: 0.001\n  max_iterations: 200\nrate:\n  guess: 0.05\n"
        )
        config = load_project_config(tmp_path)
        assert config["goal_seek_tolerance"] == 0.001
        assert config["goal_seek_max_iterations"] == 200
        assert config["rate_guess"] == 0.05
        assert "goal_seek" not in config

    def test_flat_key_wins_over_nested(self, tmp_path: Path) -> None:
        (tmp_path / "tabcalc.yaml").write_text("goal_seek_tolerance: 0.5\ngoal_seek:\n  tolerance: 0.001\n")
        assert load_project_config(tmp_path)["goal_seek_tolerance"] == 0.5

    def test_integers_become_floats(self, tmp_path: Path) -> None:
        (tmp_path / "tabcalc.yaml").write_text("variance_threshold: 5\n")
        value = load_project_config(tmp_path)["variance_threshold"]
        assert value == 5.0 and isinstance(value, float)

    @pytest.mark.parametrize(
        "text",
        [
            "validate_tolerance: tight\n",
            "goal_seek_max_iterations: 0\n",
            "rate_max_iterations: true\n",
            "scalars_sheet: ''\n",
            "- a\n- b\n",
            "a: [1\n",
        ],
    )
    def test_bad_config(self, tmp_path: Path, text: str) -> None:
        (tmp_path / "tabcalc.yaml").write_text(text)
        with pytest.raises(ModelError):
            load_project_config(tmp_path)


class TestScaffold:
    def test_demo_config_loads(self, tmp_path: Path) -> None:
        scaffold_project(tmp_path)
        config = load_project_config(tmp_path)
        assert config["goal_seek_max_iterations"] == 100
