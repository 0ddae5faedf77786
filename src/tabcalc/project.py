"""Project-level configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from tabcalc.errors import ModelError

CONFIG_FILE = "tabcalc.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "validate_tolerance": 1e-4,
    "variance_threshold": 10.0,  # percent
    "goal_seek_tolerance": 1e-4,
    "goal_seek_max_iterations": 100,
    "rate_guess": 0.1,
    "rate_max_iterations": 100,
    "rate_tolerance": 1e-10,
    "scalars_sheet": "Scalars",
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

_FLOAT_KEYS = (
    "validate_tolerance",
    "variance_threshold",
    "goal_seek_tolerance",
    "rate_guess",
    "rate_tolerance",
)
_INT_KEYS = ("goal_seek_max_iterations", "rate_max_iterations", "logging_tail_bytes")


def _flatten_solver_blocks(user_config: dict[str, Any]) -> dict[str, Any]:
    """Flatten nested ``goal_seek:`` / ``rate:`` blocks into flat keys.

    Supports::

        goal_seek:
          tolerance: 0.001
          max_iterations: 200
        rate:
          guess: 0.05

    Maps to ``goal_seek_tolerance``, ``goal_seek_max_iterations``,
    ``rate_guess`` and so on.  Flat keys win over nested ones.
    """
    for block in ("goal_seek", "rate"):
        nested = user_config.pop(block, None)
        if not isinstance(nested, dict):
            continue
        for short_key, value in nested.items():
            user_config.setdefault(f"{block}_{short_key}", value)
    return user_config


def _check_types(config: dict[str, Any]) -> None:
    for key in _FLOAT_KEYS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ModelError(f"{CONFIG_FILE}: {key} must be a number, got {value!r}")
        config[key] = float(value)
    for key in _INT_KEYS:
        value = config[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ModelError(f"{CONFIG_FILE}: {key} must be a positive integer, got {value!r}")
    if not isinstance(config["scalars_sheet"], str) or not config["scalars_sheet"]:
        raise ModelError(f"{CONFIG_FILE}: scalars_sheet must be a non-empty string")


def load_project_config(project_dir: Path) -> dict[str, Any]:
    """Load project configuration from ``tabcalc.yaml``, with defaults.

    Args:
        project_dir: Directory holding the model (and optionally the config).

    Returns:
        Merged configuration dict.

    Raises:
        ModelError: If the config file is malformed or a value has the
            wrong type.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = Path(project_dir) / CONFIG_FILE
    if config_path.exists():
        try:
            user_config = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise ModelError(f"{CONFIG_FILE}: {exc}") from exc
        if not isinstance(user_config, dict):
            raise ModelError(f"{CONFIG_FILE}: top level must be a mapping")
        config.update(_flatten_solver_blocks(user_config))
    _check_types(config)
    return config


DEMO_MODEL = """\
_version: "1.0"

sales:
  month: ["2025-01", "2025-02", "2025-03"]
  revenue: [100, 200, 300]
  cost: [40, 90, 120]
  profit: "=revenue - cost"
  margin: "=profit / revenue"
  total: "=SUM(profit)"

assumptions:
  tax_rate:
    value: 0.25
  fixed_costs:
    value: 150

total_profit: "=SUM(sales.profit)"
net_income: "=total_profit * (1 - assumptions.tax_rate) - assumptions.fixed_costs"

scenarios:
  downside:
    assumptions.tax_rate: 0.30
  upside:
    assumptions.fixed_costs: 100
"""

DEMO_CONFIG = """\
# tabcalc project configuration
validate_tolerance: 0.0001
variance_threshold: 10.0
goal_seek:
  tolerance: 0.0001
  max_iterations: 100
"""


def scaffold_project(target_dir: Path) -> Path:
    """Create a demo project (``model.yaml`` + ``tabcalc.yaml``) in *target_dir*.

    Existing files are left untouched.

    Returns:
        Path to the demo model.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    model_path = target_dir / "model.yaml"
    if not model_path.exists():
        model_path.write_text(DEMO_MODEL)
    config_path = target_dir / CONFIG_FILE
    if not config_path.exists():
        config_path.write_text(DEMO_CONFIG)
    return model_path
