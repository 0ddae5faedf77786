"""tabcalc -- deterministic formula engine for YAML tabular models."""

__version__ = "0.1.0"
