"""Tests for reading and writing YAML model documents."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from tabcalc.document import dump_document, dump_model, load_model, parse_document
from tabcalc.errors import (
    ColumnTypeError,
    IncludeCycleError,
    IncludeError,
    ModelError,
    ModelParseError,
)
from tabcalc.formulas.errors import FormulaParseError
from tabcalc.project import DEMO_MODEL


def _reader(files: dict[str, str]):
    def read(path: Path) -> str:
        try:
            return files[str(path)]
        except KeyError:
            raise FileNotFoundError(str(path))

    return read


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseDocument:
    def test_demo_model_structure(self):
        model = parse_document(DEMO_MODEL, source="model.yaml")
        sales = model.tables["sales"]
        assert list(sales.columns) == ["month", "revenue", "cost", "profit", "margin"]
        assert list(sales.aggregations) == ["total"]
        assert sales.columns["profit"].formula == "=revenue - cost"
        assert sales.row_count == 3
        assert model.scalars["assumptions.tax_rate"].value == 0.25
        assert model.scalars["total_profit"].formula == "=SUM(sales.profit)"
        assert model.scenarios["downside"] == {"assumptions.tax_rate": 0.3}

    def test_scalar_mapping_with_value_and_formula(self):
        model = parse_document('x: {value: 3, formula: "=1 + 2"}')
        scalar = model.scalars["x"]
        assert scalar.value == 3.0
        assert scalar.formula == "=1 + 2"

    def test_formula_must_start_with_equals(self):
        with pytest.raises(ModelParseError, match="x.formula"):
            parse_document('x: {formula: "1 + 2"}')

    def test_row_formula_using_aggregate_stays_a_column(self):
        text = """
t:
  a: [1, 2, 4]
  share: "=a / SUM(a)"
  first: "=a[0]"
"""
        table = parse_document(text).tables["t"]
        assert "share" in table.columns
        assert "first" in table.aggregations

    def test_aggregation_of_formula_column(self):
        text = """
t:
  a: [1, 2]
  b: "=a * 2"
  total_b: "=SUM(b)"
  c: "=b + total_b"
"""
        table = parse_document(text).tables["t"]
        assert list(table.aggregations) == ["total_b"]
        assert set(table.columns) == {"a", "b", "c"}

    def test_invalid_yaml(self):
        with pytest.raises(ModelParseError, match="invalid YAML"):
            parse_document("a: [1, 2")

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ModelParseError):
            parse_document("- 1\n- 2\n")

    def test_invalid_name(self):
        with pytest.raises(ModelParseError, match="invalid name"):
            parse_document("1abc: 3")

    def test_mixed_column(self):
        with pytest.raises(ColumnTypeError):
            parse_document("t:\n  a: [1, x]\n")

    def test_bad_table_formula(self):
        with pytest.raises(FormulaParseError):
            parse_document('t:\n  a: [1]\n  b: "=SUM(a"\n')

    def test_include_alias_shadowing(self):
        text = """
includes:
  - {file: other.yaml, as: rate}
rate: 0.1
"""
        with pytest.raises(ModelParseError, match="shadows"):
            parse_document(text)

    def test_empty_document(self):
        model = parse_document("")
        assert not model.tables and not model.scalars


# ---------------------------------------------------------------------------
# Includes
# ---------------------------------------------------------------------------


class TestLoadModel:
    def test_includes_loaded_from_disk(self, tmp_path: Path):
        (tmp_path / "shared").mkdir()
        (tmp_path / "shared" / "rates.yaml").write_text("discount: 0.08\n")
        (tmp_path / "model.yaml").write_text(
            "includes:\n  - {file: shared/rates.yaml, as: rates}\nx: \"=rates.discount * 2\"\n"
        )
        model = load_model(tmp_path / "model.yaml")
        inc = model.include("rates")
        assert inc is not None and inc.model is not None
        assert inc.model.scalars["discount"].value == 0.08

    def test_shared_include_parsed_once(self):
        files = {
            "root.yaml": "includes:\n  - {file: a.yaml, as: a}\n  - {file: b.yaml, as: b}\n",
            "a.yaml": "includes:\n  - {file: c.yaml, as: c}\n",
            "b.yaml": "includes:\n  - {file: c.yaml, as: c}\n",
            "c.yaml": "k: 1\n",
        }
        model = load_model("root.yaml", reader=_reader(files))
        a_c = model.include("a").model.include("c").model
        b_c = model.include("b").model.include("c").model
        assert a_c is b_c

    def test_missing_include(self):
        files = {"root.yaml": "includes:\n  - {file: gone.yaml, as: gone}\n"}
        with pytest.raises(IncludeError, match="gone.yaml"):
            load_model("root.yaml", reader=_reader(files))

    def test_missing_root(self):
        with pytest.raises(ModelError, match="cannot read"):
            load_model("nowhere.yaml", reader=_reader({}))

    def test_include_cycle(self):
        files = {
            "root.yaml": "includes:\n  - {file: a.yaml, as: a}\n",
            "a.yaml": "includes:\n  - {file: b.yaml, as: b}\n",
            "b.yaml": "includes:\n  - {file: a.yaml, as: a}\n",
        }
        with pytest.raises(IncludeCycleError) as exc_info:
            load_model("root.yaml", reader=_reader(files))
        assert "a.yaml" in exc_info.value.chain
        assert "b.yaml" in exc_info.value.chain


# ---------------------------------------------------------------------------
# Dumping
# ---------------------------------------------------------------------------


class TestDump:
    def test_round_trip_demo(self):
        model = parse_document(DEMO_MODEL)
        again = parse_document(dump_model(model))
        assert again.snapshot() == model.snapshot()
        assert again.scenarios == model.scenarios

    def test_sections_written_as_mappings(self):
        doc = dump_document(parse_document(DEMO_MODEL))
        assert doc["assumptions"]["tax_rate"] == {"value": 0.25}
        assert doc["net_income"] == {
            "formula": "=total_profit * (1 - assumptions.tax_rate) - assumptions.fixed_costs"
        }

    def test_dates_dump_as_yaml_dates(self):
        doc = yaml.safe_load(dump_model(parse_document("t:\n  d: ['2025-01-31']\n")))
        assert str(doc["t"]["d"][0]) == "2025-01-31"


METADATA_MODEL = """
costs:
  qty: {value: [2, 3], unit: units}
  price: {value: [10, 20], unit: CAD, source: price list}
  amount: {formula: "=qty * price", unit: CAD, notes: before tax}
  total: {formula: "=SUM(amount)", unit: CAD}
tax_rate: {value: 0.25, unit: "%", notes: federal}
plain: 1
assumptions:
  growth: {value: 0.05, unit: "%"}
"""


class TestMetadata:
    def test_entries_carry_metadata(self):
        model = parse_document(METADATA_MODEL)
        costs = model.tables["costs"]
        assert costs.columns["qty"].values == [2.0, 3.0]
        assert costs.columns["qty"].metadata.unit == "units"
        assert costs.columns["price"].metadata.source == "price list"
        assert costs.columns["amount"].formula == "=qty * price"
        assert costs.columns["amount"].metadata.notes == "before tax"
        assert list(costs.aggregations) == ["total"]
        assert costs.aggregations["total"].metadata.unit == "CAD"
        assert model.scalars["tax_rate"].metadata.unit == "%"
        assert model.scalars["tax_rate"].metadata.notes == "federal"
        assert model.scalars["plain"].metadata.is_empty()
        assert model.scalars["assumptions.growth"].metadata.unit == "%"

    def test_section_of_scalar_mappings_is_not_a_table(self):
        model = parse_document(METADATA_MODEL)
        assert "assumptions" not in model.tables

    def test_table_entry_needs_value_or_formula(self):
        with pytest.raises(ModelParseError, match="exactly one"):
            parse_document('t:\n  a: [1]\n  b: {unit: CAD}\n')
        with pytest.raises(ModelParseError, match="exactly one"):
            parse_document('t:\n  a: {value: [1], formula: "=1"}\n')

    def test_unknown_metadata_key_rejected(self):
        with pytest.raises(ModelParseError, match="unexpected keys"):
            parse_document("x: {value: 1, currency: CAD}")
        with pytest.raises(ModelParseError, match="unexpected keys"):
            parse_document("t:\n  a: {value: [1], colour: red}\n")

    def test_metadata_must_be_text(self):
        with pytest.raises(ModelParseError, match="x.unit"):
            parse_document("x: {value: 1, unit: [CAD]}")

    def test_copy_keeps_metadata(self):
        model = parse_document(METADATA_MODEL).copy()
        assert model.tables["costs"].columns["price"].metadata.unit == "CAD"
        assert model.scalars["tax_rate"].metadata.notes == "federal"

    def test_dump_round_trip(self):
        model = parse_document(METADATA_MODEL)
        doc = dump_document(model)
        assert doc["costs"]["qty"] == {"value": [2.0, 3.0], "unit": "units"}
        assert doc["costs"]["amount"] == {"formula": "=qty * price", "unit": "CAD", "notes": "before tax"}
        assert doc["tax_rate"] == {"value": 0.25, "unit": "%", "notes": "federal"}
        assert doc["plain"] == 1.0

        again = parse_document(dump_model(model))
        assert again.snapshot() == model.snapshot()
        assert again.tables["costs"].columns["price"].metadata == model.tables["costs"].columns["price"].metadata
        assert again.tables["costs"].aggregations["total"].metadata.unit == "CAD"
        assert again.scalars["assumptions.growth"].metadata.unit == "%"
