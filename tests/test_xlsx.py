"""Tests for the XLSX workbook codec."""

from __future__ import annotations

import datetime
from pathlib import Path

import pytest

openpyxl = pytest.importorskip("openpyxl")

from tabcalc.document import parse_document  # noqa: E402
from tabcalc.engine import calculate  # noqa: E402
from tabcalc.errors import TranslationError  # noqa: E402
from tabcalc.project import DEMO_MODEL  # noqa: E402
from tabcalc.translate import CellFormula, Sheet, export_model, import_sheets  # noqa: E402
from tabcalc.xlsx import add_xlfn_prefixes, read_workbook, strip_xlfn_prefixes, write_workbook  # noqa: E402


class TestXlfnPrefixes:
    def test_add_only_to_newer_functions(self):
        assert add_xlfn_prefixes("=STDEV.S(A2:A4)+SUM(A2:A4)") == "=_xlfn.STDEV.S(A2:A4)+SUM(A2:A4)"

    def test_strings_untouched(self):
        assert add_xlfn_prefixes('=CONCAT("XLOOKUP(",A2)') == '=_xlfn.CONCAT("XLOOKUP(",A2)'

    def test_strip(self):
        assert strip_xlfn_prefixes("=_xlfn.XLOOKUP(A2,B2:B4,C2:C4)") == "=XLOOKUP(A2,B2:B4,C2:C4)"
        assert strip_xlfn_prefixes("=_xlfn._xlws.SORT(A2:A4)") == "=SORT(A2:A4)"


class TestWorkbook:
    def test_formulas_stored_with_prefix(self, tmp_path: Path):
        path = tmp_path / "out.xlsx"
        write_workbook([Sheet("t", ["a", "b"], [[1.0, CellFormula("=STDEV.S(A2:A2)")]])], path)
        wb = openpyxl.load_workbook(str(path))
        assert wb["t"]["B2"].value == "=_xlfn.STDEV.S(A2:A2)"

    def test_round_trip(self, tmp_path: Path):
        path = tmp_path / "model.xlsx"
        sheets = export_model(parse_document(DEMO_MODEL))
        write_workbook(sheets, path)
        back = read_workbook(path)
        assert [s.name for s in back] == ["sales", "Scalars"]
        sales = back[0]
        assert sales.header == ["month", "revenue", "cost", "profit", "margin"]
        assert sales.rows[0][0] == datetime.date(2025, 1, 1)
        assert sales.rows[1][3] == CellFormula("=B3-C3")

        model = import_sheets(back)
        assert calculate(model).scalars["net_income"].value == pytest.approx(112.5)

    def test_bad_sheet_title(self, tmp_path: Path):
        with pytest.raises(TranslationError, match="worksheet title"):
            write_workbook([Sheet("a/b", ["x"], [[1.0]])], tmp_path / "bad.xlsx")

    def test_trailing_empty_rows_dropped(self, tmp_path: Path):
        path = tmp_path / "sparse.xlsx"
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "t"
        ws.append(["a", None])
        ws.append([1, None])
        ws.append([None, None])
        wb.save(str(path))
        sheets = read_workbook(path)
        assert sheets == [Sheet("t", ["a"], [[1]])]


class TestComments:
    def test_notes_written_as_comments(self, tmp_path: Path):
        path = tmp_path / "notes.xlsx"
        write_workbook([Sheet("t", ["a"], [[1.0]], notes={"A1": "Unit: CAD"})], path)
        wb = openpyxl.load_workbook(str(path))
        comment = wb["t"]["A1"].comment
        assert comment is not None
        assert comment.text == "Unit: CAD"
        assert comment.author == "tabcalc"

    def test_comments_read_back(self, tmp_path: Path):
        path = tmp_path / "notes.xlsx"
        sheet = Sheet("t", ["a", "b"], [[1.0, 2.0]], notes={"B1": "Notes: x", "A2": "Source: y"})
        write_workbook([sheet], path)
        assert read_workbook(path) == [sheet]

    def test_model_metadata_survives_workbook(self, tmp_path: Path):
        text = 't:\n  a: {value: [1, 2], unit: CAD}\n  s: {formula: "=SUM(a)", notes: total}\nrate: {value: 0.1, unit: "%"}\n'
        path = tmp_path / "meta.xlsx"
        write_workbook(export_model(parse_document(text)), path)
        model = import_sheets(read_workbook(path))
        assert model.tables["t"].columns["a"].metadata.unit == "CAD"
        assert model.tables["t"].aggregations["s"].metadata.notes == "total"
        assert model.scalars["rate"].metadata.unit == "%"


class TestVarianceWorkbook:
    def test_layout(self, tmp_path: Path):
        from tabcalc.commands import VarianceResult, VarianceRow, variance_sheet

        result = VarianceResult(threshold=10.0, rows=[
            VarianceRow(identifier="cost", budget=100.0, actual=120.0, variance=20.0,
                        variance_pct=20.0, favorable=False, exceeds_threshold=True),
            VarianceRow(identifier="revenue", budget=200.0, actual=210.0, variance=10.0,
                        variance_pct=5.0, favorable=True, exceeds_threshold=False),
        ])
        path = tmp_path / "variance.xlsx"
        write_workbook([variance_sheet(result)], path)
        ws = openpyxl.load_workbook(str(path))["Variance"]
        assert [c.value for c in ws[1]] == ["Variable", "Budget", "Actual", "Variance", "Var %", "Status"]
        assert [c.value for c in ws[2]] == ["cost", 100, 120, 20, 0.2, "ALERT - Unfavorable"]
        assert ws["F3"].value == "Favorable"
        assert ws["E3"].value == pytest.approx(0.05)
        assert ws["A6"].value == "Threshold: 10%"
