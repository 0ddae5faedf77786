"""Tests for unit consistency checks."""

from __future__ import annotations

import pytest

from tabcalc.document import parse_document
from tabcalc.model import Include
from tabcalc.units import UnitCategory, UnitValidator, can_add, check_units, parse_unit


class TestParseUnit:
    @pytest.mark.parametrize(
        "text, category, name",
        [
            ("cad", UnitCategory.currency, "CAD"),
            ("$", UnitCategory.currency, "$"),
            ("percent", UnitCategory.percentage, "%"),
            ("Qty", UnitCategory.count, "count"),
            ("mo", UnitCategory.time, "months"),
            ("x", UnitCategory.ratio, "ratio"),
            ("widgets/hour", UnitCategory.unknown, "widgets/hour"),
        ],
    )
    def test_categories(self, text: str, category: UnitCategory, name: str):
        unit = parse_unit(text)
        assert unit.category is category
        assert str(unit) == name

    def test_can_add(self):
        assert can_add(parse_unit("CAD"), parse_unit("cad"))
        assert not can_add(parse_unit("CAD"), parse_unit("USD"))
        assert can_add(parse_unit("days"), parse_unit("d"))
        assert not can_add(parse_unit("days"), parse_unit("months"))
        assert can_add(parse_unit("units"), parse_unit("items"))
        assert not can_add(parse_unit("%"), parse_unit("CAD"))
        assert can_add(parse_unit("furlongs"), parse_unit("CAD"))


class TestCheckUnits:
    def test_clean_model(self):
        model = parse_document("""
sales:
  qty: {value: [2, 3], unit: units}
  price: {value: [10, 20], unit: CAD}
  amount: "=qty * price"
  total: "=SUM(amount)"
fees: {value: 5, unit: CAD}
net: {formula: "=sales.total - fees", unit: CAD}
""")
        assert check_units(model) == []

    def test_mixed_currencies(self):
        model = parse_document("""
a: {value: 1, unit: CAD}
b: {value: 2, unit: USD}
c: "=a + b"
""")
        warnings = check_units(model)
        assert len(warnings) == 1
        assert warnings[0].location == "c"
        assert warnings[0].formula == "=a + b"
        assert warnings[0].message == "Mixing incompatible units in addition/subtraction: CAD and USD"
        assert warnings[0].severity == "warning"

    def test_percentage_added_to_currency(self):
        model = parse_document("""
price: {value: 100, unit: CAD}
tax: {value: 0.1, unit: "%"}
gross: "=price + tax"
ok: "=price * (1 + tax)"
""")
        warnings = check_units(model)
        assert [w.location for w in warnings] == ["gross"]
        assert warnings[0].message == "Adding percentage to currency - did you mean to multiply?"

    def test_inferred_units_flow_downstream(self):
        model = parse_document("""
t:
  hours: {value: [1, 2], unit: hours}
  cost: {value: [5, 6], unit: CAD}
  spend: "=cost * 2"
  bad: "=spend - hours"
""")
        warnings = check_units(model)
        assert [w.location for w in warnings] == ["t.bad"]
        assert "CAD and hours" in warnings[0].message

    def test_division_of_same_units_is_ratio(self):
        model = parse_document("""
profit: {value: 10, unit: CAD}
revenue: {value: 40, unit: CAD}
margin: {formula: "=profit / revenue", unit: "%"}
mixed: "=profit / revenue + revenue"
""")
        validator = UnitValidator(model)
        warnings = validator.validate()
        assert [w.location for w in warnings] == ["mixed"]
        assert validator.unit_of("margin") == parse_unit("%")

    def test_declared_unit_disagrees_with_formula(self):
        model = parse_document("""
a: {value: 1, unit: CAD}
b: {formula: "=a * 2", unit: months}
""")
        warnings = check_units(model)
        assert [w.message for w in warnings] == ["Declared unit months but the formula gives CAD"]

    def test_function_results(self):
        model = parse_document("""
t:
  amount: {value: [1, 2], unit: EUR}
  days: {value: [3, 4], unit: days}
n: "=COUNT(t.amount) + SUM(t.days)"
m: "=ROUND(SUM(t.amount), 0) - MAX(t.amount)"
k: "=IF(TRUE, SUM(t.amount), 0) + SUM(t.days)"
""")
        warnings = check_units(model)
        assert [w.location for w in warnings] == ["n", "k"]
        assert "count and days" in warnings[0].message
        assert "EUR and days" in warnings[1].message

    def test_unknown_units_are_permissive(self):
        model = parse_document("""
a: {value: 1, unit: widgets}
b: {value: 2, unit: CAD}
c: "=a + b + 3"
""")
        assert check_units(model) == []

    def test_included_model_units(self):
        inner = parse_document("rate: {value: 0.05, unit: '%'}\nbase: {value: 100, unit: USD}\n")
        outer = parse_document('fee: {value: 1, unit: USD}\nx: "=inner.base + inner.rate"\ny: "=inner.base + fee"\n')
        outer.add_include(Include("inner.yaml", "inner", inner))
        warnings = check_units(outer)
        assert [w.location for w in warnings] == ["x"]
