"""Spreadsheet-style formula parsing, rendering and evaluation.

Public API::

    from tabcalc.formulas import parse_formula, extract_refs, evaluate_formula
"""

from tabcalc.formulas.errors import (
    ENGINE_ERRORS,
    FormulaDivisionError,
    FormulaError,
    FormulaFunctionError,
    FormulaParseError,
    FormulaRefError,
    FormulaTypeError,
    MathDomainError,
)
from tabcalc.formulas.evaluator import DictScope, evaluate, evaluate_formula
from tabcalc.formulas.functions import FUNCTIONS, check_functions, get_function
from tabcalc.formulas.parser import (
    extract_refs,
    function_names,
    iter_ref_uses,
    parse_cell_formula,
    parse_formula,
)
from tabcalc.formulas.render import normalize_formula, render_formula

__all__ = [
    "ENGINE_ERRORS",
    "FUNCTIONS",
    "DictScope",
    "FormulaDivisionError",
    "FormulaError",
    "FormulaFunctionError",
    "FormulaParseError",
    "FormulaRefError",
    "FormulaTypeError",
    "MathDomainError",
    "check_functions",
    "evaluate",
    "evaluate_formula",
    "extract_refs",
    "function_names",
    "get_function",
    "iter_ref_uses",
    "normalize_formula",
    "parse_cell_formula",
    "parse_formula",
    "render_formula",
]
