"""The function dispatch table.

Every callable formula function lives in :data:`FUNCTIONS`; the category
modules only contribute entries.  Lookups are by canonical upper-case
name.
"""

from __future__ import annotations

from lark import Tree

from tabcalc.formulas.errors import FormulaFunctionError
from tabcalc.formulas.fn_aggregate import AGGREGATE_FUNCTIONS
from tabcalc.formulas.fn_date import DATE_FUNCTIONS
from tabcalc.formulas.fn_error import ERROR_FUNCTIONS
from tabcalc.formulas.fn_finance import FINANCE_FUNCTIONS
from tabcalc.formulas.fn_logical import LOGICAL_FUNCTIONS
from tabcalc.formulas.fn_lookup import LOOKUP_FUNCTIONS
from tabcalc.formulas.fn_math import MATH_FUNCTIONS
from tabcalc.formulas.fn_text import TEXT_FUNCTIONS
from tabcalc.formulas.parser import call_args, function_name
from tabcalc.formulas.registry import FunctionSpec

FUNCTIONS: dict[str, FunctionSpec] = {}
for _table in (
    AGGREGATE_FUNCTIONS,
    MATH_FUNCTIONS,
    LOGICAL_FUNCTIONS,
    ERROR_FUNCTIONS,
    TEXT_FUNCTIONS,
    DATE_FUNCTIONS,
    LOOKUP_FUNCTIONS,
    FINANCE_FUNCTIONS,
):
    _clash = FUNCTIONS.keys() & _table.keys()
    if _clash:
        raise RuntimeError(f"duplicate function definitions: {sorted(_clash)}")
    FUNCTIONS.update(_table)


def get_function(name: str) -> FunctionSpec:
    """Look up a function spec by name (case-insensitive).

    Raises:
        FormulaFunctionError: If no such function exists.
    """
    spec = FUNCTIONS.get(name.upper())
    if spec is None:
        raise FormulaFunctionError(name)
    return spec


def is_range_arg(name: str, index: int) -> bool:
    """True if argument *index* of *name* is read as a whole column."""
    spec = FUNCTIONS.get(name.upper())
    return spec is not None and spec.is_range_arg(index)


def check_functions(tree: Tree) -> None:
    """Check every call in *tree* names a known function with a valid arity.

    Raises:
        FormulaFunctionError: On the first unknown function or bad arity.
    """
    for node in tree.iter_subtrees_topdown():
        if node.data == "func_call":
            get_function(function_name(node)).check_arity(len(call_args(node)))
