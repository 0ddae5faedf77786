"""Tree-walking evaluator for parsed model formulas.

Identifiers are resolved through a :class:`Scope`.  Evaluation runs in
one of two modes:

- row mode: a column reference yields the current row's element and
  scalars broadcast;
- array mode: a column reference yields the whole column.  Arguments a
  function reads as whole columns (``SUM(x)``) are evaluated in array
  mode, and operators apply element-wise over lists.
"""

from __future__ import annotations

import datetime
from typing import Any, Callable, Protocol

from lark import Token, Tree

from tabcalc.formulas.errors import (
    FormulaDivisionError,
    FormulaError,
    FormulaRefError,
    FormulaTypeError,
)
from tabcalc.formulas.fn_math import power
from tabcalc.formulas.functions import get_function
from tabcalc.formulas.parser import (
    CELL_RULES,
    call_args,
    function_name,
    parse_formula,
    string_value,
)
from tabcalc.formulas.registry import to_int, to_text
from tabcalc.values import is_number

# ---------------------------------------------------------------------------
# Scope protocol
# ---------------------------------------------------------------------------


class Scope(Protocol):
    """Resolves identifiers for the evaluator."""

    def resolve(self, name: str, array: bool) -> Any:
        """Value of *name*; a list for a column read in array mode."""
        ...

    def resolve_index(self, name: str, index: int) -> Any:
        """Element *index* (0-based) of column *name*."""
        ...


class DictScope:
    """Scope over a plain mapping.

    List values act as columns.  With *row* set, a column read in row
    mode yields its element at *row*; without it, such a read is an error.
    """

    def __init__(self, values: dict[str, Any], row: int | None = None) -> None:
        self.values = values
        self.row = row

    def _lookup(self, name: str) -> Any:
        if name not in self.values:
            raise FormulaRefError(name, available=sorted(self.values))
        return self.values[name]

    def resolve(self, name: str, array: bool) -> Any:
        value = self._lookup(name)
        if isinstance(value, list) and not array:
            if self.row is None:
                raise FormulaTypeError(
                    f"{name!r} is a column; read it inside a function that takes whole columns"
                )
            return value[self.row]
        return value

    def resolve_index(self, name: str, index: int) -> Any:
        value = self._lookup(name)
        if not isinstance(value, list):
            raise FormulaTypeError(f"{name!r} is not a column and cannot be indexed")
        if index < 0 or index >= len(value):
            raise FormulaRefError(f"{name}[{index}]")
        return value[index]


class EvalContext:
    """Evaluation state handed to function implementations.

    Attributes:
        scope: Identifier resolution.
        array: Whether column references currently yield whole columns.
        options: Solver settings for rate functions (``rate_guess``, ...).
    """

    def __init__(self, scope: Scope, array: bool = False, options: dict[str, Any] | None = None) -> None:
        self.scope = scope
        self.array = array
        self.options = options or {}

    def eval(self, node: Tree | Token, array: bool | None = None) -> Any:
        """Evaluate *node*, switching to array mode when *array* is True."""
        if array is None or array == self.array:
            return _eval(node, self)
        saved = self.array
        self.array = array
        try:
            return _eval(node, self)
        finally:
            self.array = saved


def evaluate(
    tree: Tree,
    scope: Scope,
    array: bool = False,
    options: dict[str, Any] | None = None,
) -> Any:
    """Evaluate a parse tree from ``parse_formula()`` against *scope*."""
    return _eval(tree, EvalContext(scope, array, options))


def evaluate_formula(formula: str | Tree, context: dict[str, Any], row: int | None = None) -> Any:
    """Parse (if needed) and evaluate *formula* over a plain mapping.

    Args:
        formula: Formula text or parse tree.
        context: Mapping of identifiers to values; lists act as columns.
        row: Current row for bare column references.
    """
    tree = parse_formula(formula) if isinstance(formula, str) else formula
    return evaluate(tree, DictScope(context, row))


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _broadcast(op: Callable[[Any, Any], Any], left: Any, right: Any) -> Any:
    """Apply a binary operator, element-wise when either side is a column."""
    left_list = isinstance(left, list)
    right_list = isinstance(right, list)
    if not left_list and not right_list:
        return op(left, right)
    if left_list and right_list and len(left) != len(right):
        raise FormulaTypeError(f"Column length mismatch: {len(left)} vs {len(right)}")
    n = len(left) if left_list else len(right)
    lefts = left if left_list else [left] * n
    rights = right if right_list else [right] * n
    return [op(a, b) for a, b in zip(lefts, rights)]


def _num(value: Any, op: str) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if is_number(value):
        return float(value)
    raise FormulaTypeError(f"Operator {op!r} needs numbers, got {value!r}")


def _is_date(value: Any) -> bool:
    return isinstance(value, datetime.date)


def _add(a: Any, b: Any) -> Any:
    if _is_date(a) and not _is_date(b):
        return a + datetime.timedelta(days=_num(b, "+"))
    if _is_date(b) and not _is_date(a):
        return b + datetime.timedelta(days=_num(a, "+"))
    return _num(a, "+") + _num(b, "+")


def _sub(a: Any, b: Any) -> Any:
    if _is_date(a) and _is_date(b):
        return float((a - b).days)
    if _is_date(a):
        return a - datetime.timedelta(days=_num(b, "-"))
    return _num(a, "-") - _num(b, "-")


def _mul(a: Any, b: Any) -> float:
    return _num(a, "*") * _num(b, "*")


def _div(a: Any, b: Any) -> float:
    divisor = _num(b, "/")
    if divisor == 0:
        raise FormulaDivisionError()
    return _num(a, "/") / divisor


def _pow(a: Any, b: Any) -> float:
    return power(_num(a, "^"), _num(b, "^"))


def _concat(a: Any, b: Any) -> str:
    return to_text(a, "&") + to_text(b, "&")


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if _is_date(value):
        return "date"
    if isinstance(value, str):
        return "text"
    return type(value).__name__


def _comparison(rule: str) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        ka, kb = _kind(a), _kind(b)
        if ka != kb:
            if rule == "eq":
                return False
            if rule == "neq":
                return True
            raise FormulaTypeError(f"Cannot compare {ka} {a!r} with {kb} {b!r}")
        if ka == "text":
            a, b = a.lower(), b.lower()
        if rule == "gt":
            return a > b
        if rule == "lt":
            return a < b
        if rule == "gte":
            return a >= b
        if rule == "lte":
            return a <= b
        if rule == "eq":
            return a == b
        return a != b

    return compare


_BINARY_OPS: dict[str, Callable[[Any, Any], Any]] = {
    "add": _add,
    "sub": _sub,
    "mul": _mul,
    "div": _div,
    "pow": _pow,
    "concat": _concat,
}
for _rule in ("gt", "lt", "gte", "lte", "eq", "neq"):
    _BINARY_OPS[_rule] = _comparison(_rule)


def _unary(op: Callable[[Any], Any], value: Any) -> Any:
    if isinstance(value, list):
        return [op(v) for v in value]
    return op(value)


# ---------------------------------------------------------------------------
# Tree walk
# ---------------------------------------------------------------------------


def _eval(node: Tree | Token, ctx: EvalContext) -> Any:
    """Recursively evaluate a tree node."""
    if isinstance(node, Token):
        raise FormulaError(f"Unexpected token {node!r}")

    rule = node.data

    # Start rule just wraps expr
    if rule == "start":
        return _eval(node.children[0], ctx)

    if rule in _BINARY_OPS:
        left = _eval(node.children[0], ctx)
        right = _eval(node.children[1], ctx)
        return _broadcast(_BINARY_OPS[rule], left, right)
    if rule == "neg":
        return _unary(lambda v: -_num(v, "-"), _eval(node.children[0], ctx))
    if rule == "pos":
        return _unary(lambda v: _num(v, "+"), _eval(node.children[0], ctx))
    if rule == "percent":
        return _unary(lambda v: _num(v, "%") / 100, _eval(node.children[0], ctx))

    # Literals
    if rule == "number":
        return float(str(node.children[0]))
    if rule == "boolean":
        return str(node.children[0]) == "TRUE"
    if rule == "string":
        return string_value(node.children[0])

    # References
    if rule == "ref":
        return ctx.scope.resolve(str(node.children[0]), ctx.array)
    if rule == "index_ref":
        name = str(node.children[0])
        index = to_int(ctx.eval(node.children[1], array=False), f"{name}[...]")
        return ctx.scope.resolve_index(name, index)

    if rule == "func_call":
        return _eval_func(node, ctx)

    if rule in CELL_RULES:
        raise FormulaError(f"Cell reference {node.data!r} cannot be evaluated; translate it first")

    raise FormulaError(f"Unknown node type: {rule}")


def _eval_func(node: Tree, ctx: EvalContext) -> Any:
    """Evaluate a function call node."""
    name = function_name(node)
    spec = get_function(name)
    raw_args = call_args(node)
    spec.check_arity(len(raw_args))

    # Lazy functions receive unevaluated AST nodes
    if spec.lazy:
        return spec.impl(raw_args, ctx)

    args = [ctx.eval(arg, array=ctx.array or spec.is_range_arg(i)) for i, arg in enumerate(raw_args)]

    # In array mode a single-value argument may arrive as a column:
    # apply the function element by element.
    mapped = [i for i, a in enumerate(args) if isinstance(a, list) and not spec.is_range_arg(i)]
    if ctx.array and mapped:
        lengths = {len(args[i]) for i in mapped}
        if len(lengths) != 1:
            raise FormulaTypeError(f"{name}: column arguments have different lengths {sorted(lengths)}")
        n = lengths.pop()
        results = []
        for row in range(n):
            row_args = [a[row] if i in mapped else a for i, a in enumerate(args)]
            results.append(spec.impl(row_args, ctx))
        return results

    return spec.impl(args, ctx)
