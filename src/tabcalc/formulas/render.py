"""Render parse trees back to formula text.

Output uses the minimum parentheses needed to keep the tree's meaning,
so ``render(parse(text))`` is a canonical form of *text*.  Reference
nodes can be rewritten on the way out, which is how the translators turn
identifiers into cell coordinates and back.
"""

from __future__ import annotations

from typing import Callable

from lark import Token, Tree

from tabcalc.formulas.errors import FormulaError
from tabcalc.formulas.parser import (
    CELL_RULES,
    REF_RULES,
    call_args,
    function_name,
    parse_formula,
)

# rule -> (operator, precedence); see the grammar in parser.py
_BINARY: dict[str, tuple[str, int]] = {
    "gt": (">", 1),
    "lt": ("<", 1),
    "gte": (">=", 1),
    "lte": ("<=", 1),
    "eq": ("=", 1),
    "neq": ("<>", 1),
    "concat": ("&", 2),
    "add": ("+", 3),
    "sub": ("-", 3),
    "mul": ("*", 4),
    "div": ("/", 4),
}
_UNARY_PREC = 5
_POW_PREC = 6
_PERCENT_PREC = 7
_ATOM_PREC = 8

# Called for every reference node with (node, in_range); returns the text
# to emit, or None to keep the default rendering.
RefRewriter = Callable[[Tree, bool], "str | None"]


def _precedence(node: Tree | Token) -> int:
    if not isinstance(node, Tree):
        return _ATOM_PREC
    if node.data in _BINARY:
        return _BINARY[node.data][1]
    if node.data in ("neg", "pos"):
        return _UNARY_PREC
    if node.data == "pow":
        return _POW_PREC
    if node.data == "percent":
        return _PERCENT_PREC
    return _ATOM_PREC


def quote_string(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def render_formula(
    tree: Tree,
    rewrite: RefRewriter | None = None,
    compact: bool = False,
) -> str:
    """Render a parse tree to formula text (with leading ``=``).

    Args:
        tree: Tree from ``parse_formula()`` or ``parse_cell_formula()``.
        rewrite: Optional reference rewriter.
        compact: Spreadsheet style (``=A2-B2``) instead of the spaced
            model style (``=revenue - cost``).
    """
    from tabcalc.formulas.functions import is_range_arg

    sep = "," if compact else ", "

    def operand(node: Tree | Token, min_prec: int, in_range: bool) -> str:
        text = walk(node, in_range)
        if _precedence(node) < min_prec:
            return f"({text})"
        return text

    def walk(node: Tree | Token, in_range: bool) -> str:
        if isinstance(node, Token):
            return str(node)
        rule = node.data
        if rule == "start":
            return walk(node.children[0], in_range)
        if rule in _BINARY:
            op, prec = _BINARY[rule]
            left = operand(node.children[0], prec, in_range)
            right = operand(node.children[1], prec + 1, in_range)
            return f"{left}{op}{right}" if compact else f"{left} {op} {right}"
        if rule == "neg":
            return "-" + operand(node.children[0], _UNARY_PREC, in_range)
        if rule == "pos":
            return "+" + operand(node.children[0], _UNARY_PREC, in_range)
        if rule == "pow":
            left = operand(node.children[0], _PERCENT_PREC, in_range)
            right = operand(node.children[1], _UNARY_PREC, in_range)
            return f"{left}^{right}" if compact else f"{left} ^ {right}"
        if rule == "percent":
            return operand(node.children[0], _PERCENT_PREC, in_range) + "%"
        if rule == "number":
            return str(node.children[0])
        if rule == "boolean":
            return str(node.children[0])
        if rule == "string":
            return str(node.children[0])
        if rule == "func_call":
            name = function_name(node)
            args = [
                walk(arg, in_range or is_range_arg(name, i))
                for i, arg in enumerate(call_args(node))
            ]
            return f"{name}({sep.join(args)})"
        if rule in REF_RULES or rule in CELL_RULES:
            if rewrite is not None:
                out = rewrite(node, in_range)
                if out is not None:
                    return out
            return _default_ref(node, walk, in_range)
        raise FormulaError(f"Unknown node type: {rule}")

    return "=" + walk(tree, False)


def _default_ref(node: Tree, walk: Callable[[Tree | Token, bool], str], in_range: bool) -> str:
    rule = node.data
    parts = [str(c) for c in node.children if isinstance(c, Token)]
    if rule == "index_ref":
        return f"{node.children[0]}[{walk(node.children[1], False)}]"
    if rule in ("range_ref",):
        return f"{parts[0]}:{parts[1]}"
    if rule == "sheet_cell_ref":
        return f"{parts[0]}{parts[1]}"
    if rule == "sheet_range_ref":
        return f"{parts[0]}{parts[1]}:{parts[2]}"
    return parts[0]


def normalize_formula(text: str) -> str:
    """Canonical spelling of a model formula: ``=a+b`` -> ``=a + b``."""
    return render_formula(parse_formula(text))
