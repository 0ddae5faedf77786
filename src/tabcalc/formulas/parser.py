"""Lark-based parsers for model formulas and spreadsheet cell formulas.

Model dialect:
- Identifiers: ``revenue``, ``sales.revenue``, ``plan.sales.revenue``
- Indexing: ``sales.revenue[0]`` (0-based)
- Function names may contain dots: ``STDEV.S(...)``

Spreadsheet dialect:
- Cells and ranges: ``B2``, ``$B$2``, ``B2:B9``
- Sheet-qualified: ``Sales!B2``, ``'plan.sales'!B2:B9``

Both dialects share operators, literals and function-call syntax.
"""

from __future__ import annotations

from typing import Iterator

from lark import Lark, Token, Tree, Visitor
from lark.exceptions import LarkError

from tabcalc.formulas.errors import FormulaParseError

# Operator precedence (lowest to highest):
#   1. Comparison: > < >= <= = <>
#   2. Concatenation: &
#   3. Addition/subtraction: + -
#   4. Multiplication/division: * /
#   5. Unary plus/minus: + -
#   6. Exponentiation: ^ (right-associative)
#   7. Postfix percent: %  (3% = 0.03)
#   8. Atoms
_EXPR_RULES = r"""
start: "=" expr

?expr: comparison

?comparison: concatenation
    | comparison ">" concatenation   -> gt
    | comparison "<" concatenation   -> lt
    | comparison ">=" concatenation  -> gte
    | comparison "<=" concatenation  -> lte
    | comparison "=" concatenation   -> eq
    | comparison "<>" concatenation  -> neq

?concatenation: addition
    | concatenation "&" addition  -> concat

?addition: multiplication
    | addition "+" multiplication  -> add
    | addition "-" multiplication  -> sub

?multiplication: unary
    | multiplication "*" unary  -> mul
    | multiplication "/" unary  -> div

?unary: exponentiation
    | "-" unary  -> neg
    | "+" unary  -> pos

?exponentiation: postfix
    | postfix "^" unary  -> pow

?postfix: atom
    | postfix "%"  -> percent

?atom: NUMBER                   -> number
    | BOOL                      -> boolean
    | STRING                    -> string
    | NAME "(" args ")"         -> func_call
    | "(" expr ")"
{atoms}

args: expr ("," expr)*
    |

BOOL.3: /(TRUE|FALSE)(?![A-Za-z0-9_.(\[])/

// Doubled quotes escape a quote inside a string
STRING: /"(?:[^"]|"")*"/

%import common.NUMBER
%import common.WS
%ignore WS
"""

MODEL_GRAMMAR = _EXPR_RULES.replace(
    "{atoms}",
    r"""
    | NAME "[" expr "]"         -> index_ref
    | NAME                      -> ref

// Dotted identifier: name, table.column, alias.table.column
NAME.1: /[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*/
""",
)

CELL_GRAMMAR = _EXPR_RULES.replace(
    "{atoms}",
    r"""
    | SHEET_PREFIX CELL ":" CELL  -> sheet_range_ref
    | SHEET_PREFIX CELL           -> sheet_cell_ref
    | CELL ":" CELL               -> range_ref
    | CELL                        -> cell_ref
    | NAME                        -> name_ref

// Sheet prefix: Sales! or 'My Sheet'! (quotes doubled inside)
SHEET_PREFIX.4: /('(?:[^']|'')+'|[A-Za-z_][A-Za-z0-9_.]*)!/

// A1-style cell, optionally absolute; never the head of a longer name
CELL.2: /\$?[A-Z]{1,3}\$?[0-9]+(?![A-Za-z0-9_.(])/

NAME.1: /[A-Za-z_][A-Za-z0-9_.]*/
""",
)

_model_parser = Lark(MODEL_GRAMMAR, parser="lalr", start="start")
_cell_parser = Lark(CELL_GRAMMAR, parser="lalr", start="start")

REF_RULES = frozenset({"ref", "index_ref"})
CELL_RULES = frozenset({"cell_ref", "range_ref", "sheet_cell_ref", "sheet_range_ref", "name_ref"})


def _parse(parser: Lark, text: str) -> Tree:
    text = text.strip()
    if not text.startswith("="):
        raise FormulaParseError("Formula must start with '='", position=0, formula=text)
    try:
        return parser.parse(text)
    except LarkError as exc:
        # Extract position info from Lark exception if available
        pos = getattr(exc, "column", None)
        raise FormulaParseError(str(exc).splitlines()[0], position=pos, formula=text) from exc


def parse_formula(text: str) -> Tree:
    """Parse a model formula (must start with ``=``) into a Lark Tree.

    Args:
        text: The formula text, e.g. ``"=revenue * (1 - tax_rate)"``.

    Returns:
        A Lark parse tree.

    Raises:
        FormulaParseError: If the formula has invalid syntax.
    """
    return _parse(_model_parser, text)


def parse_cell_formula(text: str) -> Tree:
    """Parse a spreadsheet cell formula such as ``=B2-C2`` or ``=SUM(Sales!B2:B4)``.

    Raises:
        FormulaParseError: If the formula has invalid syntax.
    """
    return _parse(_cell_parser, text)


def unquote_sheet(prefix: str) -> str:
    """``'My Sheet'!`` -> ``My Sheet``; ``Sales!`` -> ``Sales``."""
    name = prefix[:-1] if prefix.endswith("!") else prefix
    if name.startswith("'") and name.endswith("'"):
        return name[1:-1].replace("''", "'")
    return name


def string_value(token: Token | str) -> str:
    """Decode a STRING token: strip quotes, collapse doubled quotes."""
    raw = str(token)
    return raw[1:-1].replace('""', '"')


def function_name(node: Tree) -> str:
    """Canonical upper-case name of a ``func_call`` node (``_xlfn.`` stripped)."""
    name = str(node.children[0]).upper()
    for prefix in ("_XLFN._XLWS.", "_XLFN.", "_XLWS."):
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def call_args(node: Tree) -> list[Tree | Token]:
    """Argument nodes of a ``func_call`` node."""
    args_node = node.children[1]
    return list(args_node.children) if args_node.children else []


# ---------------------------------------------------------------------------
# Reference extraction
# ---------------------------------------------------------------------------


class RefUse:
    """One identifier occurrence in a formula.

    Attributes:
        name: The identifier as written.
        in_range: True if it sits inside an argument a function reads as a
            whole column (``SUM(x)``), False if it is read one row at a time.
        indexed: True for ``name[i]`` occurrences.
    """

    __slots__ = ("name", "in_range", "indexed")

    def __init__(self, name: str, in_range: bool, indexed: bool) -> None:
        self.name = name
        self.in_range = in_range
        self.indexed = indexed

    def __repr__(self) -> str:
        return f"RefUse({self.name!r}, in_range={self.in_range}, indexed={self.indexed})"


def iter_ref_uses(tree: Tree) -> Iterator[RefUse]:
    """Yield every identifier use with its evaluation context."""
    from tabcalc.formulas.functions import is_range_arg

    def walk(node: Tree | Token, in_range: bool) -> Iterator[RefUse]:
        if not isinstance(node, Tree):
            return
        if node.data == "ref":
            yield RefUse(str(node.children[0]), in_range, False)
            return
        if node.data == "index_ref":
            yield RefUse(str(node.children[0]), in_range, True)
            # The index expression is always a single value
            yield from walk(node.children[1], False)
            return
        if node.data == "func_call":
            fname = function_name(node)
            for i, arg in enumerate(call_args(node)):
                yield from walk(arg, in_range or is_range_arg(fname, i))
            return
        for child in node.children:
            yield from walk(child, in_range)

    yield from walk(tree, False)


class _RefCollector(Visitor):
    """Visitor that collects identifier and function names from a parse tree."""

    def __init__(self) -> None:
        self.refs: set[str] = set()
        self.functions: set[str] = set()

    def ref(self, tree: Tree) -> None:
        self.refs.add(str(tree.children[0]))

    def index_ref(self, tree: Tree) -> None:
        self.refs.add(str(tree.children[0]))

    def func_call(self, tree: Tree) -> None:
        self.functions.add(function_name(tree))


def extract_refs(tree: Tree) -> set[str]:
    """Extract all referenced identifiers from a parsed model formula.

    Args:
        tree: A parse tree from ``parse_formula()``.

    Returns:
        Set of identifiers as written (``a``, ``t.c``, ``alias.t.c``).
    """
    collector = _RefCollector()
    collector.visit(tree)
    return collector.refs


def function_names(tree: Tree) -> set[str]:
    """Canonical names of every function called in *tree*."""
    collector = _RefCollector()
    collector.visit(tree)
    return collector.functions
