"""Error-handling formula functions: ISERROR."""

from __future__ import annotations

from typing import Any

from tabcalc.formulas.errors import ENGINE_ERRORS
from tabcalc.formulas.registry import FunctionSpec, fn

ERROR_FUNCTIONS: dict[str, FunctionSpec] = {}


@fn(ERROR_FUNCTIONS, "ISERROR", 1, 1, lazy=True)
def _fn_iserror(raw_args: list, ctx: Any) -> bool:
    """ISERROR(expr): TRUE if the expression raises an error.

    This is a lazy function: it receives unevaluated AST nodes.
    """
    try:
        ctx.eval(raw_args[0])
        return False
    except ENGINE_ERRORS:
        return True
