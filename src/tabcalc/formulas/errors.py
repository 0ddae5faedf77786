"""Error types for formula parsing and evaluation."""

from __future__ import annotations

from tabcalc.errors import ConvergenceError, TabcalcError


class FormulaError(TabcalcError):
    """Base class for all formula-related errors."""


class FormulaParseError(FormulaError):
    """Syntax error in a formula expression.

    Attributes:
        position: Character position where the error was detected.
        message: Human-readable description.
    """

    def __init__(self, message: str, position: int | None = None, formula: str | None = None) -> None:
        self.position = position
        self.formula = formula
        full = f"Formula parse error: {message}"
        if position is not None:
            full += f" (at position {position})"
        super().__init__(full)


class FormulaRefError(FormulaError):
    """Reference that cannot be resolved while evaluating.

    Attributes:
        ref_name: The unresolved reference.
        available: Names that are currently available.
    """

    def __init__(self, ref_name: str, available: list[str] | None = None) -> None:
        self.ref_name = ref_name
        self.available = available or []
        msg = f"Unknown reference: {ref_name!r}"
        if self.available:
            msg += f". Available: {self.available}"
        super().__init__(msg)


class FormulaFunctionError(FormulaError):
    """Unknown function, wrong number of arguments, or a failed lookup.

    Attributes:
        func_name: The function that caused the error.
    """

    def __init__(self, func_name: str, message: str | None = None) -> None:
        self.func_name = func_name
        msg = message or f"Unknown function: {func_name!r}"
        super().__init__(msg)


class FormulaTypeError(FormulaError):
    """A value has the wrong type for an operator or function."""


class FormulaDivisionError(FormulaError):
    """Division by zero."""

    def __init__(self, message: str = "Division by zero") -> None:
        super().__init__(message)


class MathDomainError(FormulaError):
    """Result is mathematically undefined (negative root, log of zero, ...)."""


# Errors that count as "a formula evaluated to an error" for IFERROR,
# ISERROR and per-row error collection.
ENGINE_ERRORS: tuple[type[Exception], ...] = (
    FormulaError,
    ConvergenceError,
    ArithmeticError,
    ValueError,
)
