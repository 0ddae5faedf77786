"""Error types for model loading, calculation, translation and solving.

Every error derives from :class:`TabcalcError` and can carry the
identifier whose evaluation failed and the literal formula text, so a
caller can point the user at the offending entry.
"""

from __future__ import annotations


class TabcalcError(Exception):
    """Base class for all tabcalc errors.

    Attributes:
        identifier: Model identifier the error originates from, if known.
        formula: Literal formula text being evaluated, if any.
    """

    identifier: str | None = None
    formula: str | None = None

    def attach(self, identifier: str | None, formula: str | None = None) -> TabcalcError:
        """Record the originating identifier/formula unless already set."""
        if self.identifier is None:
            self.identifier = identifier
        if self.formula is None:
            self.formula = formula
        return self

    def __str__(self) -> str:
        msg = super().__str__()
        if self.identifier and self.identifier not in msg:
            msg = f"{self.identifier}: {msg}"
        if self.formula and self.formula not in msg:
            msg += f" [formula {self.formula!r}]"
        return msg


# ---------------------------------------------------------------------------
# Model structure
# ---------------------------------------------------------------------------


class ModelError(TabcalcError):
    """A model is structurally invalid and cannot be calculated."""


class ModelParseError(ModelError):
    """Malformed model document.

    Attributes:
        path: Dotted path of the offending document entry.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        full = f"Model parse error: {message}"
        if path:
            full += f" (at {path!r})"
        super().__init__(full)


class ColumnTypeError(ModelError):
    """A column holds values of more than one type.

    Attributes:
        column: The offending column name.
    """

    def __init__(self, column: str, message: str) -> None:
        self.column = column
        super().__init__(f"Column {column!r}: {message}")


class UnknownReferenceError(ModelError):
    """A formula references an identifier no scoping strategy can resolve."""

    def __init__(self, reference: str, formula: str | None = None, origin: str | None = None) -> None:
        self.reference = reference
        self.identifier = origin
        self.formula = formula
        super().__init__(f"Unknown reference: {reference!r}")


class CycleError(ModelError):
    """Formulas reference each other in a cycle.

    Attributes:
        members: Every identifier that takes part in a cycle.
        path: One concrete cycle, first element repeated at the end.
    """

    def __init__(self, members: list[str], path: list[str] | None = None) -> None:
        self.members = sorted(members)
        self.path = path or []
        shown = " -> ".join(self.path) if self.path else ", ".join(self.members)
        super().__init__(f"Circular reference: {shown} (members: {', '.join(self.members)})")


class IncludeError(ModelError):
    """An included file is missing, unreadable or declared twice."""

    def __init__(self, file: str, reason: str) -> None:
        self.file = file
        super().__init__(f"Include {file!r}: {reason}")


class IncludeCycleError(ModelError):
    """Included files include each other."""

    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(f"Include cycle: {' -> '.join(chain)}")


class RowErrors(ModelError):
    """Per-row evaluation errors collected over a whole column.

    Attributes:
        errors: ``(row_index, message)`` pairs, 0-based rows.
    """

    def __init__(self, identifier: str, formula: str | None, errors: list[tuple[int, str]]) -> None:
        self.identifier = identifier
        self.formula = formula
        self.errors = errors
        rows = ", ".join(f"row {i}: {msg}" for i, msg in errors[:10])
        more = f" (+{len(errors) - 10} more)" if len(errors) > 10 else ""
        super().__init__(f"{identifier}: {len(errors)} row error(s): {rows}{more}")


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


class TranslationError(TabcalcError):
    """A construct cannot be expressed in the target formula syntax."""

    def __init__(self, message: str, identifier: str | None = None, formula: str | None = None) -> None:
        self.identifier = identifier
        self.formula = formula
        super().__init__(f"Translation error: {message}")


# ---------------------------------------------------------------------------
# Numerical solving
# ---------------------------------------------------------------------------


class ConvergenceError(TabcalcError):
    """An iterative solver failed to reach a solution."""


class NoSignChangeError(ConvergenceError):
    """The objective does not change sign between the bounds."""

    def __init__(self, lower: float, upper: float, message: str | None = None) -> None:
        self.lower = lower
        self.upper = upper
        super().__init__(message or f"No sign change in bounds [{lower}, {upper}]")


class IterationBudgetError(ConvergenceError):
    """The solver used its whole iteration budget without converging.

    Attributes:
        last: Best estimate reached before giving up.
    """

    def __init__(self, iterations: int, last: float | None = None) -> None:
        self.iterations = iterations
        self.last = last
        super().__init__(f"Exceeded iteration budget ({iterations} iterations)")


class SolverCancelled(TabcalcError):
    """A solver loop was cancelled by its caller."""
