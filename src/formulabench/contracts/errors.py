"""Engine error taxonomy.

Row-level errors (validation, missing artifact, invocation) are caught at
the row boundary and surfaced as the row's ``error`` string; they never
escape calculate_row or execute_all_rows. The exceptions exist so the
boundary can classify what happened and so lower layers can raise with
structured context.

A cache miss is NOT an error: ArtifactCache.get returns None and the caller
treats it as a cold-path signal to recompile.
"""

from __future__ import annotations


class FormulaBenchError(Exception):
    """Base class for engine errors."""


class FormulaValidationError(FormulaBenchError):
    """A required field is missing or has the wrong shape.

    Attributes:
        formula_id: Formula whose schema was violated
        field: Key of the offending input or property
        path: Dotted path to the failure (``"parent.child"``)
    """

    def __init__(self, formula_id: str, field: str, message: str, path: str | None = None) -> None:
        self.formula_id = formula_id
        self.field = field
        self.path = path or field
        self.message = message
        super().__init__(message)


class ArtifactMissingError(FormulaBenchError):
    """No compiled artifact is cached for the formula; it must be recompiled."""

    def __init__(self, formula_id: str) -> None:
        self.formula_id = formula_id
        super().__init__(f"Formula {formula_id} is not compiled")


class CompilationError(FormulaBenchError):
    """Formula source could not be turned into an invocable artifact.

    Attributes:
        formula_id: Formula being compiled
        lineno: 1-based source line of a syntax error, when known
    """

    def __init__(self, formula_id: str, message: str, lineno: int | None = None) -> None:
        self.formula_id = formula_id
        self.lineno = lineno
        location = f" (line {lineno})" if lineno is not None else ""
        super().__init__(f"Failed to compile formula {formula_id}{location}: {message}")


class InvocationError(FormulaBenchError):
    """The user-supplied formula body raised.

    Wraps the original exception; ``__cause__`` is preserved for tracebacks.
    ``execution_time_ms`` is how long the body ran before raising.
    """

    def __init__(self, formula_id: str, original: BaseException, execution_time_ms: float | None = None) -> None:
        self.formula_id = formula_id
        self.original = original
        self.execution_time_ms = execution_time_ms
        message = str(original) or type(original).__name__
        super().__init__(message)


class RowPhaseError(FormulaBenchError):
    """An illegal row lifecycle transition was requested."""

    def __init__(self, row_id: str, current: str, target: str) -> None:
        self.row_id = row_id
        self.current = current
        self.target = target
        super().__init__(f"Row {row_id}: illegal transition {current} -> {target}")
