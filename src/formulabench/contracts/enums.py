"""Status codes, modes, and kinds shared across engine components."""

from enum import StrEnum


class BaseType(StrEnum):
    """Base type of a formula input (the "factor type" base)."""

    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    OBJECT = "object"


class CalculationTrigger(StrEnum):
    """What caused a row calculation attempt.

    Recorded on every CalculationEvent for the audit log.
    """

    AUTO = "auto"
    CELL_UPDATE = "cell-update"
    MANUAL = "manual"


class RowPhase(StrEnum):
    """Lifecycle phase of a single row under automatic calculation.

    UNTOUCHED -> EDITING -> VALIDATING -> COMPUTED | INVALID | FAILED.
    COMPUTED, INVALID and FAILED are terminal until the next edit.
    """

    UNTOUCHED = "untouched"
    EDITING = "editing"
    VALIDATING = "validating"
    COMPUTED = "computed"
    INVALID = "invalid"
    FAILED = "failed"


class RoundingStrategy(StrEnum):
    """Rounding applied to numeric results when an engine hint asks for it."""

    FLOOR = "floor"
    CEIL = "ceil"
    ROUND = "round"
    TRUNC = "trunc"


class InvokeMode(StrEnum):
    """Where compiled formula bodies run.

    THREAD keeps slow user formulas off the event loop thread.
    INLINE calls them directly on the loop (deterministic, used in tests).
    """

    THREAD = "thread"
    INLINE = "inline"


class StoreChangeKind(StrEnum):
    """Kind of change notification emitted by the CellStore."""

    CELL = "cell"
    ROW_STATE = "row_state"
    BATCH = "batch"
    CLEARED = "cleared"
    STRUCTURE = "structure"
