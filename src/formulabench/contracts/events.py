"""Audit events recorded by the engine.

Events are immutable and keyed by formula id. Timestamps are taken from the
engine Clock (monotonic seconds) so "newer than" comparisons are reliable
and deterministic under MockClock.

- CellUpdateEvent: a user edited one cell of a row
- CalculationEvent: one calculate_row attempt finished (any outcome)
- ValidationMessage: latest required-field violation for a formula
- ExecutionLogEntry: bounded, newest-first execution log line
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from formulabench.contracts.enums import CalculationTrigger
from formulabench.contracts.sentinels import MISSING


@dataclass(frozen=True, slots=True)
class CellUpdateEvent:
    """Emitted when a single cell changes.

    Attributes:
        timestamp: Clock time of the edit
        row_id: Edited row
        path: Flattened parameter path of the edited cell
        old_value: Value before the edit (MISSING if never written)
        new_value: Value after the edit
        is_valid: Row validity after the edit
        validation_errors: Constraint messages when is_valid is False
    """

    timestamp: float
    row_id: str
    path: str
    old_value: Any
    new_value: Any
    is_valid: bool
    validation_errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CalculationEvent:
    """Emitted once per calculation attempt, whatever its outcome."""

    timestamp: float
    row_id: str
    formula_id: str
    trigger: CalculationTrigger
    success: bool
    inputs: Mapping[str, Any] = field(default_factory=dict)
    inputs_hash: str | None = None
    result: Any = MISSING
    execution_time_ms: float | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ValidationMessage:
    """Latest pre-invocation validation failure for a formula.

    ``path`` is the dotted location of the failure for nested inputs
    (``"parent.child"``), or the top-level key.
    """

    field: str
    message: str
    timestamp: float
    path: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionLogEntry:
    """One line of the bounded formula execution log."""

    id: str
    timestamp: float
    formula_id: str
    row_id: str
    inputs: Mapping[str, Any]
    level: str = "info"
    result: Any = MISSING
    error: str | None = None
    stack: str | None = None
    execution_time_ms: float | None = None
