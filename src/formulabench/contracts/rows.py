"""Row and outcome contracts.

A row is a fixed envelope (id, result, execution time, error, validity)
plus a separate mapping of flattened parameter paths to cell values. The
envelope never grows schema-dependent keys; the data mapping is the only
schema-shaped part and is validated at the pipeline boundary.

"No result yet" is ``MISSING``; ``None`` is a legitimate formula result.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

from formulabench.contracts.enums import StoreChangeKind
from formulabench.contracts.sentinels import MISSING, MissingSentinel


def _frozen_mapping(data: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data))


@dataclass(frozen=True, slots=True)
class TableRow:
    """Immutable snapshot of one data-sheet row.

    Attributes:
        id: Stable row identifier (``row-<formulaId>-<index>``)
        data: Flattened parameter path -> cell value
        result: Formula result, or MISSING before any successful attempt
        execution_time_ms: Duration of the last attempt, if any
        error: Validation or invocation error of the last attempt, if any
        is_valid: Constraint-level validity of ``data`` (None = never checked)
    """

    id: str
    data: Mapping[str, Any] = field(default_factory=dict)
    result: Any = MISSING
    execution_time_ms: float | None = None
    error: str | None = None
    is_valid: bool | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", _frozen_mapping(self.data))

    @property
    def has_result(self) -> bool:
        return self.result is not MISSING

    @property
    def has_data(self) -> bool:
        """True when at least one cell holds a non-empty value."""
        return any(value not in ("", None) and value is not MISSING for value in self.data.values())

    def with_outcome(self, outcome: RowOutcome) -> TableRow:
        """Return a copy carrying ``outcome`` in the envelope."""
        return replace(
            self,
            result=outcome.result,
            execution_time_ms=outcome.execution_time_ms,
            error=outcome.error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form used by persistence and debug dumps."""
        out: dict[str, Any] = {"id": self.id, "data": dict(self.data)}
        if self.has_result:
            out["result"] = self.result
        if self.execution_time_ms is not None:
            out["execution_time_ms"] = self.execution_time_ms
        if self.error is not None:
            out["error"] = self.error
        if self.is_valid is not None:
            out["is_valid"] = self.is_valid
        return out


@dataclass(frozen=True, slots=True)
class RowOutcome:
    """Outcome fields written back into a row envelope.

    ``RowOutcome.cleared()`` wipes a stale outcome (used when validation
    fails before invocation).
    """

    result: Any = MISSING
    execution_time_ms: float | None = None
    error: str | None = None

    @classmethod
    def cleared(cls, error: str | None = None) -> RowOutcome:
        return cls(result=MISSING, execution_time_ms=None, error=error)


@dataclass(frozen=True, slots=True)
class RowCalculationResult:
    """Result of one calculate_row attempt.

    Attributes:
        success: True when the artifact ran and returned a value
        result: Returned value (MISSING on failure)
        execution_time_ms: Wall-clock duration of the invocation (0.0 if skipped)
        error: Failure message when success is False
        invoked: Whether the artifact was actually called
        discarded: True when a newer edit superseded this attempt
        validation_failed: True when a required field was missing
    """

    success: bool
    result: Any = MISSING
    execution_time_ms: float = 0.0
    error: str | None = None
    invoked: bool = False
    discarded: bool = False
    validation_failed: bool = False

    def to_outcome(self) -> RowOutcome:
        if self.success:
            return RowOutcome(result=self.result, execution_time_ms=self.execution_time_ms, error=None)
        if not self.invoked:
            return RowOutcome.cleared(error=self.error)
        return RowOutcome(result=MISSING, execution_time_ms=self.execution_time_ms, error=self.error)


@dataclass(frozen=True, slots=True)
class MetricsData:
    """Aggregate execution metrics for one formula's rows."""

    total_time: float
    average_time: float
    calculated_rows: int
    total_rows: int


@dataclass(frozen=True, slots=True)
class StoreChange:
    """Notification emitted by the CellStore after a write.

    For CELL changes ``row_id``/``col_id``/``value`` describe the write.
    ROW_STATE carries ``row_id`` only. BATCH lists every touched row in
    ``row_ids``; subscribers should re-read those rows.
    """

    kind: StoreChangeKind
    row_id: str | None = None
    col_id: str | None = None
    value: Any = MISSING
    row_ids: tuple[str, ...] = ()


__all__ = [
    "MISSING",
    "MetricsData",
    "MissingSentinel",
    "RowCalculationResult",
    "RowOutcome",
    "StoreChange",
    "TableRow",
]
