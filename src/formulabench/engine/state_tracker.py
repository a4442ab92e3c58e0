# src/formulabench/engine/state_tracker.py
"""Per-formula audit log of cell updates and calculations.

The tracker is append-only per formula id (until cleared) and keeps one
snapshot of the current rows per formula. Debug info derived from it:

- update and calculation counts with their last timestamps
- pending calculations: valid update events strictly newer than the last
  calculation event
- rows with a result, and valid rows still without one

clear_formula() must run whenever the active formula changes so
diagnostics never leak across formulas.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from formulabench.contracts.events import CalculationEvent, CellUpdateEvent
from formulabench.contracts.rows import TableRow


@dataclass(frozen=True, slots=True)
class DebugInfo:
    """Aggregates derived from one formula's audit log."""

    has_updates: bool
    has_calculations: bool
    update_count: int
    calculation_count: int
    pending_calculations: int
    rows_with_results: int
    rows_without_results: int
    last_update_time: float | None = None
    last_calculation_time: float | None = None


@dataclass(frozen=True, slots=True)
class StateTable:
    """Complete audit state for one formula."""

    formula_id: str
    cell_updates: tuple[CellUpdateEvent, ...] = ()
    calculations: tuple[CalculationEvent, ...] = ()
    current_rows: tuple[TableRow, ...] = field(default_factory=tuple)
    last_update: float | None = None
    last_calculation: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "formula_id": self.formula_id,
            "cell_updates": len(self.cell_updates),
            "calculations": len(self.calculations),
            "current_rows": [row.to_dict() for row in self.current_rows],
            "last_update": self.last_update,
            "last_calculation": self.last_calculation,
        }


def _snapshot(row: TableRow) -> TableRow:
    """Deep copy of a row (its data mapping is a read-only proxy)."""
    return TableRow(
        id=row.id,
        data=copy.deepcopy(dict(row.data)),
        result=copy.deepcopy(row.result),
        execution_time_ms=row.execution_time_ms,
        error=row.error,
        is_valid=row.is_valid,
    )


class StateTracker:
    """Audit log keyed by formula id.

    Example:
        tracker = StateTracker()
        tracker.record_cell_update("f1", CellUpdateEvent(...))
        tracker.record_calculation("f1", CalculationEvent(...))
        info = tracker.get_debug_info("f1")
    """

    def __init__(self) -> None:
        self._cell_updates: dict[str, list[CellUpdateEvent]] = {}
        self._calculations: dict[str, list[CalculationEvent]] = {}
        self._row_states: dict[str, list[TableRow]] = {}

    def record_cell_update(self, formula_id: str, event: CellUpdateEvent) -> None:
        self._cell_updates.setdefault(formula_id, []).append(event)

    def record_calculation(self, formula_id: str, event: CalculationEvent) -> None:
        self._calculations.setdefault(formula_id, []).append(event)

    def record_row_states(self, formula_id: str, rows: Iterable[TableRow]) -> None:
        """Replace the formula's row snapshot with deep copies of ``rows``."""
        self._row_states[formula_id] = [_snapshot(row) for row in rows]

    def get_cell_updates(self, formula_id: str) -> list[CellUpdateEvent]:
        return list(self._cell_updates.get(formula_id, ()))

    def get_calculations(self, formula_id: str) -> list[CalculationEvent]:
        return list(self._calculations.get(formula_id, ()))

    def get_row_states(self, formula_id: str) -> list[TableRow]:
        return list(self._row_states.get(formula_id, ()))

    def get_state_table(self, formula_id: str) -> StateTable:
        updates = self._cell_updates.get(formula_id, [])
        calculations = self._calculations.get(formula_id, [])
        return StateTable(
            formula_id=formula_id,
            cell_updates=tuple(updates),
            calculations=tuple(calculations),
            current_rows=tuple(self._row_states.get(formula_id, ())),
            last_update=updates[-1].timestamp if updates else None,
            last_calculation=calculations[-1].timestamp if calculations else None,
        )

    def get_debug_info(self, formula_id: str) -> DebugInfo:
        updates = self._cell_updates.get(formula_id, [])
        calculations = self._calculations.get(formula_id, [])
        rows = self._row_states.get(formula_id, [])

        last_calculation_time = calculations[-1].timestamp if calculations else None
        threshold = last_calculation_time if last_calculation_time is not None else float("-inf")
        pending = sum(1 for update in updates if update.timestamp > threshold and update.is_valid)

        return DebugInfo(
            has_updates=bool(updates),
            has_calculations=bool(calculations),
            update_count=len(updates),
            calculation_count=len(calculations),
            pending_calculations=pending,
            rows_with_results=sum(1 for row in rows if row.has_result),
            rows_without_results=sum(1 for row in rows if not row.has_result and row.is_valid is True),
            last_update_time=updates[-1].timestamp if updates else None,
            last_calculation_time=last_calculation_time,
        )

    def clear_formula(self, formula_id: str) -> None:
        self._cell_updates.pop(formula_id, None)
        self._calculations.pop(formula_id, None)
        self._row_states.pop(formula_id, None)

    def clear_all(self) -> None:
        self._cell_updates.clear()
        self._calculations.clear()
        self._row_states.clear()

    def formula_ids(self) -> list[str]:
        """Formulas with any recorded state."""
        return sorted(set(self._cell_updates) | set(self._calculations) | set(self._row_states))
