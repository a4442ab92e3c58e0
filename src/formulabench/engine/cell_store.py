# src/formulabench/engine/cell_store.py
"""Cell storage with change notification.

CellStore holds cell values per (row, column) plus a fixed envelope per
row (validity and the last calculation outcome). It performs no
validation and no computation: writers decide what to store, subscribers
decide what to recompute.

Notifications:
- store listeners receive a StoreChange for every non-silent change
- cell listeners receive the new value of one (row, column)
- inside ``with store.batch():`` per-write notifications are deferred and
  collapse into one BATCH change listing every touched row

Each row also carries a data generation drawn from one store-wide
counter: it changes on every cell write (silent or not) and when a row is
created, so a dropped and recreated row never repeats an earlier value.
The pipeline compares generations to tell whether a row was edited or
replaced while a calculation was in flight.

Listener exceptions propagate to the writer; listeners are engine code.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import structlog

from formulabench.contracts.enums import StoreChangeKind
from formulabench.contracts.rows import RowOutcome, StoreChange, TableRow
from formulabench.contracts.sentinels import MISSING

logger = structlog.get_logger(__name__)

StoreListener = Callable[[StoreChange], None]
CellListener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


@dataclass(slots=True)
class _Envelope:
    is_valid: bool | None = None
    result: Any = MISSING
    execution_time_ms: float | None = None
    error: str | None = None
    generation: int = 0


class CellStore:
    """Mutable (row, column) -> value storage for one data sheet.

    Example:
        store = CellStore()
        store.subscribe(lambda change: print(change.kind, change.row_id))
        store.set_value("row-f1-0", "price", 10)      # prints: cell row-f1-0
        with store.batch():
            store.set_value("row-f1-0", "qty", 2)
            store.set_value("row-f1-1", "qty", 3)     # one BATCH notification
    """

    def __init__(self) -> None:
        self._cells: dict[str, dict[str, Any]] = {}
        self._envelopes: dict[str, _Envelope] = {}
        self._row_order: list[str] = []
        self._columns: list[str] = []
        self._listeners: list[StoreListener] = []
        self._cell_listeners: dict[tuple[str, str], list[CellListener]] = {}
        self._batch_depth = 0
        self._batch_rows: dict[str, None] = {}
        self._generation_seq = 0

    # --- Structure ---

    @property
    def row_ids(self) -> list[str]:
        return list(self._row_order)

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def has_row(self, row_id: str) -> bool:
        return row_id in self._envelopes

    def add_row(self, row_id: str, data: Mapping[str, Any] | None = None, *, silent: bool = False) -> None:
        """Register a row (appended to row order) with optional initial cells."""
        self._ensure_row(row_id)
        if data:
            for col_id, value in data.items():
                self._write(row_id, col_id, value)
        self._changed(StoreChange(kind=StoreChangeKind.STRUCTURE, row_id=row_id, row_ids=(row_id,)), silent)

    def insert_row(
        self, index: int, row_id: str, data: Mapping[str, Any] | None = None, *, silent: bool = False
    ) -> None:
        """Register a row at ``index`` in row order."""
        if row_id in self._envelopes:
            raise ValueError(f"Row {row_id} already exists")
        self._row_order.insert(index, row_id)
        self._envelopes[row_id] = self._new_envelope()
        self._cells[row_id] = {}
        for col_id, value in (data or {}).items():
            self._write(row_id, col_id, value)
        self._changed(StoreChange(kind=StoreChangeKind.STRUCTURE, row_id=row_id, row_ids=(row_id,)), silent)

    def remove_row(self, row_id: str, *, silent: bool = False) -> bool:
        """Drop a row with its cells and envelope; returns whether it existed."""
        if row_id not in self._envelopes:
            return False
        del self._envelopes[row_id]
        self._cells.pop(row_id, None)
        self._row_order.remove(row_id)
        for key in [key for key in self._cell_listeners if key[0] == row_id]:
            del self._cell_listeners[key]
        self._changed(StoreChange(kind=StoreChangeKind.STRUCTURE, row_id=row_id, row_ids=(row_id,)), silent)
        return True

    def sync_structure(self, rows: Iterable[str], columns: Iterable[str]) -> None:
        """Reconcile storage with a new row/column set.

        Rows and columns not in the new set are dropped together with
        their cells; new rows are registered empty. Row order follows
        ``rows``.
        """
        new_rows = list(dict.fromkeys(rows))
        new_columns = list(dict.fromkeys(columns))
        keep_rows = set(new_rows)
        keep_columns = set(new_columns)

        dropped_rows = [row_id for row_id in self._row_order if row_id not in keep_rows]
        for row_id in dropped_rows:
            self._envelopes.pop(row_id, None)
            self._cells.pop(row_id, None)

        dropped_cells = 0
        for cells in self._cells.values():
            orphaned = [col_id for col_id in cells if col_id not in keep_columns]
            for col_id in orphaned:
                del cells[col_id]
            dropped_cells += len(orphaned)

        self._cell_listeners = {
            key: listeners
            for key, listeners in self._cell_listeners.items()
            if key[0] in keep_rows and key[1] in keep_columns
        }
        for row_id in new_rows:
            if row_id not in self._envelopes:
                self._envelopes[row_id] = self._new_envelope()
                self._cells[row_id] = {}
        self._row_order = new_rows
        self._columns = new_columns

        if dropped_rows or dropped_cells:
            logger.debug("Structure synced", dropped_rows=len(dropped_rows), dropped_cells=dropped_cells)
        self._changed(StoreChange(kind=StoreChangeKind.STRUCTURE, row_ids=tuple(new_rows)), silent=False)

    # --- Cells ---

    def get_value(self, row_id: str, col_id: str) -> Any:
        """Last written value, or MISSING if the cell was never written."""
        cells = self._cells.get(row_id)
        if cells is None:
            return MISSING
        return cells.get(col_id, MISSING)

    def set_value(self, row_id: str, col_id: str, value: Any, silent: bool = False) -> Any:
        """Write one cell and return the previous value (MISSING if none).

        Unknown rows are registered on first write. Listeners are only
        notified when the value actually changed.
        """
        self._ensure_row(row_id)
        old_value = self._write(row_id, col_id, value)
        if old_value is MISSING or old_value != value or type(old_value) is not type(value):
            self._changed(StoreChange(kind=StoreChangeKind.CELL, row_id=row_id, col_id=col_id, value=value), silent)
            if not silent:
                for listener in list(self._cell_listeners.get((row_id, col_id), ())):
                    listener(value)
        return old_value

    def get_row_data(self, row_id: str) -> dict[str, Any]:
        """Copy of one row's cells (empty when the row is unknown)."""
        return copy.deepcopy(self._cells.get(row_id, {}))

    def clear_all_data(self) -> None:
        """Remove every cell value and outcome, keeping row/column definitions."""
        for row_id in self._envelopes:
            self._envelopes[row_id] = self._new_envelope()
            self._cells[row_id] = {}
        self._batch_rows.clear()
        self._emit(StoreChange(kind=StoreChangeKind.CLEARED, row_ids=tuple(self._row_order)))

    # --- Row envelopes ---

    def generation(self, row_id: str) -> int:
        """Data generation of a row (0 for unknown rows)."""
        envelope = self._envelopes.get(row_id)
        return envelope.generation if envelope is not None else 0

    def set_row_state(self, row_id: str, *, is_valid: bool | None, silent: bool = False) -> None:
        envelope = self._ensure_row(row_id)
        if envelope.is_valid == is_valid:
            return
        envelope.is_valid = is_valid
        self._changed(StoreChange(kind=StoreChangeKind.ROW_STATE, row_id=row_id), silent)

    def apply_outcome(self, row_id: str, outcome: RowOutcome, *, silent: bool = False) -> None:
        """Write a calculation outcome into the row envelope."""
        envelope = self._envelopes.get(row_id)
        if envelope is None:
            logger.debug("Outcome for unknown row dropped", row_id=row_id)
            return
        envelope.result = outcome.result
        envelope.execution_time_ms = outcome.execution_time_ms
        envelope.error = outcome.error
        self._changed(StoreChange(kind=StoreChangeKind.ROW_STATE, row_id=row_id), silent)

    def apply_outcomes(self, outcomes: Mapping[str, RowOutcome]) -> None:
        """Write many outcomes with a single BATCH notification."""
        with self.batch():
            for row_id, outcome in outcomes.items():
                self.apply_outcome(row_id, outcome)

    def get_row(self, row_id: str) -> TableRow:
        """Immutable snapshot of one row.

        Raises:
            KeyError: If the row is unknown.
        """
        envelope = self._envelopes[row_id]
        return TableRow(
            id=row_id,
            data=self.get_row_data(row_id),
            result=envelope.result,
            execution_time_ms=envelope.execution_time_ms,
            error=envelope.error,
            is_valid=envelope.is_valid,
        )

    def rows(self) -> list[TableRow]:
        """Snapshots of every row in row order."""
        return [self.get_row(row_id) for row_id in self._row_order]

    # --- Persistence ---

    def export_data(self) -> dict[str, dict[str, Any]]:
        """Row id -> cells, in row order."""
        return {row_id: self.get_row_data(row_id) for row_id in self._row_order}

    def load_data(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        """Restore cells silently, then emit one BATCH notification."""
        for row_id, cells in data.items():
            self._ensure_row(row_id)
            for col_id, value in cells.items():
                self._write(row_id, col_id, value)
        self._batch_rows.update(dict.fromkeys(data))
        if self._batch_depth == 0:
            self.notify_batch_update()

    # --- Notification ---

    def subscribe(self, listener: StoreListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_cell(self, row_id: str, col_id: str, listener: CellListener) -> Unsubscribe:
        key = (row_id, col_id)
        self._cell_listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._cell_listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._cell_listeners[key]

        return unsubscribe

    @contextmanager
    def batch(self) -> Iterator[CellStore]:
        """Defer notifications until the outermost batch exits.

        The BATCH notification is emitted even when the block raises, so
        observers see the writes that did land.
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._batch_rows:
                self.notify_batch_update()

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    def notify_batch_update(self) -> None:
        """Emit one BATCH change for every row touched since the last one."""
        row_ids = tuple(self._batch_rows)
        self._batch_rows.clear()
        self._emit(StoreChange(kind=StoreChangeKind.BATCH, row_ids=row_ids))

    # --- Internals ---

    def _next_generation(self) -> int:
        self._generation_seq += 1
        return self._generation_seq

    def _new_envelope(self) -> _Envelope:
        return _Envelope(generation=self._next_generation())

    def _ensure_row(self, row_id: str) -> _Envelope:
        envelope = self._envelopes.get(row_id)
        if envelope is None:
            envelope = self._new_envelope()
            self._envelopes[row_id] = envelope
            self._cells[row_id] = {}
            self._row_order.append(row_id)
        return envelope

    def _write(self, row_id: str, col_id: str, value: Any) -> Any:
        cells = self._cells[row_id]
        old_value = cells.get(col_id, MISSING)
        cells[col_id] = value
        self._envelopes[row_id].generation = self._next_generation()
        if col_id not in self._columns:
            self._columns.append(col_id)
        return old_value

    def _changed(self, change: StoreChange, silent: bool) -> None:
        if silent:
            return
        if self._batch_depth > 0:
            touched = change.row_ids or ((change.row_id,) if change.row_id is not None else ())
            self._batch_rows.update(dict.fromkeys(touched))
            return
        self._emit(change)

    def _emit(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            listener(change)
