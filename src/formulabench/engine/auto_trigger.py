# src/formulabench/engine/auto_trigger.py
"""Automatic calculation of rows that became valid without a result.

Per-row state machine:

    UNTOUCHED -> EDITING -> VALIDATING -> COMPUTED | INVALID | FAILED

- an edit moves any row to EDITING (restarting its debounce)
- a debounce that fires on an invalid row ends in INVALID
- a finished attempt ends in COMPUTED (success), INVALID (required field
  missing) or FAILED (missing artifact or the formula raised)
- terminal phases only leave through a new edit or an explicit
  recalculation
- reset() (formula switch) returns every row to UNTOUCHED

scan() schedules eligible rows ``delay`` seconds later. A row is eligible
when it is valid, has no result, holds at least one non-empty value, has
not been auto-attempted since its last edit, and has no pending debounce.
Scans are skipped while an edit is recent or the tracker still counts
pending calculations, and when the rows' shape is unchanged since the
last scan that ran.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import structlog

from formulabench.contracts.enums import CalculationTrigger, RowPhase
from formulabench.contracts.errors import RowPhaseError
from formulabench.contracts.rows import RowCalculationResult, TableRow
from formulabench.engine.cell_store import CellStore
from formulabench.engine.clock import DEFAULT_CLOCK, Clock
from formulabench.engine.pipeline import CalculationPipeline
from formulabench.engine.state_tracker import StateTracker
from formulabench.engine.timers import KeyedTimers, Scheduler

logger = structlog.get_logger(__name__)

DEFAULT_AUTO_TRIGGER_DELAY_SECONDS = 0.1
DEFAULT_RECENT_UPDATE_WINDOW_SECONDS = 1.0

_TERMINAL = frozenset({RowPhase.COMPUTED, RowPhase.INVALID, RowPhase.FAILED})

ALLOWED_TRANSITIONS: dict[RowPhase, frozenset[RowPhase]] = {
    RowPhase.UNTOUCHED: frozenset({RowPhase.EDITING, RowPhase.VALIDATING}),
    RowPhase.EDITING: frozenset({RowPhase.EDITING, RowPhase.VALIDATING, RowPhase.INVALID}),
    RowPhase.VALIDATING: frozenset({RowPhase.EDITING, RowPhase.VALIDATING, *_TERMINAL}),
    RowPhase.COMPUTED: frozenset({RowPhase.EDITING, RowPhase.VALIDATING}),
    RowPhase.INVALID: frozenset({RowPhase.EDITING, RowPhase.VALIDATING}),
    RowPhase.FAILED: frozenset({RowPhase.EDITING, RowPhase.VALIDATING}),
}

RowSignature = tuple[tuple[str, bool | None, bool, tuple[str, ...]], ...]


def row_signature(rows: Sequence[TableRow]) -> RowSignature:
    """Shape of the rows that matters for eligibility."""
    return tuple((row.id, row.is_valid, row.has_result, tuple(row.data.keys())) for row in rows)


class AutoTriggerController:
    """Row phase tracking plus the auto-calculation scheduler.

    Registers itself as a pipeline observer so phases follow edits and
    attempts from every trigger.

    Example:
        controller = AutoTriggerController(pipeline, store, tracker, scheduler=scheduler, clock=clock)
        controller.scan()            # schedules eligible rows
        await scheduler.advance(0.1) # with ManualScheduler: rows calculate
    """

    def __init__(
        self,
        pipeline: CalculationPipeline,
        store: CellStore,
        tracker: StateTracker,
        *,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        delay_seconds: float = DEFAULT_AUTO_TRIGGER_DELAY_SECONDS,
        recent_update_window_seconds: float = DEFAULT_RECENT_UPDATE_WINDOW_SECONDS,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._tracker = tracker
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._timers = KeyedTimers(scheduler if scheduler is not None else pipeline.scheduler)
        self._delay = delay_seconds
        self._recent_window = recent_update_window_seconds
        self._phases: dict[str, RowPhase] = {}
        self._attempted: set[str] = set()
        self._last_signature: RowSignature | None = None
        pipeline.add_observer(self)

    # --- State machine ---

    def phase(self, row_id: str) -> RowPhase:
        return self._phases.get(row_id, RowPhase.UNTOUCHED)

    def phases(self) -> dict[str, RowPhase]:
        return dict(self._phases)

    def transition(self, row_id: str, target: RowPhase) -> None:
        """Move a row to ``target``.

        Raises:
            RowPhaseError: If the transition is not allowed.
        """
        current = self.phase(row_id)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise RowPhaseError(row_id, current, target)
        self._phases[row_id] = target

    def _follow(self, row_id: str, target: RowPhase) -> None:
        # Notifications can arrive for rows reset mid-flight; those are ignored
        try:
            self.transition(row_id, target)
        except RowPhaseError as e:
            logger.debug("Ignoring phase notification", row_id=row_id, current=e.current, target=e.target)

    # --- Pipeline observer ---

    def row_edited(self, row_id: str) -> None:
        self._attempted.discard(row_id)
        self._timers.cancel(row_id)
        self._follow(row_id, RowPhase.EDITING)

    def calculation_started(self, row_id: str, trigger: CalculationTrigger) -> None:
        self._follow(row_id, RowPhase.VALIDATING)

    def calculation_finished(self, row_id: str, result: RowCalculationResult, trigger: CalculationTrigger) -> None:
        if result.discarded:
            return
        if result.success:
            self._follow(row_id, RowPhase.COMPUTED)
        elif result.validation_failed:
            self._follow(row_id, RowPhase.INVALID)
        else:
            self._follow(row_id, RowPhase.FAILED)

    def calculation_skipped(self, row_id: str) -> None:
        self._follow(row_id, RowPhase.INVALID)

    # --- Scanning ---

    @property
    def attempted(self) -> frozenset[str]:
        return frozenset(self._attempted)

    def scheduled(self) -> list[str]:
        return [str(key) for key in self._timers.pending_keys()]

    def is_eligible(self, row: TableRow) -> bool:
        return (
            row.is_valid is True
            and not row.has_result
            and row.has_data
            and row.id not in self._attempted
            and not self._timers.is_pending(row.id)
            and not self._pipeline.has_pending(row.id)
            and not self._pipeline.is_in_flight(row.id)
        )

    def scan(self, rows: Iterable[TableRow] | None = None) -> list[str]:
        """Schedule auto-calculation for eligible rows; returns their ids."""
        schema = self._pipeline.schema
        if schema is None:
            return []
        snapshot = list(rows) if rows is not None else self._store.rows()
        if not snapshot:
            return []

        signature = row_signature(snapshot)
        if signature == self._last_signature:
            return []

        info = self._tracker.get_debug_info(schema.id)
        now = self._clock.monotonic()
        if info.last_update_time is not None and now - info.last_update_time < self._recent_window:
            logger.debug("Auto-trigger scan deferred: recent edit", formula_id=schema.id)
            return []
        if info.pending_calculations > 0:
            logger.debug("Auto-trigger scan deferred: pending calculations", formula_id=schema.id)
            return []
        self._last_signature = signature

        scheduled = [row.id for row in snapshot if self.is_eligible(row)]
        for row_id in scheduled:
            self._timers.schedule(row_id, self._delay, lambda row_id=row_id: self._auto_calculate(row_id))
        if scheduled:
            logger.debug("Auto-trigger scheduled rows", formula_id=schema.id, rows=scheduled)
        return scheduled

    async def _auto_calculate(self, row_id: str) -> None:
        schema = self._pipeline.schema
        if schema is None or not self._store.has_row(row_id):
            return
        if row_id in self._attempted or self._pipeline.has_pending(row_id):
            return
        row = self._store.get_row(row_id)
        if row.is_valid is not True or row.has_result:
            return
        self._attempted.add(row_id)
        await self._pipeline.calculate_row(row_id, row.data, schema, CalculationTrigger.AUTO)

    # --- Lifecycle ---

    def reset(self) -> None:
        """Formula switch: every row back to UNTOUCHED, nothing attempted."""
        self._timers.cancel_all()
        self._phases.clear()
        self._attempted.clear()
        self._last_signature = None

    def forget_row(self, row_id: str) -> None:
        self._timers.cancel(row_id)
        self._phases.pop(row_id, None)
        self._attempted.discard(row_id)

    def close(self) -> None:
        self._timers.cancel_all()

