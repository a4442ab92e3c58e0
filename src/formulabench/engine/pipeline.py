# src/formulabench/engine/pipeline.py
"""Row calculation pipeline.

One attempt for one row runs:

    reconstruct inputs -> required-field check -> artifact lookup
    -> positional invocation -> outcome write -> audit event

Three entry points share that path:

- calculate_row(): immediate, writes its own outcome
- handle_cell_update(): records the edit and (re)starts the row's trailing
  debounce timer; the timer re-reads the row when it fires and skips rows
  that are invalid by then
- execute_all_rows(): computes every valid row concurrently, then writes
  every outcome in one batched store update

Row-level failures (validation, missing artifact, formula exceptions)
never escape: they become the row's ``error``. Every attempt that
finishes within its activation records exactly one CalculationEvent.

Stale results: each attempt remembers the row's data generation when it
started. If the row was edited or recreated while the attempt was in
flight, the outcome is not written (its audit event is still recorded) and
the newer edit's own debounce recalculates the row. An attempt that
outlives a set_schema() call belongs to a cleared activation: it is neither
written nor audited.
"""

from __future__ import annotations

import asyncio
import traceback
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Protocol

import structlog

from formulabench.contracts.enums import CalculationTrigger
from formulabench.contracts.errors import ArtifactMissingError, CompilationError, InvocationError
from formulabench.contracts.events import CalculationEvent, CellUpdateEvent
from formulabench.contracts.rows import RowCalculationResult, RowOutcome
from formulabench.contracts.schema import FormulaSchema
from formulabench.core.canonical import inputs_fingerprint
from formulabench.core.paths import reconstruct_inputs
from formulabench.engine.artifact_cache import ArtifactCache, ArtifactFunc
from formulabench.engine.cell_store import CellStore
from formulabench.engine.clock import DEFAULT_CLOCK, Clock
from formulabench.engine.compiler import FormulaCompiler, expected_source_hash
from formulabench.engine.execution_log import ExecutionLog
from formulabench.engine.invoker import ArtifactInvoker, positional_args
from formulabench.engine.schema_validator import SchemaValidator
from formulabench.engine.state_tracker import StateTracker
from formulabench.engine.timers import AsyncioScheduler, KeyedTimers, Scheduler

logger = structlog.get_logger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.3


class CalculationObserver(Protocol):
    """Receives row lifecycle notifications from the pipeline."""

    def row_edited(self, row_id: str) -> None: ...

    def calculation_started(self, row_id: str, trigger: CalculationTrigger) -> None: ...

    def calculation_finished(self, row_id: str, result: RowCalculationResult, trigger: CalculationTrigger) -> None: ...

    def calculation_skipped(self, row_id: str) -> None: ...


class CalculationPipeline:
    """Orchestrates validation, invocation and outcome writes for rows.

    The pipeline works on one active formula at a time for edit-driven
    calculation (set_schema()); calculate_row() takes the schema
    explicitly.

    Example:
        pipeline = CalculationPipeline(store, cache, validator, tracker, invoker)
        pipeline.set_schema(schema)
        pipeline.handle_cell_update("row-f1-0", "a", 2)   # debounced
        results = await pipeline.execute_all_rows()       # immediate
    """

    def __init__(
        self,
        store: CellStore,
        cache: ArtifactCache,
        validator: SchemaValidator,
        tracker: StateTracker,
        invoker: ArtifactInvoker,
        *,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
        execution_log: ExecutionLog | None = None,
        compiler: FormulaCompiler | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Row storage the pipeline reads from and writes outcomes to
            cache: Compiled artifacts by formula id
            validator: Required-field and constraint checks
            tracker: Audit log receiving one event per attempt
            invoker: Runs formula bodies
            scheduler: Timer source for debouncing. Defaults to asyncio.
            clock: Time source for event timestamps
            execution_log: Bounded execution log (a private one if omitted)
            compiler: When given, a cache miss recompiles from source
                instead of failing with "not compiled"
            debounce_seconds: Trailing debounce for cell edits
        """
        self._store = store
        self._cache = cache
        self._validator = validator
        self._tracker = tracker
        self._invoker = invoker
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self._execution_log = execution_log if execution_log is not None else ExecutionLog(clock=self._clock)
        self._compiler = compiler
        self._debounce_seconds = debounce_seconds
        self._debounce = KeyedTimers(self._scheduler)
        self._observers: list[CalculationObserver] = []
        self._schema: FormulaSchema | None = None
        self._epoch = 0
        self._in_flight: dict[str, int] = {}

    # --- Configuration ---

    @property
    def schema(self) -> FormulaSchema | None:
        return self._schema

    @property
    def store(self) -> CellStore:
        return self._store

    @property
    def execution_log(self) -> ExecutionLog:
        return self._execution_log

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def epoch(self) -> int:
        """Activation counter, bumped by every set_schema() call."""
        return self._epoch

    def set_schema(self, schema: FormulaSchema | None) -> None:
        """Switch the active formula.

        Pending debounce timers are cancelled. Attempts still in flight
        belong to the previous activation and are dropped when they finish.
        """
        self._debounce.cancel_all()
        self._schema = schema
        self._epoch += 1
        self._in_flight = {}

    def add_observer(self, observer: CalculationObserver) -> None:
        self._observers.append(observer)

    # --- Immediate calculation ---

    async def calculate_row(
        self,
        row_id: str,
        row_data: Mapping[str, Any],
        schema: FormulaSchema,
        trigger: CalculationTrigger = CalculationTrigger.MANUAL,
    ) -> RowCalculationResult:
        """Run one attempt and write its outcome to the row.

        A validation failure clears the row's previous result and timing
        and sets the validation message as the row error. An outcome
        superseded by a newer edit is returned with ``discarded=True`` and
        not written.
        """
        epoch = self._epoch
        result = await self.compute_row(row_id, row_data, schema, trigger)
        if not result.discarded:
            self._store.apply_outcome(row_id, result.to_outcome())
        if self._epoch == epoch:
            self._notify_finished(row_id, result, trigger)
        return result

    async def compute_row(
        self,
        row_id: str,
        row_data: Mapping[str, Any],
        schema: FormulaSchema,
        trigger: CalculationTrigger = CalculationTrigger.MANUAL,
    ) -> RowCalculationResult:
        """Run one attempt without writing the outcome to the store.

        Outcomes superseded by an edit, a recreated row or a formula
        switch come back with ``discarded=True``. Only the formula switch
        also suppresses the audit event, since that log was cleared.
        """
        generation = self._store.generation(row_id)
        epoch = self._epoch
        started_at = self._clock.monotonic()
        for observer in self._observers:
            observer.calculation_started(row_id, trigger)
        log = logger.bind(formula_id=schema.id, row_id=row_id, trigger=str(trigger))

        inputs = reconstruct_inputs(row_data, schema)
        in_flight = self._in_flight
        in_flight[row_id] = in_flight.get(row_id, 0) + 1
        try:
            result = await self._attempt(row_id, schema, inputs, log)
        finally:
            remaining = in_flight[row_id] - 1
            if remaining:
                in_flight[row_id] = remaining
            else:
                del in_flight[row_id]

        if self._epoch != epoch:
            log.info("Discarding outcome from a previous formula activation", started_epoch=epoch)
            return replace(result, discarded=True)

        if self._store.has_row(row_id) and self._store.generation(row_id) != generation:
            log.info("Discarding outcome superseded by a newer edit", started_generation=generation)
            result = replace(result, discarded=True)

        self._tracker.record_calculation(
            schema.id,
            CalculationEvent(
                timestamp=started_at,
                row_id=row_id,
                formula_id=schema.id,
                trigger=trigger,
                success=result.success,
                inputs=inputs,
                inputs_hash=inputs_fingerprint(inputs),
                result=result.result,
                execution_time_ms=result.execution_time_ms if result.invoked else None,
                error=result.error,
            ),
        )
        return result

    async def _attempt(
        self,
        row_id: str,
        schema: FormulaSchema,
        inputs: dict[str, Any],
        log: Any,
    ) -> RowCalculationResult:
        failure = self._validator.check(schema, inputs)
        if failure is not None:
            log.debug("Validation failed, skipping invocation", path=failure.path)
            return RowCalculationResult(success=False, error=failure.message, validation_failed=True)

        try:
            func = self._resolve_artifact(schema)
        except (ArtifactMissingError, CompilationError) as e:
            log.warning("Formula artifact unavailable", error=str(e))
            return RowCalculationResult(success=False, error=str(e))

        try:
            invocation = await self._invoker.invoke(schema, func, positional_args(schema, inputs))
        except InvocationError as e:
            elapsed = e.execution_time_ms or 0.0
            stack = "".join(traceback.format_exception(e.original))
            self._execution_log.add(
                schema.id, row_id, inputs, error=str(e), stack=stack, execution_time_ms=elapsed
            )
            log.info("Formula raised", error=str(e), error_type=type(e.original).__name__)
            return RowCalculationResult(success=False, execution_time_ms=elapsed, error=str(e), invoked=True)

        self._execution_log.add(
            schema.id, row_id, inputs, result=invocation.value, execution_time_ms=invocation.execution_time_ms
        )
        log.debug("Row calculated", execution_time_ms=round(invocation.execution_time_ms, 3))
        return RowCalculationResult(
            success=True,
            result=invocation.value,
            execution_time_ms=invocation.execution_time_ms,
            invoked=True,
        )

    def _resolve_artifact(self, schema: FormulaSchema) -> ArtifactFunc:
        func = self._cache.get(schema.id, expected_source_hash(schema))
        if func is not None:
            return func
        if self._compiler is not None and schema.source_code is not None:
            logger.info("Artifact cache miss, recompiling", formula_id=schema.id)
            return self._compiler.compile(schema, force=True).func
        raise ArtifactMissingError(schema.id)

    # --- Edit-driven calculation ---

    def handle_cell_update(self, row_id: str, path: str, value: Any) -> CellUpdateEvent:
        """Record an edit and restart the row's debounce timer.

        Writes the value, re-validates the row's constraints, records a
        CellUpdateEvent, and schedules a calculation ``debounce_seconds``
        after the last edit of this row.

        Raises:
            RuntimeError: If no formula is active.
        """
        schema = self._schema
        if schema is None:
            raise RuntimeError("No active formula; call set_schema() first")

        old_value = self._store.set_value(row_id, path, value)
        validation = self._validator.validate_row(schema, self._store.get_row_data(row_id))
        with self._store.batch():
            self._store.set_row_state(row_id, is_valid=validation.is_valid)
            if not validation.is_valid:
                self._store.apply_outcome(row_id, RowOutcome.cleared(error=validation.message))

        event = CellUpdateEvent(
            timestamp=self._clock.monotonic(),
            row_id=row_id,
            path=path,
            old_value=old_value,
            new_value=value,
            is_valid=validation.is_valid,
            validation_errors=validation.errors,
        )
        self._tracker.record_cell_update(schema.id, event)
        for observer in self._observers:
            observer.row_edited(row_id)

        self._debounce.schedule(row_id, self._debounce_seconds, lambda: self._debounced_calculation(row_id))
        return event

    async def _debounced_calculation(self, row_id: str) -> None:
        schema = self._schema
        if schema is None or not self._store.has_row(row_id):
            return
        row = self._store.get_row(row_id)
        if row.is_valid is not True:
            logger.debug("Debounced row invalid at fire time, skipping", formula_id=schema.id, row_id=row_id)
            for observer in self._observers:
                observer.calculation_skipped(row_id)
            return
        await self.calculate_row(row_id, row.data, schema, CalculationTrigger.CELL_UPDATE)

    def has_pending(self, row_id: str) -> bool:
        """Whether a debounce timer is pending for the row."""
        return self._debounce.is_pending(row_id)

    def is_in_flight(self, row_id: str) -> bool:
        return row_id in self._in_flight

    def pending_rows(self) -> list[str]:
        return [str(key) for key in self._debounce.pending_keys()]

    def cancel_pending(self, row_id: str | None = None) -> None:
        if row_id is None:
            self._debounce.cancel_all()
        else:
            self._debounce.cancel(row_id)

    # --- Batch calculation ---

    async def execute_all_rows(
        self, trigger: CalculationTrigger = CalculationTrigger.MANUAL
    ) -> dict[str, RowCalculationResult]:
        """Compute every valid row concurrently, then write outcomes once.

        One row's failure never affects another row's outcome.

        Raises:
            RuntimeError: If no formula is active.
        """
        schema = self._schema
        if schema is None:
            raise RuntimeError("No active formula; call set_schema() first")

        rows = [row for row in self._store.rows() if row.is_valid]
        if not rows:
            return {}
        epoch = self._epoch

        gathered = await asyncio.gather(
            *(self.compute_row(row.id, row.data, schema, trigger) for row in rows),
            return_exceptions=True,
        )

        results: dict[str, RowCalculationResult] = {}
        for row, outcome in zip(rows, gathered, strict=True):
            if isinstance(outcome, BaseException):
                # compute_row converts row-level errors; this is an engine bug
                logger.error(
                    "Row calculation crashed",
                    formula_id=schema.id,
                    row_id=row.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                continue
            results[row.id] = outcome

        self._store.apply_outcomes(
            {row_id: result.to_outcome() for row_id, result in results.items() if not result.discarded}
        )
        if self._epoch == epoch:
            for row_id, result in results.items():
                self._notify_finished(row_id, result, trigger)

        succeeded = sum(1 for result in results.values() if result.success)
        logger.info(
            "Batch calculation finished",
            formula_id=schema.id,
            rows=len(rows),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return results

    # --- Lifecycle ---

    async def drain(self) -> None:
        """Wait for timer callbacks that have already fired."""
        await self._scheduler.drain()

    def close(self) -> None:
        self._debounce.cancel_all()
        self._observers.clear()

    def _notify_finished(self, row_id: str, result: RowCalculationResult, trigger: CalculationTrigger) -> None:
        for observer in self._observers:
            observer.calculation_finished(row_id, result, trigger)

