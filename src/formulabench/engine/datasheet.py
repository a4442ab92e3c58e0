# src/formulabench/engine/datasheet.py
"""DataSheet: one formula's rows wired to the calculation engine.

DataSheet owns a CellStore and connects it to the pipeline, the
auto-trigger controller, the state tracker and the metrics registry:

- set_formula() switches the active formula, drops every row of the
  previous one, clears its diagnostics and seeds one default row
- row operations (add, duplicate, delete, edit) go through the store, so
  one store listener keeps metrics, tracker snapshots and auto-trigger
  scans current
- execute_all_rows() and calculate_row() run immediately; cell edits are
  debounced by the pipeline

Row ids are stable per formula: ``row-<formulaId>-<index>``.

Timers run on the configured Scheduler. With the default asyncio
scheduler, edits and formula switches must happen inside a running event
loop.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from formulabench.contracts.enums import CalculationTrigger
from formulabench.contracts.rows import MetricsData, RowCalculationResult, RowOutcome, StoreChange, TableRow
from formulabench.contracts.schema import FormulaSchema
from formulabench.contracts.sentinels import MISSING
from formulabench.core.config import FormulabenchSettings
from formulabench.core.paths import create_initial_data, flatten_schema, flatten_values
from formulabench.engine.artifact_cache import ArtifactCache, ArtifactFunc
from formulabench.engine.auto_trigger import AutoTriggerController
from formulabench.engine.cell_store import CellStore, Unsubscribe
from formulabench.engine.clock import DEFAULT_CLOCK, Clock
from formulabench.engine.compiler import FormulaCompiler
from formulabench.engine.execution_log import ExecutionLog
from formulabench.engine.invoker import ArtifactInvoker
from formulabench.engine.metrics import MetricsRegistry
from formulabench.engine.pipeline import CalculationPipeline
from formulabench.engine.schema_validator import SchemaValidator
from formulabench.engine.state_tracker import DebugInfo, StateTracker
from formulabench.engine.timers import AsyncioScheduler, Scheduler

logger = structlog.get_logger(__name__)


def stable_row_id(formula_id: str, index: int) -> str:
    return f"row-{formula_id}-{index}"


class DataSheet:
    """Rows of the active formula plus everything that calculates them.

    Example:
        sheet = DataSheet(settings)
        sheet.set_formula(schema)                  # compiles, seeds row-<id>-0
        sheet.update_cell("row-f1-0", "price", 12)  # debounced calculation
        results = await sheet.execute_all_rows()
        sheet.close()
    """

    def __init__(
        self,
        settings: FormulabenchSettings | None = None,
        *,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        cache: ArtifactCache | None = None,
        invoker: ArtifactInvoker | None = None,
        tracker: StateTracker | None = None,
        auto_trigger: bool = True,
    ) -> None:
        """Build and wire the engine components.

        Args:
            settings: Engine settings (defaults when omitted)
            clock: Time source shared by every component
            scheduler: Timer source for debounce and auto-trigger delays
            cache: Artifact cache to share between sheets
            invoker: Formula invoker (built from settings when omitted)
            tracker: Audit log to share between sheets
            auto_trigger: Schedule valid rows without a result automatically
        """
        self._settings = settings if settings is not None else FormulabenchSettings()
        calculation = self._settings.calculation
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()

        self.store = CellStore()
        self.cache = cache if cache is not None else ArtifactCache.from_settings(self._settings.cache, clock=self._clock)
        self.compiler = FormulaCompiler(self.cache)
        self.validator = SchemaValidator(clock=self._clock)
        self.tracker = tracker if tracker is not None else StateTracker()
        self.metrics = MetricsRegistry()
        self.execution_log = ExecutionLog(max_size=calculation.execution_log_size, clock=self._clock)
        self.invoker = (
            invoker
            if invoker is not None
            else ArtifactInvoker(mode=calculation.invoke_mode, max_workers=calculation.max_workers)
        )
        self.pipeline = CalculationPipeline(
            self.store,
            self.cache,
            self.validator,
            self.tracker,
            self.invoker,
            scheduler=self._scheduler,
            clock=self._clock,
            execution_log=self.execution_log,
            compiler=self.compiler,
            debounce_seconds=calculation.debounce_seconds,
        )
        self.auto: AutoTriggerController | None = None
        if auto_trigger:
            self.auto = AutoTriggerController(
                self.pipeline,
                self.store,
                self.tracker,
                scheduler=self._scheduler,
                clock=self._clock,
                delay_seconds=calculation.auto_trigger_delay_seconds,
                recent_update_window_seconds=calculation.recent_update_window_seconds,
            )
        self._max_array_items = calculation.max_array_items
        self._schema: FormulaSchema | None = None
        self._unsubscribe: Unsubscribe | None = self.store.subscribe(self._on_store_change)

    @classmethod
    def from_settings(cls, settings: FormulabenchSettings, **kwargs: Any) -> DataSheet:
        return cls(settings, **kwargs)

    @property
    def schema(self) -> FormulaSchema | None:
        return self._schema

    @property
    def formula_id(self) -> str | None:
        return self._schema.id if self._schema is not None else None

    def _require_schema(self) -> FormulaSchema:
        if self._schema is None:
            raise RuntimeError("No active formula; call set_formula() first")
        return self._schema

    # --- Formula switching ---

    def set_formula(self, schema: FormulaSchema, *, compile_source: bool = True) -> list[str]:
        """Make ``schema`` the active formula and seed its first row.

        Diagnostics of the previous formula are cleared, pending timers
        cancelled and its rows dropped. Returns the flattened column paths.

        Raises:
            CompilationError: If ``compile_source`` is set and the source is invalid.
        """
        previous = self._schema
        if previous is not None:
            self.tracker.clear_formula(previous.id)
            self.metrics.clear(previous.id)
            self.validator.clear(previous.id)
        self._schema = None
        if self.auto is not None:
            self.auto.reset()
        self.pipeline.set_schema(None)

        if compile_source and schema.source_code is not None:
            self.compiler.compile(schema)

        # The schema stays unset while the structure changes so the store
        # listener does not snapshot half-built rows.
        columns = [column.path for column in flatten_schema(schema, max_array_items=self._max_array_items)]
        self.store.sync_structure((), columns)
        self.tracker.clear_formula(schema.id)
        self.metrics.clear(schema.id)

        self._schema = schema
        self.pipeline.set_schema(schema)
        self.add_row(create_initial_data(schema, max_array_items=self._max_array_items))
        logger.info(
            "Formula activated",
            formula_id=schema.id,
            previous_formula_id=previous.id if previous is not None else None,
            columns=len(columns),
        )
        return columns

    def register_artifact(self, func: ArtifactFunc, *, source_hash: str | None = None) -> None:
        """Cache an in-process callable for the active formula."""
        schema = self._require_schema()
        self.compiler.register(schema.id, func, source_hash=source_hash)

    # --- Row operations ---

    def next_row_id(self) -> str:
        schema = self._require_schema()
        index = len(self.store.row_ids)
        while self.store.has_row(stable_row_id(schema.id, index)):
            index += 1
        return stable_row_id(schema.id, index)

    def add_row(self, data: Mapping[str, Any] | None = None) -> str:
        """Append a row of flattened cells and validate it; returns its id."""
        schema = self._require_schema()
        row_id = self.next_row_id()
        cells = dict(data) if data is not None else create_initial_data(schema, max_array_items=self._max_array_items)
        with self.store.batch():
            self.store.add_row(row_id, cells)
            self._revalidate(schema, row_id)
        return row_id

    def add_input_row(self, inputs: Mapping[str, Any]) -> str:
        """Append a row from a nested input object."""
        schema = self._require_schema()
        return self.add_row(flatten_values(schema, inputs, max_array_items=self._max_array_items))

    def load_inputs(self, rows: Iterable[Mapping[str, Any]]) -> list[str]:
        """Replace every row with rows built from nested input objects."""
        schema = self._require_schema()
        self.pipeline.cancel_pending()
        if self.auto is not None:
            self.auto.reset()
        with self.store.batch():
            self.store.sync_structure((), self.store.columns)
            row_ids = [self.add_input_row(inputs) for inputs in rows]
        logger.debug("Rows loaded", formula_id=schema.id, rows=len(row_ids))
        return row_ids

    def duplicate_row(self, row_id: str) -> str:
        """Insert a copy of ``row_id``'s cells right after it.

        The copy keeps the source's validity but starts without a result.

        Raises:
            KeyError: If the row is unknown.
        """
        self._require_schema()
        source = self.store.get_row(row_id)
        new_id = self.next_row_id()
        index = self.store.row_ids.index(row_id) + 1
        with self.store.batch():
            self.store.insert_row(index, new_id, source.data)
            self.store.set_row_state(new_id, is_valid=source.is_valid)
        return new_id

    def delete_row(self, row_id: str) -> bool:
        self.pipeline.cancel_pending(row_id)
        if self.auto is not None:
            self.auto.forget_row(row_id)
        return self.store.remove_row(row_id)

    def update_cell(self, row_id: str, path: str, value: Any) -> None:
        """Edit one cell; the row recalculates after the debounce delay."""
        self._require_schema()
        self.pipeline.handle_cell_update(row_id, path, value)

    def update_row_data(self, row_id: str, data: Mapping[str, Any]) -> None:
        """Write several cells of a row at once and revalidate it.

        Unlike update_cell() this does not schedule a calculation.
        """
        schema = self._require_schema()
        with self.store.batch():
            for path, value in data.items():
                self.store.set_value(row_id, path, value)
            self._revalidate(schema, row_id)

    def clear_all_data(self) -> None:
        self.pipeline.cancel_pending()
        if self.auto is not None:
            self.auto.reset()
        self.store.clear_all_data()

    def _revalidate(self, schema: FormulaSchema, row_id: str) -> None:
        validation = self.validator.validate_row(schema, self.store.get_row_data(row_id))
        self.store.set_row_state(row_id, is_valid=validation.is_valid)
        if not validation.is_valid:
            self.store.apply_outcome(row_id, RowOutcome.cleared(error=validation.message))

    # --- Reads ---

    def get_rows(self) -> list[TableRow]:
        return self.store.rows()

    def get_row(self, row_id: str) -> TableRow:
        return self.store.get_row(row_id)

    def get_metrics(self) -> MetricsData | None:
        schema = self._require_schema()
        return self.metrics.get(schema.id)

    def get_debug_info(self) -> DebugInfo:
        schema = self._require_schema()
        return self.tracker.get_debug_info(schema.id)

    # --- Calculation ---

    async def calculate_row(self, row_id: str) -> RowCalculationResult:
        """Calculate one row immediately, whatever its validity flag."""
        schema = self._require_schema()
        row = self.store.get_row(row_id)
        return await self.pipeline.calculate_row(row_id, row.data, schema, CalculationTrigger.MANUAL)

    async def execute_all_rows(self) -> dict[str, RowCalculationResult]:
        self._require_schema()
        return await self.pipeline.execute_all_rows(CalculationTrigger.MANUAL)

    # --- Persistence ---

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict state of the sheet (formula id and rows)."""
        return {
            "formula_id": self.formula_id,
            "rows": [row.to_dict() for row in self.store.rows()],
        }

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        """Restore rows saved by snapshot() for the active formula.

        Raises:
            ValueError: If the snapshot belongs to another formula.
        """
        schema = self._require_schema()
        if snapshot.get("formula_id") != schema.id:
            raise ValueError(f"Snapshot is for formula {snapshot.get('formula_id')!r}, active formula is {schema.id!r}")
        self.pipeline.cancel_pending()
        if self.auto is not None:
            self.auto.reset()
        saved = list(snapshot.get("rows", ()))
        with self.store.batch():
            self.store.sync_structure((), self.store.columns)
            for item in saved:
                row_id = item["id"]
                self.store.add_row(row_id, item.get("data", {}))
                self._revalidate(schema, row_id)
                if "result" in item or "error" in item:
                    self.store.apply_outcome(
                        row_id,
                        RowOutcome(
                            result=item.get("result", MISSING),
                            execution_time_ms=item.get("execution_time_ms"),
                            error=item.get("error"),
                        ),
                    )

    # --- Store listener ---

    def _on_store_change(self, change: StoreChange) -> None:
        schema = self._schema
        if schema is None:
            return
        rows = self.store.rows()
        self.metrics.update(schema.id, rows)
        self.tracker.record_row_states(schema.id, rows)
        if self.auto is not None:
            self.auto.scan(rows)

    # --- Lifecycle ---

    async def drain(self) -> None:
        """Wait for calculations started by timers that already fired."""
        await self.pipeline.drain()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.auto is not None:
            self.auto.close()
        self.pipeline.close()
        self.invoker.close()
        self.cache.destroy()
