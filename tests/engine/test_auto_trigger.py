# tests/engine/test_auto_trigger.py
"""Tests for row phases and automatic calculation of untouched rows."""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import pytest

from formulabench.contracts import (
    CalculationTrigger,
    CellUpdateEvent,
    FormulaSchema,
    RowOutcome,
    RowPhase,
    RowPhaseError,
    TableRow,
)
from formulabench.engine.auto_trigger import ALLOWED_TRANSITIONS, AutoTriggerController, row_signature
from formulabench.engine.schema_validator import validate_row

if TYPE_CHECKING:
    from tests.conftest import Engine


@pytest.fixture
def auto(engine: Engine, add_schema: FormulaSchema) -> Iterator[AutoTriggerController]:
    engine.compiler.compile(add_schema)
    engine.pipeline.set_schema(add_schema)
    controller = AutoTriggerController(
        engine.pipeline,
        engine.store,
        engine.tracker,
        scheduler=engine.scheduler,
        clock=engine.clock,
        delay_seconds=0.1,
        recent_update_window_seconds=1.0,
    )
    yield controller
    controller.close()


def _seed(engine: Engine, row_id: str, data: dict[str, Any], schema: FormulaSchema) -> None:
    engine.store.add_row(row_id, data)
    engine.store.set_row_state(row_id, is_valid=validate_row(schema, data).is_valid)


class TestTransitions:
    """The row phase state machine."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (RowPhase.UNTOUCHED, RowPhase.EDITING),
            (RowPhase.EDITING, RowPhase.VALIDATING),
            (RowPhase.EDITING, RowPhase.INVALID),
            (RowPhase.VALIDATING, RowPhase.COMPUTED),
            (RowPhase.VALIDATING, RowPhase.FAILED),
            (RowPhase.COMPUTED, RowPhase.EDITING),
            (RowPhase.FAILED, RowPhase.VALIDATING),
        ],
    )
    def test_allowed(self, current: RowPhase, target: RowPhase) -> None:
        assert target in ALLOWED_TRANSITIONS[current]

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (RowPhase.UNTOUCHED, RowPhase.COMPUTED),
            (RowPhase.EDITING, RowPhase.COMPUTED),
            (RowPhase.COMPUTED, RowPhase.FAILED),
            (RowPhase.INVALID, RowPhase.COMPUTED),
        ],
    )
    def test_forbidden(self, current: RowPhase, target: RowPhase) -> None:
        assert target not in ALLOWED_TRANSITIONS[current]

    def test_illegal_transition_raises(self, auto: AutoTriggerController) -> None:
        with pytest.raises(RowPhaseError, match="untouched -> computed"):
            auto.transition("row-add-0", RowPhase.COMPUTED)
        assert auto.phase("row-add-0") == RowPhase.UNTOUCHED

    def test_every_phase_can_be_edited(self) -> None:
        for phase in RowPhase:
            assert RowPhase.EDITING in ALLOWED_TRANSITIONS[phase]


class TestPhasesFollowPipeline:
    """Phases track attempts made through any trigger."""

    @pytest.mark.asyncio
    async def test_success_ends_computed(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        await engine.pipeline.calculate_row("row-add-0", engine.store.get_row_data("row-add-0"), add_schema)
        assert auto.phase("row-add-0") == RowPhase.COMPUTED

    @pytest.mark.asyncio
    async def test_missing_field_ends_invalid(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        await engine.pipeline.calculate_row("row-add-0", {"b": 2}, add_schema)
        assert auto.phase("row-add-0") == RowPhase.INVALID

    @pytest.mark.asyncio
    async def test_formula_error_ends_failed(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": "text"}, add_schema)
        await engine.pipeline.calculate_row("row-add-0", {"a": 1, "b": "text"}, add_schema)
        assert auto.phase("row-add-0") == RowPhase.FAILED

    @pytest.mark.asyncio
    async def test_edit_then_invalid_debounce(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)

        engine.pipeline.handle_cell_update("row-add-0", "a", "abc")
        assert auto.phase("row-add-0") == RowPhase.EDITING

        await engine.scheduler.advance(0.3)
        assert auto.phase("row-add-0") == RowPhase.INVALID

    def test_reset_returns_rows_to_untouched(self, engine: Engine, auto: AutoTriggerController) -> None:
        auto.transition("row-add-0", RowPhase.EDITING)
        auto.reset()
        assert auto.phases() == {}
        assert auto.phase("row-add-0") == RowPhase.UNTOUCHED


class TestScan:
    """Scheduling of valid rows without a result."""

    @pytest.mark.asyncio
    async def test_eligible_row_is_calculated(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)

        assert auto.scan() == ["row-add-0"]
        assert auto.scheduled() == ["row-add-0"]

        await engine.scheduler.advance(0.1)

        [event] = engine.tracker.get_calculations("add")
        assert event.trigger == CalculationTrigger.AUTO
        assert engine.store.get_row("row-add-0").result == 3
        assert auto.phase("row-add-0") == RowPhase.COMPUTED
        assert "row-add-0" in auto.attempted

    def test_ineligible_rows(self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema) -> None:
        _seed(engine, "row-add-0", {"a": "x", "b": 2}, add_schema)
        _seed(engine, "row-add-1", {"a": 1, "b": 2}, add_schema)
        engine.store.apply_outcome("row-add-1", RowOutcome(result=3, execution_time_ms=1.0))
        engine.store.add_row("row-add-2", {"a": "", "b": None})
        engine.store.set_row_state("row-add-2", is_valid=True)

        assert auto.scan() == []

    def test_no_active_formula(self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        engine.pipeline.set_schema(None)
        assert auto.scan() == []

    def test_unchanged_rows_are_not_rescanned(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        rows = engine.store.rows()

        assert auto.scan(rows) == ["row-add-0"]
        auto.close()
        assert auto.scan(rows) == []

    def test_recent_edit_defers_scan(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        engine.tracker.record_cell_update(
            "add",
            CellUpdateEvent(
                timestamp=engine.clock.monotonic(),
                row_id="row-add-9",
                path="a",
                old_value=0,
                new_value="x",
                is_valid=False,
            ),
        )

        assert auto.scan() == []

        engine.clock.advance(1.0)
        assert auto.scan() == ["row-add-0"]

    def test_pending_calculations_defer_scan(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        engine.tracker.record_cell_update(
            "add",
            CellUpdateEvent(
                timestamp=engine.clock.monotonic() - 5.0,
                row_id="row-add-0",
                path="a",
                old_value=0,
                new_value=1,
                is_valid=True,
            ),
        )

        assert auto.scan() == []

    @pytest.mark.asyncio
    async def test_edit_cancels_scheduled_auto_calculation(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        auto.scan()

        engine.pipeline.handle_cell_update("row-add-0", "a", 4)
        assert auto.scheduled() == []

        await engine.scheduler.advance(0.3)

        [event] = engine.tracker.get_calculations("add")
        assert event.trigger == CalculationTrigger.CELL_UPDATE
        assert engine.store.get_row("row-add-0").result == 6

    @pytest.mark.asyncio
    async def test_row_with_result_at_fire_time_is_skipped(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        auto.scan()
        engine.store.apply_outcome("row-add-0", RowOutcome(result=3, execution_time_ms=1.0))

        await engine.scheduler.advance(0.1)

        assert engine.tracker.get_calculations("add") == []

    @pytest.mark.asyncio
    async def test_failed_row_is_attempted_once(
        self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema
    ) -> None:
        schema = add_schema.model_copy(update={"id": "divide", "source_code": "def divide(a, b):\n    return a / b\n"})
        engine.compiler.compile(schema)
        engine.pipeline.set_schema(schema)
        _seed(engine, "row-divide-0", {"a": 1, "b": 0}, schema)

        auto.scan()
        await engine.scheduler.advance(0.1)
        assert auto.phase("row-divide-0") == RowPhase.FAILED

        _seed(engine, "row-divide-1", {"a": 4, "b": 2}, schema)
        assert auto.scan() == ["row-divide-1"]

    def test_forget_row(self, engine: Engine, auto: AutoTriggerController, add_schema: FormulaSchema) -> None:
        _seed(engine, "row-add-0", {"a": 1, "b": 2}, add_schema)
        auto.scan()
        auto.transition("row-add-0", RowPhase.VALIDATING)

        auto.forget_row("row-add-0")

        assert auto.scheduled() == []
        assert auto.phase("row-add-0") == RowPhase.UNTOUCHED


def test_row_signature_tracks_shape() -> None:
    before = row_signature([TableRow(id="r", data={"a": 1}, is_valid=True)])
    same_shape = row_signature([TableRow(id="r", data={"a": 2}, is_valid=True)])
    with_result = row_signature([TableRow(id="r", data={"a": 2}, result=3, is_valid=True)])

    assert before == same_shape
    assert before != with_result
