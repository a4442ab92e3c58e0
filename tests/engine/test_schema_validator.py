# tests/engine/test_schema_validator.py
"""Tests for required-field and constraint validation."""

import pytest

from formulabench.contracts import BaseType, FactorType, FormulaSchema
from formulabench.contracts.sentinels import MISSING
from formulabench.engine.clock import MockClock
from formulabench.engine.schema_validator import (
    SchemaValidator,
    find_missing_required,
    pre_args_check,
    validate_row,
    validate_value,
)


def _schema(inputs: list[dict]) -> FormulaSchema:
    return FormulaSchema.model_validate({"id": "f", "inputs": inputs})


class TestRequiredFieldCheck:
    """Pre-invocation check on reconstructed inputs."""

    def test_all_present_passes(self, nested_schema: FormulaSchema) -> None:
        assert pre_args_check(nested_schema, {"a": 1, "b": {"c": 2}}) is True

    def test_missing_top_level_field(self, nested_schema: FormulaSchema) -> None:
        failure = find_missing_required(nested_schema, {"b": {"c": 2}})
        assert failure is not None
        assert failure.message == "Missing required field: a"
        assert failure.path == "a"

    def test_missing_nested_field(self, nested_schema: FormulaSchema) -> None:
        failure = find_missing_required(nested_schema, {"a": 1, "b": {}})
        assert failure is not None
        assert failure.message == "Missing required nested field: b.c"
        assert failure.field == "c"
        assert failure.path == "b.c"

    def test_first_failure_in_declaration_order(self, nested_schema: FormulaSchema) -> None:
        failure = find_missing_required(nested_schema, {"b": {}})
        assert failure is not None
        assert failure.path == "a"

    def test_none_counts_as_missing(self, nested_schema: FormulaSchema) -> None:
        assert pre_args_check(nested_schema, {"a": None, "b": {"c": 1}}) is False

    def test_nullable_inputs_are_skipped(self) -> None:
        schema = _schema([{"key": "x", "factorType": {"baseType": "number", "nullable": True}}])
        assert pre_args_check(schema, {}) is True

    def test_non_object_value_for_object_input(self, nested_schema: FormulaSchema) -> None:
        failure = find_missing_required(nested_schema, {"a": 1, "b": 5})
        assert failure is not None
        assert failure.message == "Expected object at path: b, got: number"

    def test_array_items_checked_with_index_paths(self, holdings_schema: FormulaSchema) -> None:
        failure = find_missing_required(holdings_schema, {"holdings": [{"symbol": "A", "amount": 1}, {"symbol": "B"}]})
        assert failure is not None
        assert failure.message == "Missing required nested field: holdings[1].amount"

    def test_array_input_must_be_a_list(self, holdings_schema: FormulaSchema) -> None:
        failure = find_missing_required(holdings_schema, {"holdings": {"symbol": "A"}})
        assert failure is not None
        assert failure.message == "Expected array at path: holdings, got: object"


class TestValidateValue:
    """Constraint messages for single values."""

    def test_number_bounds(self) -> None:
        factor_type = FactorType.model_validate({"baseType": "number", "constraints": {"min": 1, "max": 10.5}})
        assert validate_value(5, factor_type) is None
        assert validate_value(0, factor_type) == "Must be at least 1"
        assert validate_value(11, factor_type) == "Must be at most 10.5"

    def test_number_type(self) -> None:
        number = FactorType(base_type=BaseType.NUMBER)
        assert validate_value("abc", number) == "Must be a valid number"
        assert validate_value(True, number) == "Must be a valid number"
        assert validate_value(float("nan"), number) == "Must be a valid number"

    def test_absent_required_value(self) -> None:
        number = FactorType(base_type=BaseType.NUMBER)
        assert validate_value(MISSING, number) == "Is required"
        assert validate_value(None, FactorType(base_type=BaseType.NUMBER, nullable=True)) is None

    def test_boolean(self) -> None:
        assert validate_value("yes", FactorType(base_type=BaseType.BOOLEAN)) == "Must be true or false"

    def test_string_enum_and_pattern(self) -> None:
        enum = FactorType.model_validate({"baseType": "string", "constraints": {"enum": ["BTC", "ETH"]}})
        assert validate_value("BTC", enum) is None
        assert validate_value("DOGE", enum) == "Must be one of: BTC, ETH"

        pattern = FactorType.model_validate({"baseType": "string", "constraints": {"pattern": "^[A-Z]{3}$"}})
        assert validate_value("USD", pattern) is None
        assert validate_value("usd", pattern) == "Format is invalid"

    def test_array_items(self) -> None:
        numbers = FactorType.model_validate({"baseType": "number", "array": True, "constraints": {"min": 0}})
        assert validate_value([1, 2], numbers) is None
        assert validate_value([1, -1], numbers) == "Must be at least 0"
        assert validate_value(3, numbers) == "Must be a list"

    def test_object_properties_prefix(self, nested_schema: FormulaSchema) -> None:
        factor_type = nested_schema.inputs[1].factor_type
        assert validate_value({"c": "x"}, factor_type) == "c: Must be a valid number"


class TestValidateRow:
    """Row-level constraint validation over flattened cells."""

    def test_valid_row(self, add_schema: FormulaSchema) -> None:
        result = validate_row(add_schema, {"a": "1", "b": 2})
        assert result.is_valid is True
        assert result.message is None

    def test_reports_every_violation(self, add_schema: FormulaSchema) -> None:
        result = validate_row(add_schema, {"a": "", "b": "x"})
        assert result.is_valid is False
        assert result.errors == ("a: Is required", "b: Must be a valid number")
        assert result.message == "a: Is required, b: Must be a valid number"

    def test_array_of_objects_validated_per_item(self, holdings_schema: FormulaSchema) -> None:
        valid = validate_row(holdings_schema, {"holdings[0].symbol": "A", "holdings[0].amount": "3"})
        assert valid.is_valid is True

        invalid = validate_row(holdings_schema, {"holdings[0].symbol": "A", "holdings[0].amount": "-3"})
        assert invalid.errors == ("holdings: amount: Must be at least 0",)


class TestSchemaValidator:
    """Stateful validator keeping the latest message per formula."""

    def test_failure_is_recorded(self, nested_schema: FormulaSchema, clock: MockClock) -> None:
        validator = SchemaValidator(clock=clock)
        assert validator.pre_args_check(nested_schema, {"a": 1, "b": {}}) is False

        messages = validator.get_messages("nested")
        assert len(messages) == 1
        assert messages[0].path == "b.c"
        assert messages[0].timestamp == clock.monotonic()
        assert validator.last_message("nested") == "Missing required nested field: b.c"

    def test_passing_check_clears_previous_message(self, nested_schema: FormulaSchema) -> None:
        validator = SchemaValidator()
        validator.check(nested_schema, {"b": {}})
        assert validator.check(nested_schema, {"a": 1, "b": {"c": 1}}) is None
        assert validator.get_messages("nested") == []
        assert validator.last_message("nested") is None

    @pytest.mark.parametrize("formula_id", [None, "nested"])
    def test_clear(self, nested_schema: FormulaSchema, formula_id: str | None) -> None:
        validator = SchemaValidator()
        validator.check(nested_schema, {"b": {}})
        validator.clear(formula_id)
        assert validator.get_messages("nested") == []
