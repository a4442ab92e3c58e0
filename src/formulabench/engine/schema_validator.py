# src/formulabench/engine/schema_validator.py
"""Schema validation for formula inputs.

Two checks with different jobs:

- Required-field check (pre_args_check): runs on the reconstructed input
  object right before invocation. Inputs are checked in declaration order,
  nullable inputs are skipped entirely, and the first missing non-nullable
  value fails the whole check. Objects with declared properties recurse
  with ``parent.child`` paths; arrays of objects recurse per item with
  ``parent[i]`` paths.
- Constraint check (validate_row): runs on every edit to decide a row's
  ``is_valid`` flag. Every input is checked and every violation reported.

Neither check raises on invalid data; failures are return values.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from formulabench.contracts.enums import BaseType
from formulabench.contracts.errors import FormulaValidationError
from formulabench.contracts.events import ValidationMessage
from formulabench.contracts.schema import FactorDef, FactorType, FormulaSchema
from formulabench.contracts.sentinels import MISSING
from formulabench.core.paths import reconstruct_inputs
from formulabench.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


def _is_absent(value: Any) -> bool:
    return value is None or value is MISSING


def find_missing_required(schema: FormulaSchema, inputs: Mapping[str, Any]) -> FormulaValidationError | None:
    """First required-field violation in declaration order, or None."""
    for definition in schema.inputs:
        factor_type = definition.factor_type
        if factor_type.nullable:
            continue
        value = inputs.get(definition.key, MISSING)
        if _is_absent(value):
            return FormulaValidationError(
                schema.id, definition.key, f"Missing required field: {definition.key}", path=definition.key
            )
        if factor_type.is_object:
            failure = _check_nested(schema.id, value, factor_type, definition.key)
            if failure is not None:
                return failure
    return None


def _check_nested(formula_id: str, value: Any, factor_type: FactorType, path: str) -> FormulaValidationError | None:
    if factor_type.array:
        if not isinstance(value, list):
            return _expected(formula_id, path, value, "array")
        for index, item in enumerate(value):
            failure = _check_object(formula_id, item, factor_type.properties or (), f"{path}[{index}]")
            if failure is not None:
                return failure
        return None
    return _check_object(formula_id, value, factor_type.properties or (), path)


def _check_object(
    formula_id: str, value: Any, properties: Sequence[FactorDef], path: str
) -> FormulaValidationError | None:
    if not isinstance(value, Mapping):
        return _expected(formula_id, path, value, "object")
    for prop in properties:
        if prop.factor_type.nullable:
            continue
        prop_path = f"{path}.{prop.key}"
        prop_value = value.get(prop.key, MISSING)
        if _is_absent(prop_value):
            return FormulaValidationError(
                formula_id, prop.key, f"Missing required nested field: {prop_path}", path=prop_path
            )
        if prop.factor_type.is_object:
            failure = _check_nested(formula_id, prop_value, prop.factor_type, prop_path)
            if failure is not None:
                return failure
    return None


def _expected(formula_id: str, path: str, value: Any, kind: str) -> FormulaValidationError:
    return FormulaValidationError(
        formula_id, path, f"Expected {kind} at path: {path}, got: {_type_name(value)}", path=path
    )


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def pre_args_check(schema: FormulaSchema, inputs: Mapping[str, Any]) -> bool:
    """True when every required field (at any depth) has a value."""
    failure = find_missing_required(schema, inputs)
    if failure is not None:
        logger.debug("Pre-args check failed", formula_id=schema.id, path=failure.path, message=failure.message)
        return False
    return True


# --- Constraint validation ---


@dataclass(frozen=True, slots=True)
class RowValidation:
    """Constraint-level validity of one row."""

    is_valid: bool
    errors: tuple[str, ...] = ()

    @property
    def message(self) -> str | None:
        return ", ".join(self.errors) if self.errors else None


def validate_value(value: Any, factor_type: FactorType) -> str | None:
    """Constraint violation message for one value, or None if acceptable."""
    if _is_absent(value):
        return None if factor_type.nullable else "Is required"
    if factor_type.array:
        if not isinstance(value, list):
            return "Must be a list"
        item_type = factor_type.model_copy(update={"array": False, "nullable": True})
        for item in value:
            error = validate_value(item, item_type)
            if error is not None:
                return error
        return None

    base = factor_type.base_type
    constraints = factor_type.constraints
    if base == BaseType.NUMBER:
        if value == "":
            return None
        if isinstance(value, bool) or not isinstance(value, int | float) or math.isnan(value):
            return "Must be a valid number"
        if constraints is not None and constraints.min is not None and value < constraints.min:
            return f"Must be at least {_format_bound(constraints.min)}"
        if constraints is not None and constraints.max is not None and value > constraints.max:
            return f"Must be at most {_format_bound(constraints.max)}"
    elif base == BaseType.BOOLEAN:
        if not isinstance(value, bool):
            return "Must be true or false"
    elif base == BaseType.STRING:
        if constraints is not None and constraints.enum is not None and str(value) not in constraints.enum:
            return f"Must be one of: {', '.join(constraints.enum)}"
        if constraints is not None and constraints.pattern is not None and not re.search(constraints.pattern, str(value)):
            return "Format is invalid"
    elif base == BaseType.OBJECT and factor_type.properties is not None:
        if not isinstance(value, Mapping):
            return "Must be an object"
        for prop in factor_type.properties:
            error = validate_value(value.get(prop.key, MISSING), prop.factor_type)
            if error is not None:
                return f"{prop.key}: {error}"
    return None


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def validate_row(schema: FormulaSchema, data: Mapping[str, Any]) -> RowValidation:
    """Check every input of a flattened row against its constraints.

    Errors read ``"<key>: <message>"``; nested violations extend the key
    (``"position: size: Must be at least 1"``).
    """
    inputs = reconstruct_inputs(data, schema)
    errors: list[str] = []
    for definition in schema.inputs:
        error = validate_value(inputs.get(definition.key, MISSING), definition.factor_type)
        if error is not None:
            errors.append(f"{definition.key}: {error}")
    return RowValidation(is_valid=not errors, errors=tuple(errors))


class SchemaValidator:
    """Validation service that remembers the latest failure per formula.

    Each pre_args_check() clears the formula's previous messages first, so
    a passing check leaves no stale message behind.

    Example:
        validator = SchemaValidator()
        if not validator.pre_args_check(schema, inputs):
            print(validator.last_message(schema.id))
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._messages: dict[str, list[ValidationMessage]] = {}

    def check(self, schema: FormulaSchema, inputs: Mapping[str, Any]) -> FormulaValidationError | None:
        """Run the required-field check, recording any failure."""
        self.clear(schema.id)
        failure = find_missing_required(schema, inputs)
        if failure is not None:
            self._messages.setdefault(schema.id, []).append(
                ValidationMessage(
                    field=failure.field,
                    message=failure.message,
                    timestamp=self._clock.monotonic(),
                    path=failure.path,
                )
            )
            logger.debug("Pre-args check failed", formula_id=schema.id, path=failure.path, message=failure.message)
        return failure

    def pre_args_check(self, schema: FormulaSchema, inputs: Mapping[str, Any]) -> bool:
        return self.check(schema, inputs) is None

    def validate_row(self, schema: FormulaSchema, data: Mapping[str, Any]) -> RowValidation:
        return validate_row(schema, data)

    def get_messages(self, formula_id: str) -> list[ValidationMessage]:
        return list(self._messages.get(formula_id, ()))

    def last_message(self, formula_id: str) -> str | None:
        messages = self._messages.get(formula_id)
        return messages[-1].message if messages else None

    def clear(self, formula_id: str | None = None) -> None:
        if formula_id is None:
            self._messages.clear()
        else:
            self._messages.pop(formula_id, None)
