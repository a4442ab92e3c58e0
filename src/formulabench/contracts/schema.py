"""Formula schema contracts.

A FormulaSchema is produced by the (external) source parser and describes
one formula: its identity, its ordered positional inputs, and optionally the
source code the compiler turns into an invocable artifact.

Each input carries a FactorType describing its base type, nullability,
array-ness, nested properties and value constraints. Properties recurse, so
object-of-object-of-array shapes are expressible.

Field names are snake_case in Python; camelCase aliases (``baseType``,
``factorType``, ``sourceCode`` ...) are accepted so schemas exported by the
workbench UI load unchanged.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from formulabench.contracts.enums import BaseType, RoundingStrategy

FormulaScalar = float | int | str | bool | None | dict[str, Any] | list[Any]
"""Any value a cell or a formula result can hold."""

_MODEL_CONFIG: Any = {
    "frozen": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
    "extra": "ignore",
}


class Constraints(BaseModel):
    """Value constraints for a leaf input."""

    model_config = _MODEL_CONFIG

    min: float | None = Field(default=None, description="Inclusive lower bound for numbers")
    max: float | None = Field(default=None, description="Inclusive upper bound for numbers")
    pattern: str | None = Field(default=None, description="Regular expression strings must match")
    enum: tuple[str, ...] | None = Field(default=None, description="Allowed string values")


class FactorType(BaseModel):
    """Type description of a single input or nested property."""

    model_config = _MODEL_CONFIG

    base_type: BaseType
    nullable: bool = False
    array: bool = False
    properties: tuple[FactorDef, ...] | None = None
    constraints: Constraints | None = None

    @property
    def is_object(self) -> bool:
        """True for object types that declare nested properties."""
        return self.base_type == BaseType.OBJECT and self.properties is not None


class FactorDef(BaseModel):
    """A named input (top level) or property (nested) with its factor type."""

    model_config = _MODEL_CONFIG

    key: str = Field(min_length=1)
    factor_type: FactorType
    default: Any = None
    unit: str | None = None
    description: str | None = None

    @property
    def type(self) -> BaseType:
        """Shorthand for the base type of this input."""
        return self.factor_type.base_type

    @property
    def has_default(self) -> bool:
        """Whether the schema declared an explicit default."""
        return "default" in self.model_fields_set


FormulaInput = FactorDef


class EngineHints(BaseModel):
    """Numeric post-processing applied to formula results."""

    model_config = _MODEL_CONFIG

    rounding: RoundingStrategy | None = None
    scale: int | None = Field(default=None, ge=0, le=15)


class FormulaSchema(BaseModel):
    """Parsed formula definition consumed by the calculation engine."""

    model_config = _MODEL_CONFIG

    id: str = Field(min_length=1)
    name: str = ""
    version: str = "0.0.0"
    description: str | None = None
    inputs: tuple[FormulaInput, ...] = ()
    source_code: str | None = None
    function_name: str | None = None
    engine_hints: EngineHints | None = None

    @model_validator(mode="after")
    def _unique_input_keys(self) -> FormulaSchema:
        keys = [item.key for item in self.inputs]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate input keys in formula {self.id!r}: {duplicates}")
        return self

    @property
    def input_keys(self) -> list[str]:
        """Input keys in positional (declaration) order."""
        return [item.key for item in self.inputs]


FactorType.model_rebuild()
FactorDef.model_rebuild()
