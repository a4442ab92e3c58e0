"""Shared contracts for cross-component data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes live in formulabench.core.config.

Import patterns:
    from formulabench.contracts import FormulaSchema, TableRow, CalculationTrigger
    from formulabench.core.config import FormulabenchSettings
"""

from formulabench.contracts.enums import (
    BaseType,
    CalculationTrigger,
    InvokeMode,
    RoundingStrategy,
    RowPhase,
    StoreChangeKind,
)
from formulabench.contracts.errors import (
    ArtifactMissingError,
    CompilationError,
    FormulaBenchError,
    FormulaValidationError,
    InvocationError,
    RowPhaseError,
)
from formulabench.contracts.events import (
    CalculationEvent,
    CellUpdateEvent,
    ExecutionLogEntry,
    ValidationMessage,
)
from formulabench.contracts.rows import (
    MetricsData,
    RowCalculationResult,
    RowOutcome,
    StoreChange,
    TableRow,
)
from formulabench.contracts.schema import (
    Constraints,
    EngineHints,
    FactorDef,
    FactorType,
    FormulaInput,
    FormulaScalar,
    FormulaSchema,
)
from formulabench.contracts.sentinels import MISSING, MissingSentinel

__all__ = [
    "MISSING",
    "ArtifactMissingError",
    "BaseType",
    "CalculationEvent",
    "CalculationTrigger",
    "CellUpdateEvent",
    "CompilationError",
    "Constraints",
    "EngineHints",
    "ExecutionLogEntry",
    "FactorDef",
    "FactorType",
    "FormulaBenchError",
    "FormulaInput",
    "FormulaScalar",
    "FormulaSchema",
    "FormulaValidationError",
    "InvocationError",
    "InvokeMode",
    "MetricsData",
    "MissingSentinel",
    "RoundingStrategy",
    "RowCalculationResult",
    "RowOutcome",
    "RowPhase",
    "RowPhaseError",
    "StoreChange",
    "StoreChangeKind",
    "TableRow",
    "ValidationMessage",
]
