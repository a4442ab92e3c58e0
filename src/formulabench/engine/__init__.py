"""Calculation engine: storage, caching, validation, pipeline, auto-trigger.

Import patterns:
    from formulabench.engine import DataSheet
    from formulabench.engine import CalculationPipeline, CellStore, ArtifactCache
"""

from formulabench.engine.artifact_cache import ArtifactCache, CompiledArtifact
from formulabench.engine.auto_trigger import AutoTriggerController
from formulabench.engine.cell_store import CellStore
from formulabench.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from formulabench.engine.compiler import FormulaCompiler, compile_source
from formulabench.engine.datasheet import DataSheet, stable_row_id
from formulabench.engine.execution_log import ExecutionLog
from formulabench.engine.invoker import ArtifactInvoker
from formulabench.engine.metrics import MetricsRegistry, compute_metrics
from formulabench.engine.pipeline import CalculationObserver, CalculationPipeline
from formulabench.engine.schema_validator import RowValidation, SchemaValidator, pre_args_check, validate_row
from formulabench.engine.state_tracker import DebugInfo, StateTable, StateTracker
from formulabench.engine.timers import AsyncioScheduler, KeyedTimers, ManualScheduler, Scheduler

__all__ = [
    "DEFAULT_CLOCK",
    "ArtifactCache",
    "ArtifactInvoker",
    "AsyncioScheduler",
    "AutoTriggerController",
    "CalculationObserver",
    "CalculationPipeline",
    "CellStore",
    "Clock",
    "CompiledArtifact",
    "DataSheet",
    "DebugInfo",
    "ExecutionLog",
    "FormulaCompiler",
    "KeyedTimers",
    "ManualScheduler",
    "MetricsRegistry",
    "MockClock",
    "RowValidation",
    "Scheduler",
    "SchemaValidator",
    "StateTable",
    "StateTracker",
    "SystemClock",
    "compile_source",
    "compute_metrics",
    "pre_args_check",
    "stable_row_id",
    "validate_row",
]
