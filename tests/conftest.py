# tests/conftest.py
"""Shared test fixtures and helpers.

Timing Fixtures:
- clock: MockClock starting at t=1000.0
- scheduler: ManualScheduler driven by that clock; nothing fires until
  ``await scheduler.advance(seconds)``

Schema Fixtures:
- add_schema: two required numbers, source ``add(a, b)``
- nested_schema: ``a`` plus object ``b`` with required ``c``
- holdings_schema: array of objects plus a nullable note

Engine Fixtures:
- engine: a wired CalculationPipeline with inline invocation and a
  cache without the background sweep thread
- test_settings: FormulabenchSettings suitable for DataSheet tests

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from formulabench.contracts import FormulaSchema, InvokeMode
from formulabench.core.config import CacheSettings, CalculationSettings, FormulabenchSettings
from formulabench.engine.artifact_cache import ArtifactCache
from formulabench.engine.cell_store import CellStore
from formulabench.engine.clock import MockClock
from formulabench.engine.compiler import FormulaCompiler
from formulabench.engine.execution_log import ExecutionLog
from formulabench.engine.invoker import ArtifactInvoker
from formulabench.engine.pipeline import CalculationPipeline
from formulabench.engine.schema_validator import SchemaValidator
from formulabench.engine.state_tracker import StateTracker
from formulabench.engine.timers import ManualScheduler

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Schemas
# =============================================================================

ADD_SOURCE = """
def add(a, b):
    return a + b
"""


def make_schema(data: dict[str, Any]) -> FormulaSchema:
    """Build a FormulaSchema from a camelCase dict, like a UI export."""
    return FormulaSchema.model_validate(data)


@pytest.fixture
def add_schema() -> FormulaSchema:
    return make_schema(
        {
            "id": "add",
            "name": "Add",
            "inputs": [
                {"key": "a", "factorType": {"baseType": "number"}},
                {"key": "b", "factorType": {"baseType": "number"}},
            ],
            "sourceCode": ADD_SOURCE,
        }
    )


@pytest.fixture
def nested_schema() -> FormulaSchema:
    return make_schema(
        {
            "id": "nested",
            "inputs": [
                {"key": "a", "factorType": {"baseType": "number"}},
                {
                    "key": "b",
                    "factorType": {
                        "baseType": "object",
                        "properties": [{"key": "c", "factorType": {"baseType": "number"}}],
                    },
                },
            ],
            "sourceCode": "def f(a, b):\n    return a + b['c']\n",
        }
    )


@pytest.fixture
def holdings_schema() -> FormulaSchema:
    return make_schema(
        {
            "id": "holdings",
            "inputs": [
                {
                    "key": "holdings",
                    "factorType": {
                        "baseType": "object",
                        "array": True,
                        "properties": [
                            {"key": "symbol", "factorType": {"baseType": "string"}},
                            {"key": "amount", "factorType": {"baseType": "number", "constraints": {"min": 0}}},
                        ],
                    },
                },
                {"key": "note", "factorType": {"baseType": "string", "nullable": True}},
            ],
            "sourceCode": (
                "def total(holdings, note):\n"
                "    return sum(item['amount'] for item in holdings if item.get('amount') is not None)\n"
            ),
        }
    )


# =============================================================================
# Timing
# =============================================================================


@pytest.fixture
def clock() -> MockClock:
    return MockClock(start=1000.0)


@pytest.fixture
def scheduler(clock: MockClock) -> ManualScheduler:
    return ManualScheduler(clock)


# =============================================================================
# Engine
# =============================================================================


@dataclass
class Engine:
    """A wired pipeline and its collaborators."""

    store: CellStore
    cache: ArtifactCache
    compiler: FormulaCompiler
    validator: SchemaValidator
    tracker: StateTracker
    invoker: ArtifactInvoker
    execution_log: ExecutionLog
    pipeline: CalculationPipeline
    scheduler: ManualScheduler
    clock: MockClock


@pytest.fixture
def engine(clock: MockClock, scheduler: ManualScheduler) -> Iterator[Engine]:
    store = CellStore()
    cache = ArtifactCache(max_size=10, clock=clock, background_sweep=False)
    compiler = FormulaCompiler(cache)
    validator = SchemaValidator(clock=clock)
    tracker = StateTracker()
    invoker = ArtifactInvoker(mode=InvokeMode.INLINE)
    execution_log = ExecutionLog(max_size=20, clock=clock)
    pipeline = CalculationPipeline(
        store,
        cache,
        validator,
        tracker,
        invoker,
        scheduler=scheduler,
        clock=clock,
        execution_log=execution_log,
        debounce_seconds=0.3,
    )
    yield Engine(
        store=store,
        cache=cache,
        compiler=compiler,
        validator=validator,
        tracker=tracker,
        invoker=invoker,
        execution_log=execution_log,
        pipeline=pipeline,
        scheduler=scheduler,
        clock=clock,
    )
    pipeline.close()
    invoker.close()
    cache.destroy()


@pytest.fixture
def test_settings() -> FormulabenchSettings:
    return FormulabenchSettings(
        cache=CacheSettings(max_size=10, background_sweep=False),
        calculation=CalculationSettings(invoke_mode=InvokeMode.INLINE),
    )
