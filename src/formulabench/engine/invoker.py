# src/formulabench/engine/invoker.py
"""Formula artifact invocation.

Calls a compiled formula with positional arguments in schema input order,
either on a worker thread (InvokeMode.THREAD, the default, so slow user
code never blocks the event loop) or inline on the loop
(InvokeMode.INLINE). Coroutine functions are awaited on the loop in both
modes. Duration is wall-clock time around the call.

Engine hints (rounding strategy plus decimal scale) are applied to numeric
results after the call.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import math
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from formulabench.contracts.enums import InvokeMode, RoundingStrategy
from formulabench.contracts.errors import InvocationError
from formulabench.contracts.schema import EngineHints, FormulaSchema
from formulabench.engine.artifact_cache import ArtifactFunc


@dataclass(frozen=True, slots=True)
class Invocation:
    """Value returned by a formula body and how long it took."""

    value: Any
    execution_time_ms: float


def positional_args(schema: FormulaSchema, inputs: Mapping[str, Any]) -> list[Any]:
    """Arguments in schema declaration order; absent inputs are passed as None."""
    return [inputs.get(item.key) for item in schema.inputs]


def apply_rounding(value: float, strategy: RoundingStrategy) -> float:
    if strategy == RoundingStrategy.FLOOR:
        return math.floor(value)
    if strategy == RoundingStrategy.CEIL:
        return math.ceil(value)
    if strategy == RoundingStrategy.TRUNC:
        return math.trunc(value)
    # Half-up, not banker's rounding
    return math.floor(value + 0.5)


def round_to_scale(value: float, scale: int, strategy: RoundingStrategy = RoundingStrategy.ROUND) -> float:
    """Round ``value`` to ``scale`` decimal places using ``strategy``.

    >>> round_to_scale(1.23456, 2)
    1.23
    >>> round_to_scale(1.231, 2, RoundingStrategy.CEIL)
    1.24
    """
    multiplier = 10**scale
    return apply_rounding(value * multiplier, strategy) / multiplier


def apply_engine_hints(value: Any, hints: EngineHints | None) -> Any:
    """Round numeric results when both rounding and scale are hinted."""
    if hints is None or hints.rounding is None or hints.scale is None:
        return value
    if isinstance(value, bool) or not isinstance(value, int | float):
        return value
    if isinstance(value, float) and not math.isfinite(value):
        return value
    return round_to_scale(value, hints.scale, hints.rounding)


class ArtifactInvoker:
    """Runs formula bodies inline or on a thread pool.

    Call close() when done so worker threads exit.
    """

    def __init__(self, mode: InvokeMode = InvokeMode.THREAD, max_workers: int = 4) -> None:
        self._mode = mode
        self._pool: ThreadPoolExecutor | None = None
        if mode == InvokeMode.THREAD:
            self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="formula-invoke")

    @property
    def mode(self) -> InvokeMode:
        return self._mode

    async def invoke(self, schema: FormulaSchema, func: ArtifactFunc, args: Sequence[Any]) -> Invocation:
        """Call ``func(*args)`` and apply the schema's engine hints.

        Raises:
            InvocationError: The formula body raised; wraps the original
                exception and carries the elapsed time.
        """
        start = time.perf_counter()
        try:
            if inspect.iscoroutinefunction(func) or self._pool is None:
                value = func(*args)
            else:
                loop = asyncio.get_running_loop()
                value = await loop.run_in_executor(self._pool, functools.partial(func, *args))
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            raise InvocationError(schema.id, e, execution_time_ms=elapsed_ms) from e
        elapsed_ms = (time.perf_counter() - start) * 1000
        return Invocation(value=apply_engine_hints(value, schema.engine_hints), execution_time_ms=elapsed_ms)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
