# src/formulabench/engine/execution_log.py
"""Bounded, newest-first log of formula executions.

Every invocation attempt (success or failure) adds one entry with the
inputs it ran with. Only the most recent ``max_size`` entries are kept;
older entries are dropped silently apart from an aggregate debug log.
"""

from __future__ import annotations

import copy
import uuid
from collections import deque
from collections.abc import Mapping
from typing import Any

import structlog

from formulabench.contracts.events import ExecutionLogEntry
from formulabench.contracts.sentinels import MISSING
from formulabench.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

DEFAULT_MAX_LOGS = 20


class ExecutionLog:
    """Ring buffer of ExecutionLogEntry, newest first.

    Thread Safety:
        NOT thread-safe. The pipeline writes from the event loop only.

    Example:
        log = ExecutionLog(max_size=20)
        log.add("f1", "row-f1-0", {"a": 1}, result=2, execution_time_ms=0.4)
        latest = log.entries()[0]
    """

    # Log aggregate drops every N entries
    _LOG_INTERVAL = 100

    def __init__(self, max_size: int = DEFAULT_MAX_LOGS, clock: Clock | None = None) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._entries: deque[ExecutionLogEntry] = deque(maxlen=max_size)
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._dropped_count = 0

    def add(
        self,
        formula_id: str,
        row_id: str,
        inputs: Mapping[str, Any],
        *,
        result: Any = MISSING,
        error: str | None = None,
        stack: str | None = None,
        execution_time_ms: float | None = None,
        level: str | None = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            id=str(uuid.uuid4()),
            timestamp=self._clock.monotonic(),
            formula_id=formula_id,
            row_id=row_id,
            inputs=copy.deepcopy(dict(inputs)),
            level=level or ("error" if error is not None else "info"),
            result=result,
            error=error,
            stack=stack,
            execution_time_ms=execution_time_ms,
        )
        was_full = len(self._entries) == self._entries.maxlen
        self._entries.appendleft(entry)
        if was_full:
            self._dropped_count += 1
            if self._dropped_count % self._LOG_INTERVAL == 0:
                logger.debug("Execution log entries dropped", dropped_total=self._dropped_count)
        return entry

    def entries(self, formula_id: str | None = None) -> list[ExecutionLogEntry]:
        """Entries newest first, optionally for one formula."""
        if formula_id is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.formula_id == formula_id]

    def errors(self) -> list[ExecutionLogEntry]:
        return [entry for entry in self._entries if entry.level == "error"]

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
