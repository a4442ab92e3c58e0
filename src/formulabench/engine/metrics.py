# src/formulabench/engine/metrics.py
"""Execution metrics per formula.

A row counts as calculated when it carries an execution time, whether the
attempt succeeded or failed. Metrics are recomputed from row snapshots
and only published to listeners when they differ from the last published
value.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from formulabench.contracts.rows import MetricsData, TableRow

MetricsListener = Callable[[str, MetricsData], None]


def compute_metrics(rows: Iterable[TableRow]) -> MetricsData:
    """Aggregate execution times; all zeros for an empty sheet."""
    snapshot = list(rows)
    times = [row.execution_time_ms for row in snapshot if row.execution_time_ms is not None]
    total_time = sum(times, 0.0)
    return MetricsData(
        total_time=total_time,
        average_time=total_time / len(times) if times else 0.0,
        calculated_rows=len(times),
        total_rows=len(snapshot),
    )


class MetricsRegistry:
    """Latest published MetricsData per formula id."""

    def __init__(self) -> None:
        self._metrics: dict[str, MetricsData] = {}
        self._listeners: list[MetricsListener] = []

    def update(self, formula_id: str, rows: Iterable[TableRow]) -> bool:
        """Recompute metrics; returns True when a new value was published."""
        metrics = compute_metrics(rows)
        if self._metrics.get(formula_id) == metrics:
            return False
        self._metrics[formula_id] = metrics
        for listener in list(self._listeners):
            listener(formula_id, metrics)
        return True

    def get(self, formula_id: str) -> MetricsData | None:
        return self._metrics.get(formula_id)

    def subscribe(self, listener: MetricsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self, formula_id: str | None = None) -> None:
        if formula_id is None:
            self._metrics.clear()
        else:
            self._metrics.pop(formula_id, None)
