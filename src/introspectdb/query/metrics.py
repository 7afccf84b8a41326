"""Query metrics collection for IntrospectDB.

Keeps an in-memory window of recent statement metrics plus running totals.
Used by ``MetricsExecutor`` and handy in tests for counting queries.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import UTC, datetime

from introspectdb.core.types import MetricsSummary, QueryMetrics

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects statement execution metrics.

    Tracks totals since the last ``reset()`` and keeps the most recent
    ``history_size`` entries for inspection.
    """

    def __init__(
        self,
        slow_query_threshold_ms: float = 100.0,
        history_size: int = 1000,
        enabled: bool = True,
    ) -> None:
        """Initialize the metrics collector.

        Args:
            slow_query_threshold_ms: Statements slower than this are logged
            history_size: Number of recent entries kept
            enabled: Whether to record anything at all
        """
        self._threshold_ms = slow_query_threshold_ms
        self._history: deque[QueryMetrics] = deque(maxlen=history_size)
        self._enabled = enabled
        self._lock = threading.Lock()
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._total = 0
        self._failed = 0
        self._slow = 0
        self._total_ms = 0.0
        self._max_ms = 0.0
        self._by_type: dict[str, int] = {}

    @property
    def enabled(self) -> bool:
        """Check if metrics collection is enabled."""
        return self._enabled

    @property
    def query_count(self) -> int:
        """Statements recorded since the last reset."""
        with self._lock:
            return self._total

    def record_query(self, metrics: QueryMetrics) -> None:
        """Record one statement execution.

        Args:
            metrics: Metrics for the statement
        """
        if not self._enabled:
            return

        if metrics.timestamp is None:
            metrics = metrics.model_copy(update={"timestamp": datetime.now(UTC)})

        with self._lock:
            self._history.append(metrics)
            self._total += 1
            self._total_ms += metrics.execution_time_ms
            self._max_ms = max(self._max_ms, metrics.execution_time_ms)
            self._by_type[metrics.query_type] = self._by_type.get(metrics.query_type, 0) + 1
            if not metrics.succeeded:
                self._failed += 1
            slow = metrics.execution_time_ms > self._threshold_ms
            if slow:
                self._slow += 1

        if slow:
            logger.warning(
                f"Slow {metrics.query_type} statement: {metrics.execution_time_ms:.1f}ms "
                f"(threshold: {self._threshold_ms:.0f}ms)"
            )

    def recent(self, limit: int = 20) -> list[QueryMetrics]:
        """Return the most recent entries, newest last."""
        with self._lock:
            return list(self._history)[-limit:]

    def summary(self) -> MetricsSummary:
        """Return aggregated totals."""
        with self._lock:
            return MetricsSummary(
                total_queries=self._total,
                failed_queries=self._failed,
                avg_execution_time_ms=self._total_ms / self._total if self._total else 0.0,
                max_execution_time_ms=self._max_ms,
                slow_queries=self._slow,
                by_type=dict(self._by_type),
            )

    def reset(self) -> None:
        """Forget all recorded metrics."""
        with self._lock:
            self._history.clear()
            self._reset_counters()
