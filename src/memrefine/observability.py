"""In-process metrics for refinement sessions and tool actions.

Two aggregates are kept: latency per operation (tool actions, whole
sessions, rollbacks) and a counter of session outcomes per status.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class LatencySummary:
    """Aggregated latency for one operation."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    min_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0

    def add(self, duration_ms: float, ok: bool) -> None:
        first = self.count == 0
        self.count += 1
        if not ok:
            self.error_count += 1
        self.total_ms += duration_ms
        self.last_ms = duration_ms
        self.min_ms = duration_ms if first else min(self.min_ms, duration_ms)
        self.max_ms = duration_ms if first else max(self.max_ms, duration_ms)

    def as_dict(self) -> dict[str, float | int]:
        avg = self.total_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "error_count": self.error_count,
            "total_ms": round(self.total_ms, 3),
            "avg_ms": round(avg, 3),
            "min_ms": round(self.min_ms, 3),
            "max_ms": round(self.max_ms, 3),
            "last_ms": round(self.last_ms, 3),
        }


class _MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._latency: dict[str, LatencySummary] = {}
        self._outcomes: Counter[str] = Counter()

    def record_latency(self, operation: str, duration_ms: float, ok: bool) -> None:
        normalized = max(float(duration_ms), 0.0)
        with self._lock:
            self._latency.setdefault(operation, LatencySummary()).add(normalized, ok)
        logger.debug(
            "latency operation=%s duration_ms=%.3f ok=%s",
            operation,
            normalized,
            ok,
        )

    def record_outcome(self, status: str) -> None:
        with self._lock:
            self._outcomes[status] += 1

    def latency_snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: summary.as_dict()
                for operation, summary in sorted(self._latency.items())
            }

    def outcome_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._outcomes.items()))

    def reset(self) -> None:
        with self._lock:
            self._latency.clear()
            self._outcomes.clear()


_REGISTRY = _MetricsRegistry()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    """Record one latency sample."""
    _REGISTRY.record_latency(operation, duration_ms, ok)


def record_session_outcome(status: str) -> None:
    """Count one finished refinement session by outcome status."""
    _REGISTRY.record_outcome(status)


def latency_metrics_snapshot() -> dict[str, dict[str, float | int]]:
    return _REGISTRY.latency_snapshot()


def session_outcome_snapshot() -> dict[str, int]:
    return _REGISTRY.outcome_snapshot()


def reset_metrics() -> None:
    """Clear all aggregates (test helper)."""
    _REGISTRY.reset()
