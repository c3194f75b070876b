"""
Metrics collection for selector healing operations.

Counters and histograms are kept in process memory; they describe what
the service has decided since start-up and are exposed read-only.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Any
import logging

from .models import HealingStatus, ReasonCode, TestOutcome


@dataclass
class MetricPoint:
    """A single metric data point."""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """Thread-safe metrics collector for healing operations."""

    def __init__(self, histogram_size: int = 1000):
        self._lock = threading.RLock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=histogram_size))
        self.logger = logging.getLogger("healing.metrics")

    def increment_counter(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        with self._lock:
            self._counters[self._make_key(name, labels)] += value

    def record_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Record a value in a histogram."""
        with self._lock:
            self._histograms[self._make_key(name, labels)].append(MetricPoint(
                timestamp=datetime.now(),
                value=value,
                labels=labels or {}
            ))

    def record_result(self, outcome: TestOutcome):
        """Record a newly accepted test result."""
        self.increment_counter("test_results_total", labels={"outcome": outcome.value})

    def record_decision(self, status: HealingStatus, reason: ReasonCode,
                        confidence: float, duration: float):
        """Record a healing decision produced by the pipeline."""
        with self._lock:
            self.increment_counter("healing_decisions_total", labels={"status": status.value})
            self.increment_counter("healing_reasons_total", labels={"reason": reason.value})
            self.record_histogram("healing_confidence", confidence)
            self.record_histogram("healing_duration_seconds", duration)

    def record_duplicate(self):
        """Record a repeated report that was answered from the stored decision."""
        self.increment_counter("duplicate_reports_total")

    def record_persistence_failure(self, operation: str):
        self.increment_counter("persistence_failures_total", labels={"operation": operation})

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(self._make_key(name, labels), 0)

    def get_snapshot(self) -> Dict[str, Any]:
        """Get counters plus count/mean for every histogram."""
        with self._lock:
            histograms = {}
            for key, points in self._histograms.items():
                values = [p.value for p in points]
                histograms[key] = {
                    "count": len(values),
                    "mean": sum(values) / len(values) if values else 0.0,
                    "max": max(values) if values else 0.0,
                }
            return {
                "counters": dict(self._counters),
                "histograms": histograms,
                "generated_at": datetime.now().isoformat(),
            }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector
