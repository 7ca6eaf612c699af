"""
Metrics Collection for the Legal Knowledge Base

Tracks latency, token spend, retrieval volume and failures of pipeline runs
(search, qa, consultant) for monitoring.
"""

import time
import logging
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class RunMetrics:
    """Metrics for a single pipeline run."""
    run_id: str
    feature: str
    user_id: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    tokens_used: int = 0
    results_count: int = 0
    tool_iterations: int = 0
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated metrics across runs."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    empty_retrievals: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    total_tokens: int = 0
    total_tool_iterations: int = 0

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))
    runs_by_feature: dict = field(default_factory=lambda: defaultdict(int))
    tokens_by_feature: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_runs == 0:
            return 0
        return self.total_latency_ms / self.total_runs

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self._percentile(0.95)

    @property
    def error_rate(self) -> float:
        if self.total_runs == 0:
            return 0
        return self.failed_runs / self.total_runs

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "runs": {
                "total": self.total_runs,
                "successful": self.successful_runs,
                "failed": self.failed_runs,
                "empty_retrievals": self.empty_retrievals,
                "error_rate": f"{self.error_rate:.2%}",
                "by_feature": dict(self.runs_by_feature),
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "tokens": {
                "total": self.total_tokens,
                "by_feature": dict(self.tokens_by_feature),
            },
            "tool_iterations": self.total_tool_iterations,
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates pipeline metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_run("qa", principal.user_id) as tracker:
            ...
            tracker.set_results(len(chunks), tokens_used=usage.total)

        metrics = collector.get_metrics_dict()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._run_history: list[RunMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        self.metrics = SystemMetrics()
        self._run_history = []
        self._start_time = datetime.now()

    class RunTracker:
        """Context manager for tracking one pipeline run."""

        def __init__(self, collector: 'MetricsCollector', feature: str, user_id: str):
            self.collector = collector
            self.run = RunMetrics(
                run_id=f"{feature}_{int(time.time() * 1000)}",
                feature=feature,
                user_id=user_id,
                start_time=time.time(),
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.run.end_time = time.time()
            self.run.latency_ms = (self.run.end_time - self.run.start_time) * 1000

            if exc_type and self.run.error is None:
                self.fail(exc_type.__name__)

            self.collector._record_run(self.run)
            return False  # Don't suppress exceptions

        def set_results(self, count: int, tokens_used: int = 0, tool_iterations: int = 0):
            self.run.results_count = count
            self.run.tokens_used = tokens_used
            self.run.tool_iterations = tool_iterations

        def fail(self, error_type: str):
            """Mark the run failed when the pipeline handled the error itself."""
            self.run.error = error_type
            self.collector._record_error(error_type)

    def track_run(self, feature: str, user_id: str) -> RunTracker:
        return self.RunTracker(self, feature, user_id)

    def _record_run(self, run: RunMetrics):
        self.metrics.total_runs += 1
        self.metrics.runs_by_feature[run.feature] += 1

        if run.error:
            self.metrics.failed_runs += 1
        else:
            self.metrics.successful_runs += 1
            if run.results_count == 0 and run.feature != "consultant":
                self.metrics.empty_retrievals += 1

        self.metrics.total_latency_ms += run.latency_ms
        self.metrics.min_latency_ms = min(self.metrics.min_latency_ms, run.latency_ms)
        self.metrics.max_latency_ms = max(self.metrics.max_latency_ms, run.latency_ms)
        self.metrics.latencies.append(run.latency_ms)
        if len(self.metrics.latencies) > self._max_history:
            self.metrics.latencies = self.metrics.latencies[-self._max_history:]

        self.metrics.total_tokens += run.tokens_used
        self.metrics.tokens_by_feature[run.feature] += run.tokens_used
        self.metrics.total_tool_iterations += run.tool_iterations

        self._run_history.append(run)
        if len(self._run_history) > self._max_history:
            self._run_history = self._run_history[-self._max_history:]

    def _record_error(self, error_type: str):
        self.metrics.errors_by_type[error_type] += 1

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        return self.metrics.to_dict()

    def get_recent_runs(self, limit: int = 10) -> list[RunMetrics]:
        return self._run_history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
