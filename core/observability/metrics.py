"""
Metrics Collection for Value Resolution

Collects and exposes metrics for:
- Resolution requests (requests, queries, candidates returned, empty results)
- Refreshes (started, completed, failed, rows loaded)
- Confirmations and promotions
- Timeouts by phase
- Processing times (average, p95) by stage

Metrics are kept in memory; /metrics exposes the summary.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any
import statistics


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class ResolutionMetrics:
    """Metrics for resolution requests."""
    requests: int = 0
    queries: int = 0
    candidates_returned: int = 0
    empty_results: int = 0
    prefilter_skips: int = 0  # (query, store) pairs with no key overlap

    by_store: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class RefreshMetrics:
    """Metrics for store refreshes."""
    started: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0
    rows_loaded: int = 0

    by_store: Dict[str, Dict[str, int]] = field(
        default_factory=lambda: defaultdict(lambda: {"completed": 0, "failed": 0, "rows": 0})
    )


@dataclass
class LearningMetrics:
    """Metrics for the learning ledger."""
    confirmations: int = 0
    duplicate_confirmations: int = 0
    promotions: int = 0
    promotion_races: int = 0


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for value resolution.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_refresh_completed("vendors", rows=1200, duration_ms=850)
        metrics.record_resolution(queries=3, candidates=7, empty=1, duration_ms=12)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.resolution = ResolutionMetrics()
        self.refresh = RefreshMetrics()
        self.learning = LearningMetrics()
        self.timings = TimingMetrics()
        self.timeouts: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    # =========================================================================
    # Resolution
    # =========================================================================

    def record_resolution(self, queries: int, candidates: int, empty: int, duration_ms: float = None):
        """Record one bulk resolution request."""
        with self._lock:
            self.resolution.requests += 1
            self.resolution.queries += queries
            self.resolution.candidates_returned += candidates
            self.resolution.empty_results += empty
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, "resolve")

    def record_store_search(self, store_name: str, prefilter_hit: bool):
        """Record one (query, store) search."""
        with self._lock:
            self.resolution.by_store[store_name] += 1
            if not prefilter_hit:
                self.resolution.prefilter_skips += 1

    # =========================================================================
    # Refresh
    # =========================================================================

    def record_refresh_started(self, store_name: str):
        with self._lock:
            self.refresh.started += 1

    def record_refresh_completed(self, store_name: str, rows: int, duration_ms: float = None):
        with self._lock:
            self.refresh.completed += 1
            self.refresh.rows_loaded += rows
            self.refresh.by_store[store_name]["completed"] += 1
            self.refresh.by_store[store_name]["rows"] = rows
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, "refresh")

    def record_refresh_failed(self, store_name: str, error: str = None):
        with self._lock:
            self.refresh.failed += 1
            self.refresh.by_store[store_name]["failed"] += 1

    def record_refresh_rejected(self, store_name: str):
        """A refresh was refused because another one was in flight."""
        with self._lock:
            self.refresh.rejected += 1

    # =========================================================================
    # Learning
    # =========================================================================

    def record_confirmation(self, duplicate: bool = False):
        with self._lock:
            if duplicate:
                self.learning.duplicate_confirmations += 1
            else:
                self.learning.confirmations += 1

    def record_promotion(self):
        with self._lock:
            self.learning.promotions += 1

    def record_promotion_race(self):
        with self._lock:
            self.learning.promotion_races += 1

    # =========================================================================
    # Timeouts and Timings
    # =========================================================================

    def record_timeout(self, phase: str):
        with self._lock:
            self.timeouts[phase] += 1

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "resolution": {
                    "requests": self.resolution.requests,
                    "queries": self.resolution.queries,
                    "candidates_returned": self.resolution.candidates_returned,
                    "empty_results": self.resolution.empty_results,
                    "prefilter_skips": self.resolution.prefilter_skips,
                    "by_store": dict(self.resolution.by_store),
                },
                "refresh": {
                    "started": self.refresh.started,
                    "completed": self.refresh.completed,
                    "failed": self.refresh.failed,
                    "rejected": self.refresh.rejected,
                    "rows_loaded": self.refresh.rows_loaded,
                    "by_store": {k: dict(v) for k, v in self.refresh.by_store.items()},
                },
                "learning": {
                    "confirmations": self.learning.confirmations,
                    "duplicate_confirmations": self.learning.duplicate_confirmations,
                    "promotions": self.learning.promotions,
                    "promotion_races": self.learning.promotion_races,
                },
                "timeouts": dict(self.timeouts),
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
