"""
KitForge Metrics Collection
In-process metrics for recolor runs and colorway extraction.
"""
import time
from collections import defaultdict, Counter
from typing import Any, Dict, List, Optional
from threading import Lock


class MetricsCollector:
    """Simple in-process metrics collector."""

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, int] = Counter()
        self._timings: Dict[str, List[float]] = defaultdict(list)
        self._samples: Dict[str, List[float]] = defaultdict(list)
        self._start_time = time.time()

    def increment_request_count(self):
        """Increment total recolor request counter."""
        with self._lock:
            self._counters["recolor_requests_total"] += 1

    def increment_success_count(self):
        with self._lock:
            self._counters["recolor_published_total"] += 1

    def increment_failure_count(self, error_code: str):
        """Increment failure counter by error code (MASKS_MISSING, GEOMETRY_CHANGED, ...)."""
        with self._lock:
            self._counters[f"recolor_failed_total_{error_code.lower()}"] += 1

    def increment_extraction_count(self):
        with self._lock:
            self._counters["colorway_extractions_total"] += 1

    def record_timing(self, operation: str, duration_ms: float):
        """Record timing for an operation."""
        with self._lock:
            self._timings[f"{operation}_duration_ms"].append(duration_ms)

    def record_drift(self, drift: float):
        with self._lock:
            self._samples["geometry_drift"].append(drift)

    def record_delta_e(self, role: str, delta_e: float):
        with self._lock:
            self._samples[f"delta_e_{role}"].append(delta_e)

    def get_counters(self) -> Dict[str, int]:
        """Get current counter values."""
        with self._lock:
            return dict(self._counters)

    def get_timing_stats(self) -> Dict[str, Dict[str, float]]:
        """Get timing statistics."""
        with self._lock:
            return {name: self._describe(values) for name, values in self._timings.items() if values}

    def get_sample_stats(self) -> Dict[str, Dict[str, float]]:
        """Get drift / delta-E statistics."""
        with self._lock:
            return {name: self._describe(values) for name, values in self._samples.items() if values}

    def get_uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def get_summary(self) -> Dict[str, Any]:
        """Get complete metrics summary."""
        return {
            "uptime_seconds": self.get_uptime_seconds(),
            "counters": self.get_counters(),
            "timing_stats": self.get_timing_stats(),
            "sample_stats": self.get_sample_stats(),
        }

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._samples.clear()
            self._start_time = time.time()

    @classmethod
    def _describe(cls, values: List[float]) -> Dict[str, float]:
        return {
            "count": len(values),
            "mean": sum(values) / len(values),
            "min": min(values),
            "max": max(values),
            "p50": cls._percentile(values, 50),
            "p95": cls._percentile(values, 95),
        }

    @staticmethod
    def _percentile(data: List[float], percentile: int) -> float:
        """Calculate percentile of data with linear interpolation."""
        if not data:
            return 0.0

        sorted_data = sorted(data)
        k = (len(sorted_data) - 1) * percentile / 100
        f = int(k)
        c = k - f

        if f + 1 < len(sorted_data):
            return sorted_data[f] + c * (sorted_data[f + 1] - sorted_data[f])
        return sorted_data[f]


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get or create global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _metrics
    if _metrics is not None:
        _metrics.reset()
