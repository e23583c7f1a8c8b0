"""
Observability metrics for the storefront service.

Two collectors, both held on ``app.state`` and injected into handlers:
- MetricsCollector: server-side request latency percentiles (p50, p95, p99),
  request counts and error rates per endpoint, fed by the latency middleware.
- PerformanceBuffer: bounded ring buffer of client web-vitals samples
  (oldest evicted first) with per-metric summary statistics.
"""

import statistics
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from storefront.logger import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """
    In-memory request metrics over a sliding window per endpoint.
    """

    def __init__(self, window_size: int = 1000):
        self.window_size = window_size
        self.latencies: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=window_size))
        self.request_counts: Dict[str, int] = defaultdict(int)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.start_time = datetime.now(timezone.utc)

    def record_request(self, endpoint: str, latency_ms: float, is_error: bool = False) -> None:
        self.latencies[endpoint].append(latency_ms)
        self.request_counts[endpoint] += 1
        if is_error:
            self.error_counts[endpoint] += 1

    def get_percentile(self, endpoint: str, percentile: float) -> Optional[float]:
        """
        Latency percentile (0-100) for an endpoint in ms, or None with fewer
        than 10 samples.
        """
        values = sorted(self.latencies.get(endpoint, ()))
        if len(values) < 10:
            return None
        index = min(int(len(values) * (percentile / 100.0)), len(values) - 1)
        return values[index]

    def get_error_rate(self, endpoint: str) -> float:
        total = self.request_counts[endpoint]
        if total == 0:
            return 0.0
        return (self.error_counts[endpoint] / total) * 100.0

    def get_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "uptime_seconds": round((datetime.now(timezone.utc) - self.start_time).total_seconds(), 1),
            "endpoints": {},
        }
        for endpoint in sorted(self.request_counts):
            endpoint_metrics: Dict[str, Any] = {
                "total_requests": self.request_counts[endpoint],
                "total_errors": self.error_counts[endpoint],
                "error_rate_pct": round(self.get_error_rate(endpoint), 2),
            }
            for pct in (50, 95, 99):
                value = self.get_percentile(endpoint, pct)
                if value is not None:
                    endpoint_metrics[f"latency_p{pct}_ms"] = round(value, 2)
            if self.latencies[endpoint]:
                endpoint_metrics["latency_avg_ms"] = round(statistics.mean(self.latencies[endpoint]), 2)
            summary["endpoints"][endpoint] = endpoint_metrics
        return summary


class PerformanceBuffer:
    """
    Ring buffer of web-vitals samples. Appending beyond ``capacity`` evicts
    the oldest sample.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._samples: Deque[Dict[str, Any]] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    def record(
        self,
        metric: Dict[str, Any],
        user_agent: str = "",
        ip: str = "unknown",
    ) -> Dict[str, Any]:
        """Enrich a sample with request context and append it."""
        sample = dict(metric)
        if sample.get("timestamp") is None:
            sample["timestamp"] = int(time.time() * 1000)
        sample["user_agent"] = user_agent
        sample["ip"] = ip
        sample["received_at"] = datetime.now(timezone.utc).isoformat()
        self._samples.append(sample)

        if sample.get("rating") == "poor":
            logger.warning(
                "Poor performance detected: %s = %s on %s",
                sample.get("name"), sample.get("value"), sample.get("url"),
            )
        return sample

    def samples(self) -> List[Dict[str, Any]]:
        return list(self._samples)

    def stats(self, metric: Optional[str] = None, since: Optional[int] = None) -> Dict[str, Any]:
        """
        Per-metric count, average, median, p95 and rating counts, optionally
        filtered by metric name and by timestamp (ms) >= since.
        """
        selected = [
            s for s in self._samples
            if (metric is None or s["name"] == metric) and (since is None or s["timestamp"] >= since)
        ]

        groups: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for sample in selected:
            groups[sample["name"]].append(sample)

        metrics: Dict[str, Dict[str, Any]] = {}
        for name, items in groups.items():
            values = sorted(item["value"] for item in items)
            ratings = [item["rating"] for item in items]
            metrics[name] = {
                "count": len(items),
                "average": sum(values) / len(values),
                "median": values[len(values) // 2],
                "p95": values[min(int(len(values) * 0.95), len(values) - 1)],
                "good": ratings.count("good"),
                "needs_improvement": ratings.count("needs-improvement"),
                "poor": ratings.count("poor"),
            }

        return {"total": len(selected), "metrics": metrics}
