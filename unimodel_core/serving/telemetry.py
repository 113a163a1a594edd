"""
Observability counters for the UniModel serving core.

ServingMetrics keeps in-process counters and gauges:
- queue depth per model (gauge, read from the scheduler)
- batch-size distribution per model (bucketed histogram)
- resource utilization per device (gauge, read from the pool)
- error counts by taxonomy code
- request counts and latency percentiles per model
- lifecycle transition counts

Collectors either pull with snapshot() or register exporters that receive
the snapshot on every flush(). The wire format is the collector's concern.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from unimodel_core.serving.errors import ERROR_CODES
from unimodel_core.serving.types import Batch, ModelDescriptor

logger = logging.getLogger(__name__)

Exporter = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

BATCH_SIZE_BUCKETS = (1, 2, 4, 8, 16, 32, 64, 128, 256)
LATENCY_WINDOW = 1000


def _percentile(values: List[float], p: float) -> float:
    """Calculate percentile."""
    if not values:
        return 0.0
    sorted_values = sorted(values)
    k = (len(sorted_values) - 1) * (p / 100)
    f = int(k)
    c = min(f + 1, len(sorted_values) - 1)
    if f == c:
        return sorted_values[f]
    return sorted_values[f] * (c - k) + sorted_values[c] * (k - f)


class _Histogram:
    def __init__(self, buckets=BATCH_SIZE_BUCKETS):
        self.buckets = tuple(buckets)
        self.counts = [0] * (len(self.buckets) + 1)
        self.count = 0
        self.total = 0.0
        self.max = 0.0

    def observe(self, value: float) -> None:
        for i, bound in enumerate(self.buckets):
            if value <= bound:
                self.counts[i] += 1
                break
        else:
            self.counts[-1] += 1
        self.count += 1
        self.total += value
        self.max = max(self.max, value)

    def to_dict(self) -> Dict[str, Any]:
        labels = [f"le_{b}" for b in self.buckets] + ["le_inf"]
        return {
            "buckets": dict(zip(labels, self.counts)),
            "count": self.count,
            "sum": self.total,
            "mean": self.total / self.count if self.count else 0.0,
            "max": self.max,
        }


class ServingMetrics:
    """
    In-process metrics for the serving path.

    Example:
        metrics = ServingMetrics()
        metrics.set_sources(queue_depths=scheduler_depths, utilization=pool.utilization)
        metrics.add_exporter(lambda snap: print(snap["errors_by_code"]))
        await metrics.flush()
    """

    def __init__(self):
        self._errors: Dict[str, int] = {code: 0 for code in ERROR_CODES}
        self._errors_by_model: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._batch_sizes: Dict[str, _Histogram] = defaultdict(_Histogram)
        self._formation_wait: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=LATENCY_WINDOW)
        )
        self._latencies: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=LATENCY_WINDOW))
        self._requests: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"submitted": 0, "completed": 0, "failed": 0, "cancelled": 0, "rejected": 0}
        )
        self._retries: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)

        self._queue_depths: Optional[Callable[[], Dict[str, int]]] = None
        self._utilization: Optional[Callable[[], Dict[str, float]]] = None
        self._exporters: List[Exporter] = []
        self._started_at = time.time()

    def set_sources(
        self,
        queue_depths: Optional[Callable[[], Dict[str, int]]] = None,
        utilization: Optional[Callable[[], Dict[str, float]]] = None,
    ) -> None:
        """Wire the gauges to their live sources."""
        if queue_depths is not None:
            self._queue_depths = queue_depths
        if utilization is not None:
            self._utilization = utilization

    # =========================================================================
    # Recording
    # =========================================================================

    def record_submitted(self, model: str) -> None:
        self._requests[model]["submitted"] += 1

    def record_rejected(self, model: str, code: str) -> None:
        self._requests[model]["rejected"] += 1
        self.record_error(code, model)

    def record_completed(
        self,
        model: str,
        latency_ms: float,
        success: bool,
        code: Optional[str] = None,
    ) -> None:
        self._requests[model]["completed" if success else "failed"] += 1
        self._latencies[model].append(latency_ms)
        if not success and code:
            self.record_error(code, model)

    def record_cancelled(self, model: str) -> None:
        self._requests[model]["cancelled"] += 1

    def record_error(self, code: str, model: Optional[str] = None) -> None:
        self._errors[code] = self._errors.get(code, 0) + 1
        if model:
            self._errors_by_model[model][code] += 1

    def record_batch(self, batch: Batch) -> None:
        self._batch_sizes[batch.model_name].observe(batch.size)
        self._formation_wait[batch.model_name].append(batch.formation_wait_ms)

    def record_retry(self, model: str) -> None:
        self._retries[model] += 1

    def record_transition(self, old: ModelDescriptor, new: ModelDescriptor) -> None:
        """Registry listener."""
        self._transitions[f"{old.state.value}->{new.state.value}"] += 1

    # =========================================================================
    # Export
    # =========================================================================

    def error_count(self, code: str) -> int:
        return self._errors.get(code, 0)

    def snapshot(self) -> Dict[str, Any]:
        models = sorted(
            set(self._requests) | set(self._batch_sizes) | set(self._latencies)
        )
        per_model = {}
        for model in models:
            latencies = list(self._latencies.get(model, ()))
            waits = list(self._formation_wait.get(model, ()))
            per_model[model] = {
                "requests": dict(self._requests[model]) if model in self._requests else {},
                "batch_size": (
                    self._batch_sizes[model].to_dict() if model in self._batch_sizes else None
                ),
                "latency_ms": {
                    "p50": _percentile(latencies, 50),
                    "p95": _percentile(latencies, 95),
                    "p99": _percentile(latencies, 99),
                },
                "formation_wait_ms_p95": _percentile(waits, 95),
                "retries": self._retries.get(model, 0),
                "errors": dict(self._errors_by_model.get(model, {})),
            }

        return {
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": time.time() - self._started_at,
            "queue_depth": dict(self._queue_depths()) if self._queue_depths else {},
            "device_utilization": dict(self._utilization()) if self._utilization else {},
            "errors_by_code": dict(self._errors),
            "transitions": dict(self._transitions),
            "models": per_model,
        }

    def add_exporter(self, exporter: Exporter) -> None:
        self._exporters.append(exporter)

    def remove_exporter(self, exporter: Exporter) -> None:
        if exporter in self._exporters:
            self._exporters.remove(exporter)

    async def flush(self) -> Dict[str, Any]:
        """Push the current snapshot to every exporter."""
        snapshot = self.snapshot()
        for exporter in list(self._exporters):
            try:
                result = exporter(snapshot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Metrics exporter failed: {e}")
        return snapshot
