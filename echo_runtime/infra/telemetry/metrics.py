"""
Metrics Collector — Prometheus + Internal Percentiles
=======================================================

Metrics registry for one runtime instance. Every collector owns its own
``CollectorRegistry`` so several runtimes (and test cases) can coexist in
one process without duplicate-registration errors.

Metric Naming Convention:
  - echo_{layer}_{component}_{metric}_{unit}
  - e.g., echo_runtime_inference_latency_seconds
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)

# ── Percentile Tracker ─────────────────────────────────────────────

class PercentileTracker:
    """Thread-safe rolling window percentile calculator with cached sorting."""

    __slots__ = ("_lock", "_sorted_cache", "_sorted_dirty", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._sorted_dirty = True
        self._sorted_cache: list[float] = []

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._sorted_dirty = True

    def percentile(self, p: float) -> float:
        """Percentile (0-100) over the window; 0.0 when empty."""
        with self._lock:
            if not self._values:
                return 0.0
            if self._sorted_dirty:
                self._sorted_cache = sorted(self._values)
                self._sorted_dirty = False
            idx = int(len(self._sorted_cache) * p / 100)
            return self._sorted_cache[min(idx, len(self._sorted_cache) - 1)]

    @property
    def p50(self) -> float:
        return self.percentile(50)

    @property
    def p95(self) -> float:
        return self.percentile(95)

    @property
    def count(self) -> int:
        return len(self._values)

    def mean(self) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            return sum(self._values) / len(self._values)

# ── Metrics Collector ──────────────────────────────────────────────

class MetricsCollector:
    """
    Runtime metrics.

    Pre-defines the inference, pipeline, model-lifecycle and device
    condition metrics and keeps per-pipeline latency percentiles in-process.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._pipeline_latency = PercentileTracker()

        # ── Inference ──
        self.inference_latency = Histogram(
            "echo_runtime_inference_latency_seconds",
            "Single model inference latency",
            labelnames=["model", "backend"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.inference_requests = Counter(
            "echo_runtime_inference_requests_total",
            "Model inference calls",
            labelnames=["model", "status"],
            registry=self.registry,
        )

        # ── Model lifecycle ──
        self.model_loads = Counter(
            "echo_runtime_model_loads_total",
            "Model load attempts",
            labelnames=["status"],
            registry=self.registry,
        )
        self.model_evictions = Counter(
            "echo_runtime_model_evictions_total",
            "Model evictions",
            labelnames=["reason"],
            registry=self.registry,
        )
        self.active_models = Gauge(
            "echo_runtime_active_models",
            "Number of models currently loaded",
            registry=self.registry,
        )

        # ── Pipeline ──
        self.pipeline_requests = Counter(
            "echo_pipeline_requests_total",
            "Pipeline requests by outcome",
            labelnames=["status"],
            registry=self.registry,
        )
        self.pipeline_latency = Histogram(
            "echo_pipeline_latency_seconds",
            "End-to-end pipeline latency",
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.stage_failures = Counter(
            "echo_pipeline_stage_failures_total",
            "Pipeline stages that degraded to their fallback",
            labelnames=["stage"],
            registry=self.registry,
        )

        # ── Device conditions ──
        self.battery_percent = Gauge(
            "echo_hardware_battery_percent",
            "Battery level percentage",
            registry=self.registry,
        )
        self.thermal_level = Gauge(
            "echo_hardware_thermal_level",
            "Thermal level (0=none .. 4=critical)",
            registry=self.registry,
        )
        self.memory_pressure = Gauge(
            "echo_hardware_memory_pressure_ratio",
            "Memory pressure ratio (0-1)",
            registry=self.registry,
        )
        self.cpu_load = Gauge(
            "echo_hardware_cpu_load_ratio",
            "CPU load ratio (0-1)",
            registry=self.registry,
        )
        self.telemetry_failures = Counter(
            "echo_hardware_telemetry_failures_total",
            "Telemetry samples that fell back to a substitute snapshot",
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def record_inference(
        self, *, model: str, backend: str, latency_s: float, success: bool
    ) -> None:
        status = "success" if success else "error"
        self.inference_requests.labels(model=model, status=status).inc()
        if success:
            self.inference_latency.labels(model=model, backend=backend).observe(latency_s)

    def record_model_load(self, *, success: bool, active: int) -> None:
        self.model_loads.labels(status="success" if success else "error").inc()
        self.active_models.set(active)

    def record_eviction(self, *, reason: str, active: int) -> None:
        self.model_evictions.labels(reason=reason).inc()
        self.active_models.set(active)

    def record_pipeline(self, *, latency_s: float, degraded: bool) -> None:
        self._pipeline_latency.record(latency_s)
        self.pipeline_requests.labels(status="degraded" if degraded else "success").inc()
        self.pipeline_latency.observe(latency_s)

    def record_stage_failure(self, stage: str) -> None:
        self.stage_failures.labels(stage=stage).inc()

    def record_device_conditions(
        self, *, battery: float, thermal: int, memory_pressure: float, cpu_load: float
    ) -> None:
        self.battery_percent.set(battery)
        self.thermal_level.set(thermal)
        self.memory_pressure.set(memory_pressure)
        self.cpu_load.set(cpu_load)

    def record_telemetry_failure(self) -> None:
        self.telemetry_failures.inc()

    # ── Export ─────────────────────────────────────────────────────

    def get_summary(self) -> dict[str, Any]:
        return {
            "pipeline": {
                "p50_ms": round(self._pipeline_latency.p50 * 1000, 2),
                "p95_ms": round(self._pipeline_latency.p95 * 1000, 2),
                "mean_ms": round(self._pipeline_latency.mean() * 1000, 2),
                "count": self._pipeline_latency.count,
            },
        }

    def export_prometheus(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)
