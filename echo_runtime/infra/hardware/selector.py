"""
Accelerator Selector
=====================

Priority policy choosing a backend and execution configuration per model
load. First match wins:

  1. GPU when available and the workload suits it
  2. NPU when available and the platform feature check passed
  3. CPU_OPTIMIZED with clamp(cores // 2, 1, 4) threads, reduced precision
     allowed, when that thread count exceeds 2
  4. Plain CPU, 2 threads, full precision

A critical thermal event restricts the policy to steps 3 and 4 until the
device cools down. Benchmark numbers are diagnostic only and never feed
back into selection.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from echo_runtime.core.types import AccelerationBackend, WorkloadHint
from echo_runtime.infra.hardware.probe import HardwareCapabilities
from echo_runtime.infra.telemetry import get_logger

logger = get_logger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"
FALLBACK_CPU_THREADS = 2

class BenchmarkOutcome(Enum):
    """Marker for backends a benchmark could not run on."""

    NOT_APPLICABLE = "not_applicable"

    def __repr__(self) -> str:
        return self.name

NOT_APPLICABLE = BenchmarkOutcome.NOT_APPLICABLE

@dataclass(frozen=True)
class ExecutionConfig:
    """How a session should be constructed for one model."""

    backend: AccelerationBackend
    num_threads: int
    allow_reduced_precision: bool = False
    providers: tuple[str, ...] = (CPU_PROVIDER,)
    provider_options: tuple[dict[str, Any], ...] = field(default=({},))

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend.value,
            "num_threads": self.num_threads,
            "allow_reduced_precision": self.allow_reduced_precision,
            "providers": list(self.providers),
        }

def optimal_thread_count(core_count: int) -> int:
    return max(1, min(core_count // 2, 4))

class AcceleratorSelector:
    """
    Backend selection policy.

    Thread-safe: selections may happen from worker threads and the event
    loop at once. ``current_backend()`` reports the last selection.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = AccelerationBackend.CPU
        self._current_config: ExecutionConfig | None = None
        self._cpu_only = False
        self._restriction_reason: str | None = None

    # ── Selection ──────────────────────────────────────────────────

    def select(
        self,
        capabilities: HardwareCapabilities,
        hint: WorkloadHint | None = None,
    ) -> tuple[AccelerationBackend, ExecutionConfig]:
        with self._lock:
            config = self._choose(capabilities, hint)
            self._current = config.backend
            self._current_config = config

        logger.debug(
            "backend_selected",
            backend=config.backend.value,
            threads=config.num_threads,
            hint=hint.value if hint else None,
            restricted=self._cpu_only,
        )
        return config.backend, config

    def _choose(
        self, capabilities: HardwareCapabilities, hint: WorkloadHint | None
    ) -> ExecutionConfig:
        if not self._cpu_only:
            gpu_ok = hint is None or hint.gpu_suitable
            if capabilities.has_gpu and gpu_ok:
                return self._accelerator_config(capabilities, AccelerationBackend.GPU)
            if capabilities.has_npu and capabilities.npu_platform_supported:
                return self._accelerator_config(capabilities, AccelerationBackend.NPU)

        threads = optimal_thread_count(capabilities.core_count)
        if threads > FALLBACK_CPU_THREADS:
            return ExecutionConfig(
                backend=AccelerationBackend.CPU_OPTIMIZED,
                num_threads=threads,
                allow_reduced_precision=True,
            )
        return ExecutionConfig(
            backend=AccelerationBackend.CPU,
            num_threads=FALLBACK_CPU_THREADS,
            allow_reduced_precision=False,
        )

    @staticmethod
    def _accelerator_config(
        capabilities: HardwareCapabilities, backend: AccelerationBackend
    ) -> ExecutionConfig:
        delegate = capabilities.delegate_for(backend)
        providers = (delegate, CPU_PROVIDER) if delegate else (CPU_PROVIDER,)
        return ExecutionConfig(
            backend=backend,
            num_threads=optimal_thread_count(capabilities.core_count),
            allow_reduced_precision=True,
            providers=providers,
            provider_options=tuple({} for _ in providers),
        )

    def current_backend(self) -> AccelerationBackend:
        return self._current

    def current_config(self) -> ExecutionConfig | None:
        return self._current_config

    # ── Thermal restriction ────────────────────────────────────────

    @property
    def restricted(self) -> bool:
        return self._cpu_only

    def restrict_to_cpu(self, reason: str = "thermal_critical") -> None:
        """Limit subsequent loads to the CPU policies."""
        with self._lock:
            if self._cpu_only:
                return
            self._cpu_only = True
            self._restriction_reason = reason
        logger.warning("selector_restricted_to_cpu", reason=reason)

    def lift_restriction(self) -> None:
        with self._lock:
            if not self._cpu_only:
                return
            self._cpu_only = False
            reason, self._restriction_reason = self._restriction_reason, None
        logger.info("selector_restriction_lifted", previous_reason=reason)

    # ── Diagnostics ────────────────────────────────────────────────

    def benchmark(
        self,
        capabilities: HardwareCapabilities,
        *,
        accelerator_workload: Callable[[ExecutionConfig], None] | None = None,
        matrix_size: int = 100,
    ) -> dict[AccelerationBackend, float | BenchmarkOutcome]:
        """
        Time one fixed workload per backend, in milliseconds.

        CPU policies run a ``matrix_size`` square float32 matmul. Accelerator
        backends run ``accelerator_workload`` (typically a session on a
        benchmark model) with that backend's config; backends that are
        unavailable, or have no workload to run, report ``NOT_APPLICABLE``.
        """
        results: dict[AccelerationBackend, float | BenchmarkOutcome] = {}
        rng = np.random.default_rng(0)
        a = rng.random((matrix_size, matrix_size), dtype=np.float32)
        b = rng.random((matrix_size, matrix_size), dtype=np.float32)

        for backend in AccelerationBackend:
            if not capabilities.has(backend):
                results[backend] = NOT_APPLICABLE
                continue

            if not backend.is_accelerator:
                start = time.perf_counter()
                np.matmul(a, b)
                results[backend] = (time.perf_counter() - start) * 1000
                continue

            if accelerator_workload is None:
                results[backend] = NOT_APPLICABLE
                continue

            config = self._accelerator_config(capabilities, backend)
            start = time.perf_counter()
            try:
                accelerator_workload(config)
            except Exception as exc:
                logger.warning("benchmark_failed", backend=backend.value, error=str(exc))
                results[backend] = NOT_APPLICABLE
                continue
            results[backend] = (time.perf_counter() - start) * 1000

        logger.info(
            "benchmark_complete",
            results={
                b.value: (round(v, 3) if isinstance(v, float) else v.value)
                for b, v in results.items()
            },
        )
        return results

    def is_acceleration_available(self, capabilities: HardwareCapabilities) -> bool:
        return capabilities.has_gpu or capabilities.has_npu

    def acceleration_info(self, capabilities: HardwareCapabilities) -> dict[str, Any]:
        backend = self._current
        config = self.current_config()
        return {
            "type": backend.value,
            "execution_config": config.to_dict() if config is not None else None,
            "is_available": self.is_acceleration_available(capabilities),
            "supported_operations": sorted(backend.supported_operations),
            "expected_speedup": backend.throughput_multiplier,
            "thread_count": optimal_thread_count(capabilities.core_count),
            "restricted_to_cpu": self._cpu_only,
            "delegates": list(capabilities.delegates),
        }
