"""
Echo Runtime
=============

Explicitly constructed context owning every runtime component: probe,
selector, ledger, worker pool, model registry, telemetry monitor,
orchestrator and metrics. Nothing is module-global; two runtimes in one
process are fully independent.

Usage:
    async with EchoRuntime(RuntimeConfig.from_env()) as runtime:
        result = await runtime.process_request(
            InferenceRequest.build(audio=samples, text="what's the weather")
        )
        print(runtime.get_metrics())
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import Any

import numpy as np

from echo_runtime.core.config import RuntimeConfig
from echo_runtime.core.types import AccelerationBackend, InferenceRequest, InferenceResult
from echo_runtime.infra.hardware import (
    AcceleratorSelector,
    BenchmarkOutcome,
    DeviceConditionSource,
    ExecutionConfig,
    HardwareCapabilityProbe,
    TelemetryMonitor,
    TelemetrySnapshot,
)
from echo_runtime.infra.hardware.selector import FALLBACK_CPU_THREADS, optimal_thread_count
from echo_runtime.infra.runtime import (
    AssetStore,
    FileAssetStore,
    ModelRegistry,
    OnnxSessionFactory,
    PerformanceLedger,
    SessionFactory,
    WorkerConfig,
    WorkerPool,
)
from echo_runtime.infra.telemetry import MetricsCollector, get_logger, setup_logging
from echo_runtime.pipeline import InferenceOrchestrator
from echo_runtime.utils.cancellation import CancellationToken

logger = get_logger(__name__)

class EchoRuntime:
    """Owner of one complete inference runtime."""

    def __init__(
        self,
        config: RuntimeConfig | None = None,
        *,
        probe: HardwareCapabilityProbe | None = None,
        condition_source: DeviceConditionSource | None = None,
        session_factory: SessionFactory | None = None,
        assets: AssetStore | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.metrics = metrics or MetricsCollector()
        self.probe = probe or HardwareCapabilityProbe()
        self.selector = AcceleratorSelector()
        self.ledger = PerformanceLedger()
        self._session_factory = session_factory or OnnxSessionFactory()
        self._assets = assets or FileAssetStore(self.config.models_dir)

        pool_size = self.config.max_workers or max(
            FALLBACK_CPU_THREADS, optimal_thread_count(os.cpu_count() or 1)
        )
        self.pool = WorkerPool(WorkerConfig(max_workers=pool_size))

        self.registry = ModelRegistry(
            probe=self.probe,
            selector=self.selector,
            pool=self.pool,
            assets=self._assets,
            ledger=self.ledger,
            session_factory=self._session_factory,
            metrics=self.metrics,
        )
        self.monitor = TelemetryMonitor(
            condition_source,
            interval_s=self.config.telemetry_interval_s,
            memory_high_water=self.config.memory_high_water,
            metrics=self.metrics,
            on_memory_pressure=self._relieve_memory,
            on_thermal_critical=self._thermal_critical,
            on_thermal_recovered=self._thermal_recovered,
        )
        self.orchestrator = InferenceOrchestrator(
            registry=self.registry,
            monitor=self.monitor,
            selector=self.selector,
            config=self.config,
            metrics=self.metrics,
        )

        self._initialized = False
        self._usable = False
        self._closed = False
        self._init_lock = asyncio.Lock()

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def usable(self) -> bool:
        return self._usable

    async def initialize(self) -> bool:
        """
        Probe hardware, preload the pipeline models and start telemetry.

        Returns False only when both probing and the registry are
        unusable; every later request then gets the degraded fallback.
        """
        async with self._init_lock:
            if self._initialized:
                return self._usable

            setup_logging(level=self.config.log_level, json_output=self.config.json_logs)
            await self.pool.start()

            probe_ok = True
            try:
                capabilities = await asyncio.to_thread(self.probe.probe)
                self.monitor.performance_class = capabilities.performance_class
            except Exception as exc:
                probe_ok = False
                logger.error("hardware_probe_failed", exc=exc)

            models = self.config.pipeline_models + tuple(self.config.extra_models)
            loaded = await self.registry.preload(
                models,
                hints=self.orchestrator.model_hints(),
                widths=self.orchestrator.model_widths(),
            )
            registry_ok = bool(loaded) and any(loaded.values())

            await self.monitor.start()

            self._usable = probe_ok or registry_ok
            self._initialized = True
            logger.info(
                "runtime_initialized",
                usable=self._usable,
                probe_ok=probe_ok,
                models_loaded=sum(loaded.values()),
                models_requested=len(models),
                workers=self.pool.max_workers,
            )
            return self._usable

    async def shutdown(self) -> None:
        """Stop telemetry, close every session and release worker threads."""
        if self._closed:
            return
        self._closed = True
        await self.monitor.stop()
        await self.registry.close()
        await self.pool.shutdown()
        logger.info("runtime_shutdown")

    async def __aenter__(self) -> EchoRuntime:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ── Requests ───────────────────────────────────────────────────

    async def process_request(
        self,
        request: InferenceRequest,
        *,
        token: CancellationToken | None = None,
    ) -> InferenceResult:
        if self._closed:
            raise RuntimeError("EchoRuntime has been shut down")
        if not self._initialized:
            await self.initialize()
        if not self._usable:
            return self.orchestrator.fallback_result()
        return await self.orchestrator.process_request(request, token=token)

    # ── Telemetry reactions ────────────────────────────────────────

    async def _relieve_memory(self, snapshot: TelemetrySnapshot) -> None:
        evicted = await self.registry.evict_lru(reason="memory_pressure")
        if evicted is not None:
            logger.info(
                "memory_relieved",
                model=evicted,
                memory_pressure=round(snapshot.memory_pressure, 3),
            )

    def _thermal_critical(self, snapshot: TelemetrySnapshot) -> None:
        self.selector.restrict_to_cpu(reason=f"thermal_{snapshot.thermal_state.lower()}")

    def _thermal_recovered(self, snapshot: TelemetrySnapshot) -> None:
        self.selector.lift_restriction()

    # ── Diagnostics ────────────────────────────────────────────────

    async def benchmark(self) -> dict[AccelerationBackend, float | BenchmarkOutcome]:
        """Time the synthetic workload on every backend. Diagnostic only."""
        capabilities = await asyncio.to_thread(self.probe.probe)
        workload = None
        if self.config.benchmark_model:
            model_bytes = await asyncio.to_thread(self._assets.read, self.config.benchmark_model)
            workload = self._accelerator_workload(model_bytes)
        return await asyncio.to_thread(
            self.selector.benchmark,
            capabilities,
            accelerator_workload=workload,
            matrix_size=self.config.benchmark_matrix_size,
        )

    def _accelerator_workload(self, model_bytes: bytes) -> Callable[[ExecutionConfig], None]:
        def run(config: ExecutionConfig) -> None:
            session = self._session_factory.create(model_bytes, config)
            try:
                width = session.input_spec.static_size or 1
                session.run(np.zeros(width, dtype=np.float32))
            finally:
                session.close()

        return run

    def get_metrics(self) -> dict[str, Any]:
        pipeline_ready = all(m in self.registry for m in self.config.pipeline_models)
        if self.probe.probed:
            capabilities = self.probe.probe()
            acceleration = self.selector.acceleration_info(capabilities)
            acceleration_available = self.selector.is_acceleration_available(capabilities)
            hardware = capabilities.to_dict()
        else:
            acceleration = {"type": self.selector.current_backend().value, "is_available": False}
            acceleration_available = False
            hardware = {}

        return {
            "hardware_acceleration": {**acceleration, "capabilities": hardware},
            "system_optimizations": self.monitor.optimization_status(),
            "model_performance": self.registry.metrics(),
            "mlops_status": {
                "initialized": self._initialized,
                "usable": self._usable,
                "models_loaded": pipeline_ready,
                "acceleration_available": acceleration_available,
                "worker_pool": self.pool.get_stats(),
                "pipeline": self.metrics.get_summary()["pipeline"],
            },
        }

    def export_prometheus(self) -> bytes:
        return self.metrics.export_prometheus()
