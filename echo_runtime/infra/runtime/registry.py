"""
Model Registry — Session Lifecycle and Inference
===================================================

Owns every live model session. Guarantees:
  - One handle per identifier; concurrent loads of one identifier share a
    single underlying load (single-flight)
  - Inference calls on one identifier run strictly one at a time, in
    arrival order; different identifiers run in parallel
  - Every inference attempt updates the PerformanceLedger, even when the
    caller stopped waiting for it
  - Load failures never raise: they are logged and reported as ``None``

Locking:
  - a narrow map-level lock covers handle insertion and eviction only
  - a per-identifier lock covers inference and eviction of that model;
    it exists only while some caller holds or waits for it
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import numpy as np

from echo_runtime.core.exceptions import InferenceError, ModelLoadError
from echo_runtime.core.types import AccelerationBackend, WorkloadHint
from echo_runtime.infra.hardware.probe import HardwareCapabilityProbe
from echo_runtime.infra.hardware.selector import AcceleratorSelector, ExecutionConfig
from echo_runtime.infra.runtime.ledger import PerformanceLedger, PerformanceRecord
from echo_runtime.infra.runtime.sessions import (
    AssetStore,
    ModelSession,
    OnnxSessionFactory,
    SessionFactory,
    TensorSpec,
)
from echo_runtime.infra.runtime.worker_pool import WorkerPool
from echo_runtime.infra.telemetry import MetricsCollector, get_logger

logger = get_logger(__name__)

_NUMERIC_DTYPES = frozenset({"float32", "float16", "float64", "int8", "uint8", "int32"})

@dataclass
class ModelHandle:
    """A loaded model. Owned by the registry; callers only read it."""

    identifier: str
    session: ModelSession
    input_spec: TensorSpec
    output_spec: TensorSpec
    backend: AccelerationBackend
    config: ExecutionConfig
    memory_estimate_bytes: int = 0
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_used: float = field(default_factory=time.monotonic)

    @property
    def dtype(self) -> str:
        return self.input_spec.dtype

    @property
    def quantized(self) -> bool:
        return self.input_spec.quantized

    @property
    def input_width(self) -> int | None:
        return self.input_spec.static_size

    @property
    def output_width(self) -> int | None:
        return self.output_spec.static_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "input": self.input_spec.to_dict(),
            "output": self.output_spec.to_dict(),
            "dtype": self.dtype,
            "quantized": self.quantized,
            "backend": self.backend.value,
            "config": self.config.to_dict(),
            "memory_estimate_bytes": self.memory_estimate_bytes,
            "loaded_at": self.loaded_at.isoformat(),
        }

def _consume_result(task: asyncio.Task) -> None:
    # Result of a shielded task whose caller went away.
    if not task.cancelled():
        task.exception()

class ModelRegistry:
    """
    Loads, caches, evicts and runs models.

    Usage:
        registry = ModelRegistry(
            probe=probe, selector=selector, pool=pool,
            ledger=PerformanceLedger(), assets=FileAssetStore("models"),
        )
        handle = await registry.load("core.onnx", hint=WorkloadHint.MATRIX_HEAVY)
        output, elapsed_ms = await registry.run_inference("core.onnx", features)
        await registry.evict("core.onnx")
    """

    def __init__(
        self,
        *,
        probe: HardwareCapabilityProbe,
        selector: AcceleratorSelector,
        pool: WorkerPool,
        assets: AssetStore,
        ledger: PerformanceLedger | None = None,
        session_factory: SessionFactory | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._probe = probe
        self._selector = selector
        self._pool = pool
        self._assets = assets
        self.ledger = ledger or PerformanceLedger()
        self._factory = session_factory or OnnxSessionFactory()
        self._metrics = metrics

        self._handles: dict[str, ModelHandle] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._map_lock = asyncio.Lock()
        self._id_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _exclusive(self, identifier: str) -> AsyncIterator[None]:
        """Hold the per-identifier lock; the entry is dropped with its last user."""
        lock = self._id_locks.get(identifier)
        if lock is None:
            lock = self._id_locks[identifier] = asyncio.Lock()
        self._lock_users[identifier] = self._lock_users.get(identifier, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[identifier] - 1
            if remaining:
                self._lock_users[identifier] = remaining
            else:
                del self._lock_users[identifier]
                del self._id_locks[identifier]

    # ── Loading ────────────────────────────────────────────────────

    async def load(
        self,
        identifier: str,
        *,
        hint: WorkloadHint | None = None,
        expected_input_width: int | None = None,
    ) -> ModelHandle | None:
        """
        Get the handle for ``identifier``, loading it on first use.

        Concurrent callers share one load. Cancelling a caller never
        cancels the shared load. Returns None when the model cannot be
        loaded, or when an already loaded model does not accept
        ``expected_input_width`` features.
        """
        handle = self._handles.get(identifier)
        if handle is None:
            task = self._inflight.get(identifier)
            if task is None:
                task = asyncio.create_task(
                    self._load(identifier, hint, expected_input_width),
                    name=f"model-load:{identifier}",
                )
                self._inflight[identifier] = task
                task.add_done_callback(lambda t: self._forget_load(identifier, t))
            handle = await asyncio.shield(task)
        if handle is None or not self._accepts_width(handle, expected_input_width):
            return None
        return handle

    @staticmethod
    def _accepts_width(handle: ModelHandle, expected_input_width: int | None) -> bool:
        width = handle.input_width
        if expected_input_width is None or width is None or width == expected_input_width:
            return True
        logger.warning(
            "model_width_mismatch",
            model=handle.identifier,
            input_width=width,
            expected_width=expected_input_width,
        )
        return False

    def _forget_load(self, identifier: str, task: asyncio.Task) -> None:
        if self._inflight.get(identifier) is task:
            del self._inflight[identifier]
        _consume_result(task)

    async def _load(
        self,
        identifier: str,
        hint: WorkloadHint | None,
        expected_input_width: int | None,
    ) -> ModelHandle | None:
        log = logger.bind(model=identifier)
        start = time.perf_counter()
        session: ModelSession | None = None
        try:
            capabilities = await self._pool.run(self._probe.probe)
            model_bytes = await self._pool.run(self._assets.read, identifier)
            backend, config = self._selector.select(capabilities, hint)
            session = await self._pool.run(self._factory.create, model_bytes, config)
            self._validate(identifier, session, expected_input_width)
        except ModelLoadError as exc:
            self._discard(session)
            log.warning("model_load_failed", reason=exc.reason)
            self._record_load(success=False)
            return None
        except Exception as exc:
            self._discard(session)
            log.error("model_load_failed", exc=exc)
            self._record_load(success=False)
            return None

        handle = ModelHandle(
            identifier=identifier,
            session=session,
            input_spec=session.input_spec,
            output_spec=session.output_spec,
            backend=backend,
            config=config,
            memory_estimate_bytes=len(model_bytes),
        )
        async with self._map_lock:
            self._handles[identifier] = handle
            self.ledger.register(identifier, handle.memory_estimate_bytes)

        self._record_load(success=True)
        log.info(
            "model_loaded",
            backend=backend.value,
            threads=config.num_threads,
            input_shape=list(handle.input_spec.shape),
            output_shape=list(handle.output_spec.shape),
            dtype=handle.dtype,
            quantized=handle.quantized,
            load_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return handle

    @staticmethod
    def _validate(
        identifier: str, session: ModelSession, expected_input_width: int | None
    ) -> None:
        for role, spec in (("input", session.input_spec), ("output", session.output_spec)):
            if spec.dtype not in _NUMERIC_DTYPES:
                raise ModelLoadError(identifier, f"unsupported {role} dtype {spec.dtype}")
            if any(d == 0 for d in spec.shape):
                raise ModelLoadError(identifier, f"empty {role} shape {spec.shape}")

        width = session.input_spec.static_size
        if expected_input_width is not None and width is not None and width != expected_input_width:
            raise ModelLoadError(
                identifier,
                f"input width {width} does not match expected {expected_input_width}",
            )

    @staticmethod
    def _discard(session: ModelSession | None) -> None:
        if session is not None:
            session.close()

    def _record_load(self, *, success: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_model_load(success=success, active=len(self._handles))

    async def preload(
        self,
        identifiers: Iterable[str],
        *,
        hint: WorkloadHint | None = None,
        hints: Mapping[str, WorkloadHint] | None = None,
        widths: Mapping[str, int] | None = None,
    ) -> dict[str, bool]:
        """Load several models concurrently; report which ones succeeded.

        ``hints`` gives per-model hints; ``hint`` covers the rest.
        ``widths`` gives the input width a model must accept.
        """
        hints = hints or {}
        widths = widths or {}
        ids = list(dict.fromkeys(identifiers))
        handles = await asyncio.gather(*(
            self.load(i, hint=hints.get(i, hint), expected_input_width=widths.get(i))
            for i in ids
        ))
        return {i: h is not None for i, h in zip(ids, handles)}

    # ── Eviction ───────────────────────────────────────────────────

    async def evict(self, identifier: str, *, reason: str = "manual") -> bool:
        """
        Close and forget a model once its in-flight calls finish.

        Returns False when the model was not loaded.
        """
        if identifier not in self._handles:
            return False
        async with self._exclusive(identifier):
            async with self._map_lock:
                handle = self._handles.pop(identifier, None)
                if handle is None:
                    return False
                self.ledger.remove(identifier)
            handle.session.close()

        if self._metrics is not None:
            self._metrics.record_eviction(reason=reason, active=len(self._handles))
        logger.info("model_evicted", model=identifier, reason=reason)
        return True

    async def evict_lru(self, *, reason: str = "memory_pressure") -> str | None:
        """Evict the least recently used model, if any."""
        if not self._handles:
            return None
        identifier = min(self._handles.values(), key=lambda h: h.last_used).identifier
        if await self.evict(identifier, reason=reason):
            return identifier
        return None

    async def close(self) -> None:
        """Evict every loaded model."""
        for identifier in list(self._handles):
            await self.evict(identifier, reason="shutdown")

    # ── Inference ──────────────────────────────────────────────────

    async def run_inference(
        self, identifier: str, features: np.ndarray
    ) -> tuple[np.ndarray, float]:
        """
        Run one inference call; returns ``(output, elapsed_ms)``.

        Raises:
            InferenceError: model not loaded or the session call failed.
        """
        if identifier not in self._handles:
            raise InferenceError(
                f"Model {identifier} is not loaded", identifier=identifier, stage="lookup"
            )

        task = asyncio.create_task(
            self._invoke(identifier, features), name=f"inference:{identifier}"
        )
        task.add_done_callback(_consume_result)
        return await asyncio.shield(task)

    async def _invoke(self, identifier: str, features: np.ndarray) -> tuple[np.ndarray, float]:
        log = logger.bind(model=identifier)
        async with self._exclusive(identifier):
            handle = self._handles.get(identifier)
            if handle is None:
                raise InferenceError(
                    f"Model {identifier} was evicted", identifier=identifier, stage="lookup"
                )

            start = time.perf_counter()
            try:
                output = await self._pool.run(handle.session.run, features)
            except Exception as exc:
                self.ledger.record_failure(identifier)
                if self._metrics is not None:
                    self._metrics.record_inference(
                        model=identifier,
                        backend=handle.backend.value,
                        latency_s=0.0,
                        success=False,
                    )
                log.warning("inference_failed", error=str(exc))
                raise InferenceError(
                    f"Inference failed for {identifier}: {exc}",
                    identifier=identifier,
                    stage="inference",
                    original_error=exc,
                ) from exc

            elapsed_ms = (time.perf_counter() - start) * 1000
            handle.last_used = time.monotonic()
            self.ledger.record_success(identifier, elapsed_ms)
            if self._metrics is not None:
                self._metrics.record_inference(
                    model=identifier,
                    backend=handle.backend.value,
                    latency_s=elapsed_ms / 1000,
                    success=True,
                )
            return np.asarray(output, dtype=np.float32).reshape(-1), elapsed_ms

    async def benchmark_model(
        self, identifier: str, inputs: Sequence[np.ndarray]
    ) -> dict[str, float]:
        """Run each input once and summarize latency and success rate."""
        timings: list[float] = []
        for features in inputs:
            try:
                _, elapsed_ms = await self.run_inference(identifier, features)
            except InferenceError:
                continue
            timings.append(elapsed_ms)

        if not timings:
            return {
                "average_inference_time_ms": 0.0,
                "min_inference_time_ms": 0.0,
                "max_inference_time_ms": 0.0,
                "success_rate": 0.0,
            }
        return {
            "average_inference_time_ms": sum(timings) / len(timings),
            "min_inference_time_ms": min(timings),
            "max_inference_time_ms": max(timings),
            "success_rate": len(timings) / len(inputs),
        }

    # ── Introspection ──────────────────────────────────────────────

    def get(self, identifier: str) -> ModelHandle | None:
        return self._handles.get(identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def record(self, identifier: str) -> PerformanceRecord | None:
        return self.ledger.get(identifier)

    def model_info(self, identifier: str) -> dict[str, Any] | None:
        handle = self._handles.get(identifier)
        if handle is None:
            return None
        info = handle.to_dict()
        record = self.ledger.get(identifier)
        if record is not None:
            info["performance"] = record.to_dict()
        return info

    def available_models(self) -> list[str]:
        return self._assets.list_models()

    def metrics(self) -> dict[str, Any]:
        return {"total_models_loaded": len(self._handles), **self.ledger.summary()}
