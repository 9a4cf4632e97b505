"""
Hardware Capability Probe
==========================

Detects which acceleration backends can actually be instantiated on this
host, once. A backend counts as available only when its delegate can be
constructed: for the default candidates that means opening an
onnxruntime session on a one-node identity graph pinned to the
candidate execution provider.

Construction failures never escape the probe. They are recorded as
``ProbeFailure`` entries on the returned snapshot.
"""

from __future__ import annotations

import functools
import os
import platform
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import psutil

from echo_runtime.core.exceptions import ProbeFailure
from echo_runtime.core.types import AccelerationBackend, PerformanceClass
from echo_runtime.infra.telemetry import get_logger

logger = get_logger(__name__)

_GIB = 1024 ** 3

@dataclass(frozen=True)
class DelegateCandidate:
    """One way of reaching an acceleration backend."""

    backend: AccelerationBackend
    delegate: str
    instantiate: Callable[[], None]
    platform_check: Callable[[], bool] = field(default=lambda: True)

@dataclass(frozen=True)
class HardwareCapabilities:
    """Immutable result of a probe run."""

    available_backends: frozenset[AccelerationBackend]
    core_count: int
    delegates: tuple[str, ...] = ()
    accelerator_delegates: tuple[tuple[AccelerationBackend, str], ...] = ()
    failures: tuple[ProbeFailure, ...] = ()
    npu_platform_supported: bool = False
    total_memory_bytes: int = 0
    performance_class: PerformanceClass = PerformanceClass.LOW

    def has(self, backend: AccelerationBackend) -> bool:
        return backend in self.available_backends

    def delegate_for(self, backend: AccelerationBackend) -> str | None:
        """Execution provider that proved usable for an accelerator backend."""
        for candidate_backend, delegate in self.accelerator_delegates:
            if candidate_backend is backend:
                return delegate
        return None

    @property
    def has_gpu(self) -> bool:
        return self.has(AccelerationBackend.GPU)

    @property
    def has_npu(self) -> bool:
        return self.has(AccelerationBackend.NPU)

    @classmethod
    def cpu_only(cls, core_count: int = 1, **kwargs: Any) -> HardwareCapabilities:
        """Capabilities of a host with no usable accelerator."""
        return cls(
            available_backends=frozenset(
                {AccelerationBackend.CPU, AccelerationBackend.CPU_OPTIMIZED}
            ),
            core_count=max(1, core_count),
            delegates=("CPUExecutionProvider",),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "available_backends": sorted(b.value for b in self.available_backends),
            "core_count": self.core_count,
            "delegates": list(self.delegates),
            "npu_platform_supported": self.npu_platform_supported,
            "total_memory_gb": round(self.total_memory_bytes / _GIB, 1),
            "performance_class": self.performance_class.value,
            "failures": [f.to_dict() for f in self.failures],
        }

# ── Default delegate candidates (onnxruntime execution providers) ──

@functools.lru_cache(maxsize=1)
def _identity_model_bytes() -> bytes:
    from onnx import TensorProto, helper

    graph = helper.make_graph(
        [helper.make_node("Identity", ["x"], ["y"])],
        "capability_probe",
        [helper.make_tensor_value_info("x", TensorProto.FLOAT, [1])],
        [helper.make_tensor_value_info("y", TensorProto.FLOAT, [1])],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    return model.SerializeToString()

def onnx_provider_instantiator(provider: str) -> Callable[[], None]:
    """Build a check that opens a session pinned to ``provider``.

    onnxruntime silently falls back to CPU when a provider fails to
    initialize, so the active provider list is checked as well.
    """

    def instantiate() -> None:
        import onnxruntime as ort

        if provider not in ort.get_available_providers():
            raise RuntimeError(f"{provider} is not built into this onnxruntime")
        session = ort.InferenceSession(_identity_model_bytes(), providers=[provider])
        active = session.get_providers()
        if not active or active[0] != provider:
            raise RuntimeError(f"{provider} fell back to {active[0] if active else 'nothing'}")

    return instantiate

def _is_linux() -> bool:
    return platform.system() == "Linux"

def _is_darwin() -> bool:
    return platform.system() == "Darwin"

def _is_qnn_host() -> bool:
    return platform.system() == "Windows" or platform.machine().lower() in ("arm64", "aarch64")

def default_candidates() -> list[DelegateCandidate]:
    """GPU then NPU candidates, in preference order within each backend."""
    gpu = [
        DelegateCandidate(AccelerationBackend.GPU, p, onnx_provider_instantiator(p))
        for p in ("CUDAExecutionProvider", "ROCMExecutionProvider", "DmlExecutionProvider")
    ]
    npu = [
        DelegateCandidate(
            AccelerationBackend.NPU, "NnapiExecutionProvider",
            onnx_provider_instantiator("NnapiExecutionProvider"), _is_linux,
        ),
        DelegateCandidate(
            AccelerationBackend.NPU, "CoreMLExecutionProvider",
            onnx_provider_instantiator("CoreMLExecutionProvider"), _is_darwin,
        ),
        DelegateCandidate(
            AccelerationBackend.NPU, "QNNExecutionProvider",
            onnx_provider_instantiator("QNNExecutionProvider"), _is_qnn_host,
        ),
    ]
    return gpu + npu

def classify_performance(total_memory_bytes: int, core_count: int) -> PerformanceClass:
    if total_memory_bytes >= 8 * _GIB and core_count >= 8:
        return PerformanceClass.HIGH
    if total_memory_bytes >= 4 * _GIB and core_count >= 4:
        return PerformanceClass.MEDIUM
    return PerformanceClass.LOW

# ── Probe ──────────────────────────────────────────────────────────

class HardwareCapabilityProbe:
    """
    One-shot hardware capability detection.

    The first ``probe()`` call tests every candidate; later calls return
    the cached snapshot. Nothing re-probes automatically.
    """

    def __init__(
        self,
        candidates: Sequence[DelegateCandidate] | None = None,
        *,
        core_count: int | None = None,
        total_memory_bytes: int | None = None,
    ) -> None:
        self._candidates = list(candidates) if candidates is not None else None
        self._core_count = core_count
        self._total_memory = total_memory_bytes
        self._result: HardwareCapabilities | None = None
        self._lock = threading.Lock()

    @property
    def probed(self) -> bool:
        return self._result is not None

    def probe(self) -> HardwareCapabilities:
        """Return the capabilities snapshot, probing on first use."""
        if self._result is not None:
            return self._result

        with self._lock:
            if self._result is None:
                self._result = self._run()
        return self._result

    def reset(self) -> None:
        """Drop the cached snapshot so the next ``probe()`` runs again."""
        with self._lock:
            self._result = None

    def _run(self) -> HardwareCapabilities:
        candidates = self._candidates if self._candidates is not None else default_candidates()
        cores = self._core_count or os.cpu_count() or 1
        memory = self._total_memory
        if memory is None:
            memory = psutil.virtual_memory().total

        available = {AccelerationBackend.CPU, AccelerationBackend.CPU_OPTIMIZED}
        delegates: list[str] = []
        accelerators: list[tuple[AccelerationBackend, str]] = []
        failures: list[ProbeFailure] = []
        npu_platform_ok = False

        for candidate in candidates:
            if candidate.backend in available:
                continue

            try:
                platform_ok = bool(candidate.platform_check())
            except Exception as exc:
                platform_ok = False
                logger.debug("platform_check_failed", delegate=candidate.delegate, error=str(exc))
            if candidate.backend is AccelerationBackend.NPU:
                npu_platform_ok = npu_platform_ok or platform_ok

            try:
                candidate.instantiate()
            except Exception as exc:
                failure = ProbeFailure(candidate.backend.value, candidate.delegate, str(exc))
                failures.append(failure)
                logger.debug(
                    "delegate_unavailable",
                    backend=candidate.backend.value,
                    delegate=candidate.delegate,
                    reason=str(exc),
                )
                continue

            available.add(candidate.backend)
            delegates.append(candidate.delegate)
            accelerators.append((candidate.backend, candidate.delegate))
            if candidate.backend is AccelerationBackend.NPU:
                npu_platform_ok = platform_ok

        delegates.append("CPUExecutionProvider")
        caps = HardwareCapabilities(
            available_backends=frozenset(available),
            core_count=cores,
            delegates=tuple(delegates),
            accelerator_delegates=tuple(accelerators),
            failures=tuple(failures),
            npu_platform_supported=npu_platform_ok,
            total_memory_bytes=memory,
            performance_class=classify_performance(memory, cores),
        )
        logger.info(
            "hardware_probed",
            backends=sorted(b.value for b in caps.available_backends),
            cores=cores,
            delegates=list(caps.delegates),
            failures=len(failures),
            performance_class=caps.performance_class.value,
        )
        return caps
