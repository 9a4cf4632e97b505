"""
Hardware Capability Probe — Unit Tests
=======================================

Covers candidate instantiation, failure recording, caching and the
performance classification.
"""

import pytest

from echo_runtime.core.types import AccelerationBackend, PerformanceClass
from echo_runtime.infra.hardware.probe import (
    DelegateCandidate,
    HardwareCapabilities,
    HardwareCapabilityProbe,
    classify_performance,
    default_candidates,
)
from tests.fakes import GIB, broken, ok


class CountingCandidate:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    def __call__(self) -> None:
        self.calls += 1
        if self.fail:
            raise RuntimeError("no device")


class TestProbe:
    def test_cpu_always_available(self):
        caps = HardwareCapabilityProbe([], core_count=4, total_memory_bytes=4 * GIB).probe()
        assert caps.has(AccelerationBackend.CPU)
        assert caps.has(AccelerationBackend.CPU_OPTIMIZED)
        assert not caps.has_gpu
        assert not caps.has_npu
        assert caps.delegates == ("CPUExecutionProvider",)

    def test_failed_candidate_is_recorded_not_raised(self):
        probe = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.GPU, "CUDAExecutionProvider", broken)],
            core_count=4,
            total_memory_bytes=4 * GIB,
        )
        caps = probe.probe()
        assert not caps.has_gpu
        assert len(caps.failures) == 1
        failure = caps.failures[0]
        assert failure.backend == "GPU"
        assert failure.delegate == "CUDAExecutionProvider"
        assert "driver missing" in failure.reason
        assert failure.to_dict()["error"] == "PROBE_FAILURE"

    def test_first_working_delegate_wins(self):
        second = CountingCandidate()
        probe = HardwareCapabilityProbe(
            [
                DelegateCandidate(AccelerationBackend.GPU, "CUDAExecutionProvider", broken),
                DelegateCandidate(AccelerationBackend.GPU, "ROCMExecutionProvider", ok),
                DelegateCandidate(AccelerationBackend.GPU, "DmlExecutionProvider", second),
            ],
            core_count=8,
            total_memory_bytes=8 * GIB,
        )
        caps = probe.probe()
        assert caps.has_gpu
        assert caps.delegate_for(AccelerationBackend.GPU) == "ROCMExecutionProvider"
        assert second.calls == 0
        assert caps.delegates == ("ROCMExecutionProvider", "CPUExecutionProvider")

    def test_result_is_cached(self):
        candidate = CountingCandidate()
        probe = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.NPU, "NnapiExecutionProvider", candidate)],
            core_count=2,
            total_memory_bytes=2 * GIB,
        )
        assert not probe.probed
        first = probe.probe()
        second = probe.probe()
        assert first is second
        assert candidate.calls == 1
        assert probe.probed

    def test_reset_reprobes(self):
        candidate = CountingCandidate()
        probe = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.GPU, "CUDAExecutionProvider", candidate)],
            core_count=2,
            total_memory_bytes=2 * GIB,
        )
        probe.probe()
        probe.reset()
        probe.probe()
        assert candidate.calls == 2

    def test_npu_platform_check(self):
        supported = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.NPU, "CoreMLExecutionProvider", ok, lambda: True)],
            core_count=2,
            total_memory_bytes=2 * GIB,
        ).probe()
        unsupported = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.NPU, "CoreMLExecutionProvider", ok, lambda: False)],
            core_count=2,
            total_memory_bytes=2 * GIB,
        ).probe()
        assert supported.has_npu and supported.npu_platform_supported
        assert unsupported.has_npu and not unsupported.npu_platform_supported

    def test_raising_platform_check_counts_as_unsupported(self):
        def explode() -> bool:
            raise OSError("no /proc")

        caps = HardwareCapabilityProbe(
            [DelegateCandidate(AccelerationBackend.NPU, "QNNExecutionProvider", ok, explode)],
            core_count=2,
            total_memory_bytes=2 * GIB,
        ).probe()
        assert caps.has_npu
        assert not caps.npu_platform_supported

    def test_to_dict(self):
        caps = HardwareCapabilityProbe([], core_count=8, total_memory_bytes=16 * GIB).probe()
        data = caps.to_dict()
        assert data["core_count"] == 8
        assert data["performance_class"] == "high"
        assert data["total_memory_gb"] == 16.0
        assert "CPU" in data["available_backends"]

    def test_default_candidates_cover_gpu_and_npu(self):
        candidates = default_candidates()
        gpu = [c.delegate for c in candidates if c.backend is AccelerationBackend.GPU]
        npu = [c.delegate for c in candidates if c.backend is AccelerationBackend.NPU]
        assert gpu == ["CUDAExecutionProvider", "ROCMExecutionProvider", "DmlExecutionProvider"]
        assert set(npu) == {
            "NnapiExecutionProvider", "CoreMLExecutionProvider", "QNNExecutionProvider",
        }

    def test_default_probe_never_raises(self):
        pytest.importorskip("onnxruntime")
        pytest.importorskip("onnx")
        caps = HardwareCapabilityProbe().probe()
        assert caps.has(AccelerationBackend.CPU)
        assert caps.core_count >= 1
        assert caps.total_memory_bytes > 0


class TestPerformanceClass:
    @pytest.mark.parametrize(
        "memory_gb,cores,expected",
        [
            (16, 8, PerformanceClass.HIGH),
            (8, 8, PerformanceClass.HIGH),
            (8, 4, PerformanceClass.MEDIUM),
            (4, 16, PerformanceClass.MEDIUM),
            (3, 8, PerformanceClass.LOW),
            (16, 2, PerformanceClass.LOW),
        ],
    )
    def test_classification(self, memory_gb, cores, expected):
        assert classify_performance(memory_gb * GIB, cores) is expected

    def test_scales(self):
        assert PerformanceClass.HIGH.scale == 1.2
        assert PerformanceClass.MEDIUM.scale == 1.0
        assert PerformanceClass.LOW.scale == 0.8

    def test_cpu_only_capabilities(self):
        caps = HardwareCapabilities.cpu_only(core_count=0)
        assert caps.core_count == 1
        assert caps.available_backends == {
            AccelerationBackend.CPU, AccelerationBackend.CPU_OPTIMIZED,
        }
