"""
Accelerator Selector — Unit Tests
===================================

Priority policy, thermal restriction, benchmark sentinel and info export.
"""

import itertools

import pytest

from echo_runtime.core.types import AccelerationBackend, WorkloadHint
from echo_runtime.infra.hardware.selector import (
    NOT_APPLICABLE,
    AcceleratorSelector,
    ExecutionConfig,
    optimal_thread_count,
)
from tests.fakes import capabilities


class TestSelectionPolicy:
    def setup_method(self):
        self.selector = AcceleratorSelector()

    def test_cpu_only_two_cores_picks_plain_cpu(self):
        backend, config = self.selector.select(capabilities(cores=2))
        assert backend is AccelerationBackend.CPU
        assert config.num_threads == 2
        assert config.allow_reduced_precision is False
        assert config.providers == ("CPUExecutionProvider",)

    def test_gpu_for_matrix_heavy(self):
        backend, config = self.selector.select(
            capabilities(gpu=True, cores=8), WorkloadHint.MATRIX_HEAVY
        )
        assert backend is AccelerationBackend.GPU
        assert config.providers[0] == "CUDAExecutionProvider"
        assert config.providers[-1] == "CPUExecutionProvider"
        assert len(config.provider_options) == len(config.providers)

    def test_absent_hint_counts_as_gpu_suitable(self):
        backend, _ = self.selector.select(capabilities(gpu=True, cores=2))
        assert backend is AccelerationBackend.GPU

    def test_sequential_workload_skips_gpu(self):
        backend, _ = self.selector.select(
            capabilities(gpu=True, npu=True, cores=8), WorkloadHint.SEQUENTIAL
        )
        assert backend is AccelerationBackend.NPU

    def test_npu_requires_platform_check(self):
        backend, _ = self.selector.select(capabilities(npu=True, npu_platform=False, cores=8))
        assert backend is AccelerationBackend.CPU_OPTIMIZED

    def test_cpu_optimized_on_many_cores(self):
        backend, config = self.selector.select(capabilities(cores=8))
        assert backend is AccelerationBackend.CPU_OPTIMIZED
        assert config.num_threads == 4
        assert config.allow_reduced_precision is True

    def test_six_cores_gets_three_threads(self):
        backend, config = self.selector.select(capabilities(cores=6))
        assert backend is AccelerationBackend.CPU_OPTIMIZED
        assert config.num_threads == 3

    def test_four_cores_falls_back_to_plain_cpu(self):
        backend, config = self.selector.select(capabilities(cores=4))
        assert backend is AccelerationBackend.CPU
        assert config.num_threads == 2

    @pytest.mark.parametrize(
        "gpu,npu,npu_platform,cores,hint",
        list(itertools.product(
            [False, True], [False, True], [False, True], [1, 2, 4, 8, 16],
            [None, *WorkloadHint],
        )),
    )
    def test_never_selects_unavailable_backend(self, gpu, npu, npu_platform, cores, hint):
        caps = capabilities(gpu=gpu, npu=npu, cores=cores, npu_platform=npu_platform)
        backend, config = self.selector.select(caps, hint)
        assert caps.has(backend)
        assert config.backend is backend
        assert config.num_threads >= 1

    def test_current_backend_tracks_last_selection(self):
        assert self.selector.current_backend() is AccelerationBackend.CPU
        assert self.selector.current_config() is None
        self.selector.select(capabilities(gpu=True, cores=8))
        assert self.selector.current_backend() is AccelerationBackend.GPU
        self.selector.select(capabilities(cores=2))
        assert self.selector.current_backend() is AccelerationBackend.CPU


class TestThermalRestriction:
    def setup_method(self):
        self.selector = AcceleratorSelector()

    def test_restriction_forces_cpu_policies(self):
        self.selector.restrict_to_cpu()
        assert self.selector.restricted
        backend, _ = self.selector.select(capabilities(gpu=True, npu=True, cores=8))
        assert backend is AccelerationBackend.CPU_OPTIMIZED

    def test_lift_restores_accelerators(self):
        self.selector.restrict_to_cpu()
        self.selector.lift_restriction()
        assert not self.selector.restricted
        backend, _ = self.selector.select(capabilities(gpu=True, cores=8))
        assert backend is AccelerationBackend.GPU

    def test_restrict_and_lift_are_idempotent(self):
        self.selector.lift_restriction()
        self.selector.restrict_to_cpu()
        self.selector.restrict_to_cpu()
        assert self.selector.restricted
        self.selector.lift_restriction()
        self.selector.lift_restriction()
        assert not self.selector.restricted


class TestBenchmark:
    def setup_method(self):
        self.selector = AcceleratorSelector()

    def test_unavailable_backends_are_not_applicable(self):
        results = self.selector.benchmark(capabilities(cores=4), matrix_size=16)
        assert results[AccelerationBackend.GPU] is NOT_APPLICABLE
        assert results[AccelerationBackend.NPU] is NOT_APPLICABLE
        assert isinstance(results[AccelerationBackend.CPU], float)
        assert results[AccelerationBackend.CPU] >= 0.0

    def test_accelerator_without_workload_is_not_applicable(self):
        results = self.selector.benchmark(capabilities(gpu=True, cores=4), matrix_size=16)
        assert results[AccelerationBackend.GPU] is NOT_APPLICABLE

    def test_accelerator_workload_runs_with_backend_config(self):
        seen: list[ExecutionConfig] = []
        results = self.selector.benchmark(
            capabilities(gpu=True, cores=4),
            accelerator_workload=seen.append,
            matrix_size=16,
        )
        assert isinstance(results[AccelerationBackend.GPU], float)
        assert [c.backend for c in seen] == [AccelerationBackend.GPU]

    def test_failing_workload_is_not_applicable(self):
        def explode(config: ExecutionConfig) -> None:
            raise RuntimeError("kernel launch failed")

        results = self.selector.benchmark(
            capabilities(gpu=True, cores=4), accelerator_workload=explode, matrix_size=16
        )
        assert results[AccelerationBackend.GPU] is NOT_APPLICABLE

    def test_benchmark_does_not_change_selection(self):
        self.selector.select(capabilities(cores=2))
        self.selector.benchmark(capabilities(gpu=True, cores=8), matrix_size=16)
        assert self.selector.current_backend() is AccelerationBackend.CPU


class TestInfo:
    def test_optimal_thread_count(self):
        assert [optimal_thread_count(c) for c in (1, 2, 4, 6, 8, 32)] == [1, 1, 2, 3, 4, 4]

    def test_acceleration_info(self):
        selector = AcceleratorSelector()
        caps = capabilities(gpu=True, cores=8)
        assert selector.acceleration_info(caps)["execution_config"] is None
        _, config = selector.select(caps)
        info = selector.acceleration_info(caps)
        assert info["type"] == "GPU"
        assert info["execution_config"] == config.to_dict()
        assert info["execution_config"]["providers"][0] == "CUDAExecutionProvider"
        assert info["is_available"] is True
        assert info["expected_speedup"] == 2.5
        assert "CONV_2D" in info["supported_operations"]
        assert info["thread_count"] == 4

    def test_is_acceleration_available(self):
        selector = AcceleratorSelector()
        assert not selector.is_acceleration_available(capabilities())
        assert selector.is_acceleration_available(capabilities(npu=True))
