"""Unit tests for the bounded worker pool."""

import asyncio
import threading
import time

import pytest

from echo_runtime.infra.runtime.worker_pool import WorkerConfig, WorkerPool


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_runs_off_the_event_loop(self):
        pool = WorkerPool(WorkerConfig(max_workers=2))
        await pool.start()
        try:
            thread_name = await pool.run(lambda: threading.current_thread().name)
            assert thread_name.startswith("echo-worker")
            assert await pool.run(sum, [1, 2, 3]) == 6
        finally:
            await pool.shutdown()

    @pytest.mark.asyncio
    async def test_not_running_raises(self):
        pool = WorkerPool()
        with pytest.raises(RuntimeError, match="not running"):
            await pool.run(time.sleep, 0)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def work():
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1

        pool = WorkerPool(WorkerConfig(max_workers=2))
        await pool.start()
        try:
            await asyncio.gather(*(pool.run(work) for _ in range(6)))
        finally:
            await pool.shutdown()
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_failures_are_counted_and_raised(self):
        def explode():
            raise ValueError("bad input")

        pool = WorkerPool(WorkerConfig(max_workers=1))
        await pool.start()
        try:
            with pytest.raises(ValueError):
                await pool.run(explode)
            await pool.run(int, "3")
            stats = pool.get_stats()
        finally:
            await pool.shutdown()
        assert stats["total_failed"] == 1
        assert stats["total_completed"] == 1
        assert stats["active"] == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        pool = WorkerPool()
        await pool.start()
        await pool.shutdown()
        await pool.shutdown()
        assert not pool.running
