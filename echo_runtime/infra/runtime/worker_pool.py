"""
Worker Pool — Bounded Blocking-Work Execution
================================================

Runs blocking session work (construction, inference) off the event loop:
  - ThreadPoolExecutor sized from the thread policy
  - asyncio.Semaphore for backpressure
  - Per-slot stats collection
  - Graceful drain on shutdown
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, TypeVar

from echo_runtime.infra.telemetry import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

@dataclass
class WorkerConfig:
    """Worker pool configuration."""

    max_workers: int = 2
    drain_timeout_s: float = 30.0
    thread_name_prefix: str = "echo-worker"

@dataclass
class WorkerStats:
    """Per-slot statistics."""

    worker_id: int
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_latency_ms: float = 0.0
    busy: bool = False
    last_task_at: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        if self.tasks_completed == 0:
            return 0.0
        return self.total_latency_ms / self.tasks_completed

class WorkerPool:
    """
    Bounded pool for blocking work.

    Usage:
        pool = WorkerPool(WorkerConfig(max_workers=4))
        await pool.start()

        output = await pool.run(session.run, features)

        await pool.shutdown()
    """

    def __init__(self, config: WorkerConfig | None = None) -> None:
        self._config = config or WorkerConfig()
        self._sem = asyncio.Semaphore(self._config.max_workers)
        self._executor: ThreadPoolExecutor | None = None
        self._workers: dict[int, WorkerStats] = {
            i: WorkerStats(worker_id=i) for i in range(self._config.max_workers)
        }
        self._active_count = 0
        self._running = False
        self._total_submitted = 0
        self._total_completed = 0
        self._total_failed = 0

    @property
    def max_workers(self) -> int:
        return self._config.max_workers

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix=self._config.thread_name_prefix,
        )
        self._running = True
        logger.info("worker_pool_started", max_workers=self._config.max_workers)

    async def shutdown(self, *, drain: bool = True) -> None:
        """
        Stop accepting work and release the executor threads.

        Args:
            drain: If True, wait for in-flight work to complete.
        """
        if not self._running:
            return
        self._running = False

        if drain:
            deadline = time.monotonic() + self._config.drain_timeout_s
            while self._active_count > 0 and time.monotonic() < deadline:
                await asyncio.sleep(0.05)
            if self._active_count > 0:
                logger.warning("worker_pool_drain_timeout", remaining=self._active_count)

        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "worker_pool_shutdown",
            completed=self._total_completed,
            failed=self._total_failed,
        )

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``func`` on a pool thread.

        Waits for a free slot first (backpressure). If the caller is
        cancelled, the thread still runs to completion; only the await is
        abandoned.
        """
        if not self._running or self._executor is None:
            raise RuntimeError("Worker pool is not running")

        self._total_submitted += 1
        await self._sem.acquire()

        self._active_count += 1
        worker_id = self._claim_slot()
        start = time.monotonic()
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(
                self._executor, functools.partial(func, *args, **kwargs)
            )
        except Exception:
            self._total_failed += 1
            if worker_id is not None:
                self._workers[worker_id].tasks_failed += 1
            raise
        else:
            self._total_completed += 1
            if worker_id is not None:
                w = self._workers[worker_id]
                w.tasks_completed += 1
                w.total_latency_ms += (time.monotonic() - start) * 1000
                w.last_task_at = time.monotonic()
            return result
        finally:
            self._active_count -= 1
            if worker_id is not None:
                self._workers[worker_id].busy = False
            self._sem.release()

    def _claim_slot(self) -> int | None:
        for wid, stats in self._workers.items():
            if not stats.busy:
                stats.busy = True
                return wid
        return None

    @property
    def active_count(self) -> int:
        return self._active_count

    @property
    def available_count(self) -> int:
        return self._config.max_workers - self._active_count

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_workers": self._config.max_workers,
            "active": self._active_count,
            "available": self.available_count,
            "total_submitted": self._total_submitted,
            "total_completed": self._total_completed,
            "total_failed": self._total_failed,
            "running": self._running,
            "workers": {
                wid: {
                    "completed": w.tasks_completed,
                    "failed": w.tasks_failed,
                    "avg_latency_ms": round(w.avg_latency_ms, 1),
                    "busy": w.busy,
                }
                for wid, w in self._workers.items()
            },
        }
