"""
Telemetry Monitor
==================

Periodically samples device operating conditions and derives advisory
scaling factors:

  - thermal_scale      1.0 at levels 0-1, 0.9 at 2, 0.7 at 3, 0.5 at 4
  - battery_scale      1.0 above 50 %, 0.8 above 20 %, else 0.6
  - memory_pressure    1 - available / total
  - performance_scale  device tier (1.2 / 1.0 / 0.8)

The factors annotate results; they never change predictions. Two
conditions act on the runtime: memory pressure above the high-water mark
evicts the least-recently-used model, and a critical thermal level
restricts backend selection to CPU until the device cools to level 2.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

from echo_runtime.core.exceptions import TelemetryUnavailable
from echo_runtime.core.types import PerformanceClass
from echo_runtime.infra.hardware.conditions import (
    DeviceConditionSource,
    DeviceReading,
    PsutilConditionSource,
)
from echo_runtime.infra.telemetry import MetricsCollector, get_logger

logger = get_logger(__name__)

THERMAL_STATES = ("NONE", "LIGHT", "MODERATE", "SEVERE", "CRITICAL")
THERMAL_CRITICAL = 4
THERMAL_RECOVERED = 2

LOW_BATTERY_PERCENT = 15.0
HIGH_THERMAL_LEVEL = 3
LOW_MEMORY_BYTES = 512 * 1024 * 1024

SnapshotCallback = Callable[["TelemetrySnapshot"], Awaitable[Any] | Any]

@dataclass(frozen=True)
class TelemetrySnapshot:
    """Point-in-time device conditions. Defaults are the neutral snapshot."""

    battery_percent: float = 50.0
    thermal_level: int = 0
    available_memory_bytes: int = 0
    total_memory_bytes: int = 0
    cpu_load: float = 0.0
    captured_at: float = 0.0

    @classmethod
    def neutral(cls) -> TelemetrySnapshot:
        return cls()

    @property
    def memory_pressure(self) -> float:
        if self.total_memory_bytes <= 0:
            return 0.0
        used = 1.0 - self.available_memory_bytes / self.total_memory_bytes
        return min(1.0, max(0.0, used))

    @property
    def thermal_state(self) -> str:
        if 0 <= self.thermal_level < len(THERMAL_STATES):
            return THERMAL_STATES[self.thermal_level]
        return "UNKNOWN"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["memory_pressure"] = round(self.memory_pressure, 4)
        data["thermal_state"] = self.thermal_state
        return data

@dataclass(frozen=True)
class ScalingFactors:
    thermal_scale: float
    battery_scale: float
    memory_pressure: float
    performance_scale: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

def thermal_scale(level: int) -> float:
    if level <= 1:
        return 1.0
    if level == 2:
        return 0.9
    if level == 3:
        return 0.7
    return 0.5

def battery_scale(percent: float) -> float:
    if percent > 50:
        return 1.0
    if percent > 20:
        return 0.8
    return 0.6

class TelemetryMonitor:
    """
    Owner of the periodic telemetry task.

    Usage:
        monitor = TelemetryMonitor(interval_s=30.0)
        await monitor.start()
        factors = monitor.scaling_factors(monitor.current())
        await monitor.stop()
    """

    def __init__(
        self,
        source: DeviceConditionSource | None = None,
        *,
        interval_s: float = 30.0,
        memory_high_water: float = 0.8,
        performance_class: PerformanceClass = PerformanceClass.MEDIUM,
        metrics: MetricsCollector | None = None,
        on_memory_pressure: SnapshotCallback | None = None,
        on_thermal_critical: SnapshotCallback | None = None,
        on_thermal_recovered: SnapshotCallback | None = None,
        history_window: int = 120,
    ) -> None:
        self._source = source or PsutilConditionSource()
        self._interval_s = interval_s
        self._high_water = memory_high_water
        self.performance_class = performance_class
        self._metrics = metrics
        self._on_memory_pressure = on_memory_pressure
        self._on_thermal_critical = on_thermal_critical
        self._on_thermal_recovered = on_thermal_recovered

        self._latest: TelemetrySnapshot | None = None
        self.history: deque[TelemetrySnapshot] = deque(maxlen=history_window)
        self._thermal_restricted = False
        self._task: asyncio.Task | None = None

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic sampling task. No-op when already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="telemetry-monitor-loop")
        logger.info("telemetry_started", interval_s=self._interval_s)

    async def stop(self) -> None:
        """Cancel the sampling task. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("telemetry_stopped")

    async def _loop(self) -> None:
        # Fixed rate: a slow read shortens the following sleep.
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            await self.sample()
            await asyncio.sleep(max(0.0, self._interval_s - (loop.time() - started)))

    # ── Sampling ───────────────────────────────────────────────────

    async def sample(self) -> TelemetrySnapshot:
        """
        Take one reading.

        The query runs in a worker thread and may take at most one poll
        interval. On any failure the previous snapshot (or the neutral
        default) is returned unchanged and the failure is logged.
        """
        try:
            reading = await asyncio.wait_for(
                asyncio.to_thread(self._source.read), timeout=self._interval_s
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = TelemetryUnavailable(str(exc) or type(exc).__name__)
            logger.warning("telemetry_unavailable", detail=failure.detail)
            if self._metrics is not None:
                self._metrics.record_telemetry_failure()
            return self._latest or TelemetrySnapshot.neutral()

        snapshot = self._merge(reading)
        self._latest = snapshot
        self.history.append(snapshot)

        if self._metrics is not None:
            self._metrics.record_device_conditions(
                battery=snapshot.battery_percent,
                thermal=snapshot.thermal_level,
                memory_pressure=snapshot.memory_pressure,
                cpu_load=snapshot.cpu_load,
            )
        self._warn(snapshot)
        await self._react(snapshot)
        return snapshot

    def _merge(self, reading: DeviceReading) -> TelemetrySnapshot:
        """Fill fields the source could not report from the previous snapshot."""
        prev = self._latest or TelemetrySnapshot.neutral()

        def pick(value: Any, fallback: Any) -> Any:
            return fallback if value is None else value

        thermal = pick(reading.thermal_level, prev.thermal_level)
        return TelemetrySnapshot(
            battery_percent=float(pick(reading.battery_percent, prev.battery_percent)),
            thermal_level=min(4, max(0, int(thermal))),
            available_memory_bytes=int(
                pick(reading.available_memory_bytes, prev.available_memory_bytes)
            ),
            total_memory_bytes=int(pick(reading.total_memory_bytes, prev.total_memory_bytes)),
            cpu_load=float(pick(reading.cpu_load, prev.cpu_load)),
            captured_at=time.monotonic(),
        )

    def _warn(self, snapshot: TelemetrySnapshot) -> None:
        if snapshot.battery_percent <= LOW_BATTERY_PERCENT:
            logger.warning("battery_low", battery_percent=snapshot.battery_percent)
        if snapshot.thermal_level >= HIGH_THERMAL_LEVEL:
            logger.warning(
                "thermal_high",
                thermal_level=snapshot.thermal_level,
                thermal_state=snapshot.thermal_state,
            )
        if 0 < snapshot.available_memory_bytes < LOW_MEMORY_BYTES:
            logger.warning(
                "memory_low",
                available_mb=snapshot.available_memory_bytes // (1024 * 1024),
            )

    async def _react(self, snapshot: TelemetrySnapshot) -> None:
        if snapshot.memory_pressure > self._high_water:
            logger.info(
                "memory_high_water",
                memory_pressure=round(snapshot.memory_pressure, 3),
                high_water=self._high_water,
            )
            await self._fire("memory_pressure", self._on_memory_pressure, snapshot)

        if snapshot.thermal_level >= THERMAL_CRITICAL and not self._thermal_restricted:
            self._thermal_restricted = True
            await self._fire("thermal_critical", self._on_thermal_critical, snapshot)
        elif self._thermal_restricted and snapshot.thermal_level <= THERMAL_RECOVERED:
            self._thermal_restricted = False
            await self._fire("thermal_recovered", self._on_thermal_recovered, snapshot)

    @staticmethod
    async def _fire(
        event: str, callback: SnapshotCallback | None, snapshot: TelemetrySnapshot
    ) -> None:
        if callback is None:
            return
        try:
            result = callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("telemetry_callback_failed", exc=exc, callback_event=event)

    # ── Consumers ──────────────────────────────────────────────────

    def latest(self) -> TelemetrySnapshot | None:
        return self._latest

    def current(self, max_age_s: float | None = None) -> TelemetrySnapshot:
        """
        Newest snapshot if fresh enough, else the neutral default.

        A read may take up to one interval, so a healthy monitor's snapshot
        can be nearly two intervals old; that is the default limit.
        """
        max_age = 2 * self._interval_s if max_age_s is None else max_age_s
        snapshot = self._latest
        if snapshot is None or time.monotonic() - snapshot.captured_at > max_age:
            return TelemetrySnapshot.neutral()
        return snapshot

    def scaling_factors(self, snapshot: TelemetrySnapshot | None = None) -> ScalingFactors:
        snapshot = snapshot or self.current()
        return ScalingFactors(
            thermal_scale=thermal_scale(snapshot.thermal_level),
            battery_scale=battery_scale(snapshot.battery_percent),
            memory_pressure=snapshot.memory_pressure,
            performance_scale=self.performance_class.scale,
        )

    def power_profile(self, snapshot: TelemetrySnapshot | None = None) -> dict[str, Any]:
        snapshot = snapshot or self.current()
        if snapshot.battery_percent < 20:
            mode = "BATTERY_SAVER"
        elif snapshot.thermal_level > 2:
            mode = "THERMAL_THROTTLE"
        else:
            mode = "PERFORMANCE"
        return {
            "power_mode": mode,
            "thermal_state": snapshot.thermal_state,
            "memory_optimization": snapshot.memory_pressure > self._high_water,
            "cpu_governor": "performance" if mode == "PERFORMANCE" else "powersave",
        }

    def optimization_status(self) -> dict[str, Any]:
        snapshot = self.current()
        return {
            "optimization_enabled": self.running,
            "performance_class": self.performance_class.profile,
            "thermal_state": snapshot.thermal_state,
            "battery_level": snapshot.battery_percent,
            "available_memory_mb": snapshot.available_memory_bytes // (1024 * 1024),
            "thermal_restricted": self._thermal_restricted,
            **self.power_profile(snapshot),
            "scaling_factors": self.scaling_factors(snapshot).as_dict(),
        }
