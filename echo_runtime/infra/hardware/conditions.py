"""
Device condition sources.

A condition source answers one question: what are battery, thermal,
memory and CPU conditions right now. Fields a platform cannot report are
left as ``None`` so the monitor can keep the previous value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import psutil

# Degrees below the sensor's "high" threshold at which each level starts.
_LIGHT_MARGIN_C = 20.0
_MODERATE_MARGIN_C = 10.0
_DEFAULT_HIGH_C = 85.0

@dataclass(frozen=True)
class DeviceReading:
    """Raw, possibly partial, device reading."""

    battery_percent: float | None = None
    thermal_level: int | None = None
    available_memory_bytes: int | None = None
    total_memory_bytes: int | None = None
    cpu_load: float | None = None

@runtime_checkable
class DeviceConditionSource(Protocol):
    """Platform battery / thermal / memory / cpu query facility."""

    def read(self) -> DeviceReading: ...

def thermal_level_from_temperature(
    current: float, high: float | None, critical: float | None
) -> int:
    """Map a sensor temperature onto the 0 (none) .. 4 (critical) scale."""
    high = high or _DEFAULT_HIGH_C
    if critical and current >= critical:
        return 4
    if current >= high:
        return 3
    if current >= high - _MODERATE_MARGIN_C:
        return 2
    if current >= high - _LIGHT_MARGIN_C:
        return 1
    return 0

class PsutilConditionSource:
    """Default condition source backed by ``psutil``.

    Blocking; the monitor calls it from a worker thread.
    """

    def read(self) -> DeviceReading:
        mem = psutil.virtual_memory()
        return DeviceReading(
            battery_percent=self._battery(),
            thermal_level=self._thermal(),
            available_memory_bytes=mem.available,
            total_memory_bytes=mem.total,
            cpu_load=psutil.cpu_percent(interval=None) / 100.0,
        )

    @staticmethod
    def _battery() -> float | None:
        sensors_battery = getattr(psutil, "sensors_battery", None)
        if sensors_battery is None:
            return None
        battery = sensors_battery()
        return float(battery.percent) if battery is not None else None

    @staticmethod
    def _thermal() -> int | None:
        sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
        if sensors_temperatures is None:
            return None
        readings = sensors_temperatures()
        if not readings:
            return None
        return max(
            (
                thermal_level_from_temperature(t.current, t.high, t.critical)
                for entries in readings.values()
                for t in entries
            ),
            default=None,
        )
