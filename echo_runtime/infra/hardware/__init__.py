"""
Hardware Layer — Probing, Backend Selection, Device Telemetry
================================================================
"""

from echo_runtime.infra.hardware.conditions import (
    DeviceConditionSource,
    DeviceReading,
    PsutilConditionSource,
)
from echo_runtime.infra.hardware.monitor import (
    ScalingFactors,
    TelemetryMonitor,
    TelemetrySnapshot,
)
from echo_runtime.infra.hardware.probe import (
    DelegateCandidate,
    HardwareCapabilities,
    HardwareCapabilityProbe,
)
from echo_runtime.infra.hardware.selector import (
    NOT_APPLICABLE,
    AcceleratorSelector,
    BenchmarkOutcome,
    ExecutionConfig,
)

__all__ = [
    "NOT_APPLICABLE",
    "AcceleratorSelector",
    "BenchmarkOutcome",
    "DelegateCandidate",
    "DeviceConditionSource",
    "DeviceReading",
    "ExecutionConfig",
    "HardwareCapabilities",
    "HardwareCapabilityProbe",
    "PsutilConditionSource",
    "ScalingFactors",
    "TelemetryMonitor",
    "TelemetrySnapshot",
]
