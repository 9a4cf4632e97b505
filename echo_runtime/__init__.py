"""
echo_runtime — adaptive on-device inference orchestration.

Picks an execution backend from probed hardware, manages model sessions,
tracks device conditions and runs the enhancement / understanding / core
prediction pipeline with per-stage graceful degradation.
"""

from echo_runtime.context import EchoRuntime
from echo_runtime.core import (
    AccelerationBackend,
    EchoRuntimeError,
    InferenceError,
    InferenceRequest,
    InferenceResult,
    ModelLoadError,
    ProbeFailure,
    RequestCancelled,
    RuntimeConfig,
    TelemetryUnavailable,
    WorkloadHint,
)
from echo_runtime.utils.cancellation import CancellationToken

__version__ = "0.1.0"

__all__ = [
    "AccelerationBackend",
    "CancellationToken",
    "EchoRuntime",
    "EchoRuntimeError",
    "InferenceError",
    "InferenceRequest",
    "InferenceResult",
    "ModelLoadError",
    "ProbeFailure",
    "RequestCancelled",
    "RuntimeConfig",
    "TelemetryUnavailable",
    "WorkloadHint",
]
