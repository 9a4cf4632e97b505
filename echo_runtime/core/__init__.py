"""Core types, configuration and errors shared by every layer."""

from echo_runtime.core.config import RuntimeConfig
from echo_runtime.core.exceptions import (
    EchoRuntimeError,
    InferenceError,
    ModelLoadError,
    ProbeFailure,
    RequestCancelled,
    TelemetryUnavailable,
)
from echo_runtime.core.types import (
    AccelerationBackend,
    BooleanValue,
    ContextValue,
    InferenceRequest,
    InferenceResult,
    NumberValue,
    PerformanceClass,
    StringValue,
    WorkloadHint,
    context_value,
    stable_hash,
)

__all__ = [
    "AccelerationBackend",
    "BooleanValue",
    "ContextValue",
    "EchoRuntimeError",
    "InferenceError",
    "InferenceRequest",
    "InferenceResult",
    "ModelLoadError",
    "NumberValue",
    "PerformanceClass",
    "ProbeFailure",
    "RequestCancelled",
    "RuntimeConfig",
    "StringValue",
    "TelemetryUnavailable",
    "WorkloadHint",
    "context_value",
    "stable_hash",
]
