"""
Canonical Type Definitions
===========================

Single source of truth for shared types used across the runtime.

This module defines:
- AccelerationBackend: hardware execution paths for inference
- WorkloadHint: optional workload description used by backend selection
- PerformanceClass: coarse device tier derived at probe time
- ContextValue: tagged number | string | boolean request context values
- InferenceRequest / InferenceResult: the externally visible request contract
"""

from __future__ import annotations

import zlib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import numpy as np

__all__ = [
    "AccelerationBackend",
    "BooleanValue",
    "ContextValue",
    "InferenceRequest",
    "InferenceResult",
    "NumberValue",
    "PerformanceClass",
    "StringValue",
    "WorkloadHint",
    "context_value",
    "stable_hash",
]

class AccelerationBackend(StrEnum):
    """Execution backends, in ascending order of specialization."""

    CPU = "CPU"
    CPU_OPTIMIZED = "CPU_OPTIMIZED"
    GPU = "GPU"
    NPU = "NPU"

    @property
    def throughput_multiplier(self) -> float:
        """Estimated speedup relative to plain CPU inference."""
        return _THROUGHPUT[self]

    @property
    def supported_operations(self) -> frozenset[str]:
        return _SUPPORTED_OPS[self]

    @property
    def is_accelerator(self) -> bool:
        return self in (AccelerationBackend.GPU, AccelerationBackend.NPU)

_THROUGHPUT: dict[AccelerationBackend, float] = {
    AccelerationBackend.CPU: 1.0,
    AccelerationBackend.CPU_OPTIMIZED: 1.2,
    AccelerationBackend.GPU: 2.5,
    AccelerationBackend.NPU: 3.0,
}

_SUPPORTED_OPS: dict[AccelerationBackend, frozenset[str]] = {
    AccelerationBackend.CPU: frozenset({"BASIC_OPERATIONS"}),
    AccelerationBackend.CPU_OPTIMIZED: frozenset({"ALL_OPERATIONS"}),
    AccelerationBackend.GPU: frozenset({
        "CONV_2D", "DEPTHWISE_CONV_2D", "FULLY_CONNECTED",
        "ADD", "MUL", "RESHAPE", "SOFTMAX", "RELU",
    }),
    AccelerationBackend.NPU: frozenset({
        "CONV_2D", "DEPTHWISE_CONV_2D", "FULLY_CONNECTED",
        "POOLING", "LSTM", "RNN", "EMBEDDING_LOOKUP",
    }),
}

class WorkloadHint(StrEnum):
    """What a model mostly computes. Used only by backend selection."""

    MATRIX_HEAVY = "matrix_heavy"
    CONVOLUTION_HEAVY = "convolution_heavy"
    SEQUENTIAL = "sequential"
    LIGHTWEIGHT = "lightweight"

    @property
    def gpu_suitable(self) -> bool:
        return self in (WorkloadHint.MATRIX_HEAVY, WorkloadHint.CONVOLUTION_HEAVY)

class PerformanceClass(StrEnum):
    """Coarse device tier."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def scale(self) -> float:
        return {"high": 1.2, "medium": 1.0, "low": 0.8}[self.value]

    @property
    def profile(self) -> str:
        return {
            "high": "HIGH_PERFORMANCE",
            "medium": "BALANCED",
            "low": "POWER_SAVE",
        }[self.value]

# ── Context values ─────────────────────────────────────────────────

def stable_hash(text: str) -> float:
    """Process-independent string hash scaled to [-1, 1]."""
    return zlib.crc32(text.encode("utf-8")) / 0xFFFFFFFF * 2.0 - 1.0

@dataclass(frozen=True, slots=True)
class NumberValue:
    """Numeric context value. Encodes as its float value."""

    value: float

    def encode(self) -> float:
        return float(self.value)

@dataclass(frozen=True, slots=True)
class StringValue:
    """String context value. Encodes as a stable hash in [-1, 1]."""

    value: str

    def encode(self) -> float:
        return stable_hash(self.value)

@dataclass(frozen=True, slots=True)
class BooleanValue:
    """Boolean context value. Encodes as 1.0 or 0.0."""

    value: bool

    def encode(self) -> float:
        return 1.0 if self.value else 0.0

ContextValue = NumberValue | StringValue | BooleanValue

def context_value(raw: Any) -> ContextValue:
    """Wrap a raw Python value in its tagged variant.

    bool is checked before int since bool subclasses int.
    """
    if isinstance(raw, (NumberValue, StringValue, BooleanValue)):
        return raw
    if isinstance(raw, bool):
        return BooleanValue(raw)
    if isinstance(raw, (int, float)):
        return NumberValue(float(raw))
    if isinstance(raw, str):
        return StringValue(raw)
    raise ValueError(
        f"Unsupported context value type {type(raw).__name__}; "
        "expected number, string or boolean"
    )

# ── Request / Result ───────────────────────────────────────────────

@dataclass(frozen=True)
class InferenceRequest:
    """Pipeline input.

    ``audio`` and ``text`` are both optional. Context entries keep their
    insertion order, which decides their slot in the context features.
    """

    audio: np.ndarray | None = None
    text: str | None = None
    context: Mapping[str, ContextValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.audio is not None:
            audio = np.asarray(self.audio, dtype=np.float32).reshape(-1)
            object.__setattr__(self, "audio", audio)
        object.__setattr__(
            self,
            "context",
            {str(k): context_value(v) for k, v in dict(self.context).items()},
        )

    @classmethod
    def build(
        cls,
        *,
        audio: Sequence[float] | np.ndarray | None = None,
        text: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> InferenceRequest:
        return cls(audio=audio, text=text, context=context or {})  # type: ignore[arg-type]

    @property
    def has_audio(self) -> bool:
        return self.audio is not None and self.audio.size > 0

    @property
    def has_text(self) -> bool:
        return bool(self.text)

@dataclass
class InferenceResult:
    """Pipeline output. Always structurally valid, even when degraded."""

    prediction: np.ndarray
    confidence: float
    processing_time_ms: int
    backend_used: AccelerationBackend
    optimizations: dict[str, float] = field(default_factory=dict)
    annotations: dict[str, float] = field(default_factory=dict)
    degraded: bool = False
    stages: dict[str, str] = field(default_factory=dict)
    intent: str = "unknown"
    entities: dict[str, str] = field(default_factory=dict)
    request_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "prediction": [float(x) for x in self.prediction],
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "backend_used": self.backend_used.value,
            "optimizations": dict(self.optimizations),
            "annotations": dict(self.annotations),
            "degraded": self.degraded,
            "stages": dict(self.stages),
            "intent": self.intent,
            "entities": dict(self.entities),
        }
