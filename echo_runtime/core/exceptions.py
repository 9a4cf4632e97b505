"""Exception classes for the echo runtime.

Includes:
- Base exception carrying an error code and timestamp
- Hardware probing and model lifecycle errors
- Pipeline stage errors with stage metadata
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


class EchoRuntimeError(Exception):
    """Base exception for all echo runtime errors."""

    def __init__(self, detail: str, error_code: str = "INTERNAL_ERROR"):
        self.detail = detail
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for logs and metrics export."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


class ProbeFailure(EchoRuntimeError):
    """A single acceleration backend could not be instantiated.

    Never raised out of the probe; instances are recorded on the
    capabilities snapshot so callers can see why a backend is missing.
    """

    def __init__(self, backend: str, delegate: str, reason: str):
        super().__init__(
            detail=f"{delegate} unavailable for {backend}: {reason}",
            error_code="PROBE_FAILURE",
        )
        self.backend = backend
        self.delegate = delegate
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update({"backend": self.backend, "delegate": self.delegate})
        return base


class ModelLoadError(EchoRuntimeError):
    """Raised when a model asset is missing or its declared shape is incompatible."""

    def __init__(self, identifier: str, reason: str):
        super().__init__(
            detail=f"Failed to load model {identifier}: {reason}",
            error_code="MODEL_LOAD_ERROR",
        )
        self.identifier = identifier
        self.reason = reason


class InferenceError(EchoRuntimeError):
    """A single inference call (or pipeline stage) failed."""

    def __init__(
        self,
        detail: str,
        identifier: str | None = None,
        stage: str = "unknown",
        original_error: Exception | None = None,
    ):
        super().__init__(
            detail=detail, error_code=f"INFERENCE_{stage.upper()}_ERROR"
        )
        self.identifier = identifier
        self.stage = stage
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update({"identifier": self.identifier, "stage": self.stage})
        return base


class TelemetryUnavailable(EchoRuntimeError):
    """Device condition sampling failed; a substitute snapshot is used."""

    def __init__(self, reason: str):
        super().__init__(
            detail=f"Telemetry unavailable: {reason}",
            error_code="TELEMETRY_UNAVAILABLE",
        )


class RequestCancelled(EchoRuntimeError):
    """Raised when a request is cancelled before the pipeline finishes."""

    def __init__(self, stage: str):
        super().__init__(
            detail=f"Request cancelled before stage {stage}",
            error_code="REQUEST_CANCELLED",
        )
        self.stage = stage
