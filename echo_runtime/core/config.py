"""
Runtime configuration.

Every field can be overridden through an ``ECHO_*`` environment variable:
    ECHO_MODELS_DIR            — directory holding model assets (default ./models)
    ECHO_ENHANCEMENT_MODEL     — signal enhancement model asset
    ECHO_UNDERSTANDING_MODEL   — language understanding model asset
    ECHO_CORE_MODEL            — core prediction model asset
    ECHO_CORE_OUTPUT_WIDTH     — prediction width used for fallbacks (default 10)
    ECHO_TELEMETRY_INTERVAL_S  — telemetry poll interval (default 30)
    ECHO_MEMORY_HIGH_WATER     — memory pressure that triggers eviction (default 0.8)
    ECHO_MAX_WORKERS           — worker pool size override (default: thread policy)
    ECHO_BENCHMARK_MODEL       — asset used to benchmark accelerator backends
    ECHO_LOG_LEVEL / ECHO_JSON_LOGS
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    return int(raw) if raw else None

@dataclass(frozen=True)
class RuntimeConfig:
    """Configuration for an EchoRuntime instance."""

    models_dir: Path = Path("models")
    enhancement_model: str = "voice_enhancement_model.onnx"
    understanding_model: str = "natural_language_understanding.onnx"
    core_model: str = "deep_tree_echo_model.onnx"
    core_output_width: int = 10

    telemetry_interval_s: float = 30.0
    memory_high_water: float = 0.8

    max_workers: int | None = None
    benchmark_model: str | None = None
    benchmark_matrix_size: int = 100

    log_level: str = "INFO"
    json_logs: bool = False

    extra_models: tuple[str, ...] = field(default_factory=tuple)

    @property
    def pipeline_models(self) -> tuple[str, str, str]:
        return (self.enhancement_model, self.understanding_model, self.core_model)

    @classmethod
    def from_env(cls) -> RuntimeConfig:
        """Build a configuration from ``ECHO_*`` environment variables."""
        defaults = cls()
        return cls(
            models_dir=Path(os.environ.get("ECHO_MODELS_DIR", str(defaults.models_dir))),
            enhancement_model=os.environ.get(
                "ECHO_ENHANCEMENT_MODEL", defaults.enhancement_model
            ),
            understanding_model=os.environ.get(
                "ECHO_UNDERSTANDING_MODEL", defaults.understanding_model
            ),
            core_model=os.environ.get("ECHO_CORE_MODEL", defaults.core_model),
            core_output_width=int(
                os.environ.get("ECHO_CORE_OUTPUT_WIDTH", defaults.core_output_width)
            ),
            telemetry_interval_s=float(
                os.environ.get("ECHO_TELEMETRY_INTERVAL_S", defaults.telemetry_interval_s)
            ),
            memory_high_water=float(
                os.environ.get("ECHO_MEMORY_HIGH_WATER", defaults.memory_high_water)
            ),
            max_workers=_env_int("ECHO_MAX_WORKERS"),
            benchmark_model=os.environ.get("ECHO_BENCHMARK_MODEL") or None,
            log_level=os.environ.get("ECHO_LOG_LEVEL", defaults.log_level),
            json_logs=_env_bool("ECHO_JSON_LOGS", defaults.json_logs),
        )
