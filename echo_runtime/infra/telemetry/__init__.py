"""
Telemetry Layer — Logging and Metrics
======================================

The lowest layer: every other module imports its logger from here.

Usage:
    from echo_runtime.infra.telemetry import get_logger

    logger = get_logger(__name__)
    logger.info("model_loaded", model="core.onnx", backend="GPU")
"""

from echo_runtime.infra.telemetry.logger import (
    StructuredLogger,
    clear_request_context,
    get_logger,
    set_request_context,
    setup_logging,
)
from echo_runtime.infra.telemetry.metrics import MetricsCollector, PercentileTracker

__all__ = [
    "MetricsCollector",
    "PercentileTracker",
    "StructuredLogger",
    "clear_request_context",
    "get_logger",
    "set_request_context",
    "setup_logging",
]
