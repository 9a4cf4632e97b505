"""Inference pipeline: feature encoding and the stage orchestrator."""

from echo_runtime.pipeline.orchestrator import InferenceOrchestrator, StageStatus

__all__ = ["InferenceOrchestrator", "StageStatus"]
