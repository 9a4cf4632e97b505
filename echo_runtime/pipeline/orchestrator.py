"""
Inference Orchestrator
=======================

Runs one request through the pipeline:

  a. enhancement     audio -> enhanced audio (failure: audio unchanged)
  b. understanding   text + context -> intent, entities (failure: "unknown", {})
  c. fusion          audio | text | understanding | context -> 480 floats
  d. core            fused vector -> prediction (failure: all 0.5, confidence 0)
  e. annotation      scaling factors and backend, predictions untouched

No stage failure aborts a request. Cancellation (task cancellation or a
CancellationToken) skips the remaining stages; a model call already
running finishes in the background and its result is dropped.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum

import numpy as np

from echo_runtime.core.config import RuntimeConfig
from echo_runtime.core.exceptions import InferenceError, RequestCancelled
from echo_runtime.core.types import (
    AccelerationBackend,
    InferenceRequest,
    InferenceResult,
    WorkloadHint,
)
from echo_runtime.infra.hardware.monitor import TelemetryMonitor
from echo_runtime.infra.hardware.selector import AcceleratorSelector
from echo_runtime.infra.runtime.registry import ModelHandle, ModelRegistry
from echo_runtime.infra.telemetry import (
    MetricsCollector,
    clear_request_context,
    get_logger,
    set_request_context,
)
from echo_runtime.pipeline import features
from echo_runtime.utils.cancellation import CancellationToken

logger = get_logger(__name__)

class StageStatus(StrEnum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"

STAGE_HINTS = {
    "enhancement": WorkloadHint.CONVOLUTION_HEAVY,
    "understanding": WorkloadHint.SEQUENTIAL,
    "core": WorkloadHint.MATRIX_HEAVY,
}

@dataclass
class _Understanding:
    intent: str = features.UNKNOWN_INTENT
    entities: dict[str, str] = field(default_factory=dict)
    vector: np.ndarray | None = None

class InferenceOrchestrator:
    """
    Top-level pipeline over the model registry and telemetry monitor.

    Usage:
        orchestrator = InferenceOrchestrator(
            registry=registry, monitor=monitor, selector=selector, config=config,
        )
        result = await orchestrator.process_request(
            InferenceRequest.build(text="what time is it", context={"hour": 9})
        )
    """

    def __init__(
        self,
        *,
        registry: ModelRegistry,
        monitor: TelemetryMonitor,
        selector: AcceleratorSelector,
        config: RuntimeConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._selector = selector
        self._config = config or RuntimeConfig()
        self._metrics = metrics

    # ── Public API ─────────────────────────────────────────────────

    async def process_request(
        self,
        request: InferenceRequest,
        *,
        token: CancellationToken | None = None,
    ) -> InferenceResult:
        """
        Run the full pipeline.

        Raises:
            RequestCancelled: the token was cancelled before the pipeline finished.
        """
        request_id = uuid.uuid4().hex
        set_request_context(request_id=request_id)
        start = time.perf_counter()
        stages: dict[str, str] = {}
        annotations: dict[str, float] = {}

        def checkpoint(stage: str) -> None:
            if token is not None:
                token.raise_if_cancelled(stage)
            set_request_context(stage=stage)

        try:
            # a. enhancement
            audio = request.audio if request.has_audio else None
            if audio is not None:
                checkpoint("enhancement")
                enhanced = await self._enhance(audio, annotations)
                stages["enhancement"] = StageStatus.FAILED if enhanced is None else StageStatus.OK
                if enhanced is not None:
                    audio = enhanced
            else:
                stages["enhancement"] = StageStatus.SKIPPED

            # b. understanding
            understanding = _Understanding()
            if request.has_text:
                checkpoint("understanding")
                result = await self._understand(request)
                stages["understanding"] = StageStatus.FAILED if result is None else StageStatus.OK
                if result is not None:
                    understanding = result
            else:
                stages["understanding"] = StageStatus.SKIPPED

            # c. fusion
            checkpoint("fusion")
            fused = features.fuse(
                audio,
                features.tokenize_text(request.text),
                understanding.vector,
                features.encode_context(request.context),
            )

            # d. core
            checkpoint("core")
            prediction, core_handle = await self._core(fused)
            stages["core"] = StageStatus.FAILED if prediction is None else StageStatus.OK

            # e. annotation
            checkpoint("annotation")
        except RequestCancelled as exc:
            logger.info("request_cancelled", stage=exc.stage, reason=token.reason if token else None)
            raise
        finally:
            clear_request_context()

        attempted = [s for s in stages.values() if s != StageStatus.SKIPPED]
        all_failed = all(s == StageStatus.FAILED for s in attempted)
        degraded = any(s == StageStatus.FAILED for s in attempted)

        if prediction is None:
            prediction = self._neutral_prediction()
            confidence = 0.0
        else:
            confidence = self._confidence(prediction)

        if all_failed:
            backend = AccelerationBackend.CPU
        elif core_handle is not None:
            backend = core_handle.backend
        else:
            backend = self._selector.current_backend()

        elapsed_s = time.perf_counter() - start
        if self._metrics is not None:
            self._metrics.record_pipeline(latency_s=elapsed_s, degraded=degraded)

        result = InferenceResult(
            prediction=prediction,
            confidence=confidence,
            processing_time_ms=int(round(elapsed_s * 1000)),
            backend_used=backend,
            optimizations=self._monitor.scaling_factors(self._monitor.current()).as_dict(),
            annotations=annotations,
            degraded=degraded,
            stages={k: str(v) for k, v in stages.items()},
            intent=understanding.intent,
            entities=dict(understanding.entities),
            request_id=request_id,
        )
        logger.info(
            "request_processed",
            request_id=request_id,
            backend=backend.value,
            confidence=round(confidence, 4),
            degraded=degraded,
            elapsed_ms=result.processing_time_ms,
        )
        return result

    def model_hints(self) -> dict[str, WorkloadHint]:
        """Workload hint of each pipeline model, keyed by identifier."""
        return {
            self._config.enhancement_model: STAGE_HINTS["enhancement"],
            self._config.understanding_model: STAGE_HINTS["understanding"],
            self._config.core_model: STAGE_HINTS["core"],
        }

    def model_widths(self) -> dict[str, int]:
        """Input width each pipeline model must accept, where it is fixed."""
        return {self._config.core_model: features.FUSED_WIDTH}

    def fallback_result(self, request_id: str = "") -> InferenceResult:
        """The fully neutral result used when the runtime is unusable."""
        return InferenceResult(
            prediction=self._neutral_prediction(),
            confidence=0.0,
            processing_time_ms=0,
            backend_used=AccelerationBackend.CPU,
            optimizations=self._monitor.scaling_factors(self._monitor.current()).as_dict(),
            degraded=True,
            stages={stage: str(StageStatus.FAILED) for stage in STAGE_HINTS},
            request_id=request_id or uuid.uuid4().hex,
        )

    # ── Stages ─────────────────────────────────────────────────────

    async def _invoke(
        self,
        stage: str,
        identifier: str,
        vector: np.ndarray,
        *,
        expected_input_width: int | None = None,
    ) -> tuple[np.ndarray, ModelHandle]:
        handle = await self._registry.load(
            identifier, hint=STAGE_HINTS[stage], expected_input_width=expected_input_width
        )
        if handle is None:
            raise InferenceError(
                f"Model {identifier} is unavailable", identifier=identifier, stage=stage
            )
        output, _ = await self._registry.run_inference(
            identifier, features.shape_for_model(vector, handle.input_width)
        )
        return output, handle

    def _stage_failed(self, stage: str, exc: InferenceError) -> None:
        if self._metrics is not None:
            self._metrics.record_stage_failure(stage)
        logger.warning("stage_degraded", pipeline_stage=stage, error=exc.detail)

    async def _enhance(self, audio: np.ndarray, annotations: dict[str, float]) -> np.ndarray | None:
        try:
            enhanced, _ = await self._invoke("enhancement", self._config.enhancement_model, audio)
        except InferenceError as exc:
            self._stage_failed("enhancement", exc)
            return None
        annotations["noise_reduction"] = features.noise_reduction(audio, enhanced)
        annotations["clarity_score"] = features.clarity_score(enhanced)
        return enhanced

    async def _understand(self, request: InferenceRequest) -> _Understanding | None:
        tokens = features.fit(features.tokenize_text(request.text), features.TEXT_WIDTH)
        vector = np.concatenate([tokens, features.encode_context(request.context)])
        try:
            predictions, _ = await self._invoke(
                "understanding", self._config.understanding_model, vector
            )
        except InferenceError as exc:
            self._stage_failed("understanding", exc)
            return None

        intent = features.decode_intent(predictions)
        entities = features.extract_entities(request.text or "")
        confidence = self._confidence(predictions)
        return _Understanding(
            intent=intent,
            entities=entities,
            vector=features.encode_understanding(confidence, intent, entities),
        )

    async def _core(self, fused: np.ndarray) -> tuple[np.ndarray | None, ModelHandle | None]:
        identifier = self._config.core_model
        try:
            prediction, handle = await self._invoke(
                "core", identifier, fused, expected_input_width=features.FUSED_WIDTH
            )
        except InferenceError as exc:
            self._stage_failed("core", exc)
            return None, self._registry.get(identifier)
        return prediction, handle

    # ── Helpers ────────────────────────────────────────────────────

    def _neutral_prediction(self) -> np.ndarray:
        return np.full(self._config.core_output_width, 0.5, dtype=np.float32)

    @staticmethod
    def _confidence(prediction: np.ndarray) -> float:
        if prediction.size == 0:
            return 0.0
        peak = float(np.max(prediction))
        if np.isnan(peak):
            return 0.0
        return min(1.0, max(0.0, peak))
