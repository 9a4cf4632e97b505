"""
Feature encoding and fusion for the inference pipeline.

The core model consumes one fixed 480-wide vector:

    audio (256) | text (128) | understanding (64) | context (32)

Each slice is zero-padded or truncated to its width, so the fused vector
is 480 wide for any input sizes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import numpy as np

from echo_runtime.core.types import ContextValue, stable_hash

AUDIO_WIDTH = 256
TEXT_WIDTH = 128
UNDERSTANDING_WIDTH = 64
CONTEXT_WIDTH = 32
FUSED_WIDTH = AUDIO_WIDTH + TEXT_WIDTH + UNDERSTANDING_WIDTH + CONTEXT_WIDTH

INTENTS = ("greeting", "question", "command", "request", "information", "other")
UNKNOWN_INTENT = "unknown"

# Checked in order; a later match overrides an earlier one.
_ENTITY_KEYWORDS = (
    ("time", "time_query"),
    ("weather", "weather_query"),
    ("contact", "contact_query"),
)
_MAX_ENTITY_SLOTS = 30

def fit(values: np.ndarray | Sequence[float] | None, width: int) -> np.ndarray:
    """Zero-pad or truncate a flat vector to ``width`` float32 values."""
    out = np.zeros(width, dtype=np.float32)
    if values is None:
        return out
    flat = np.asarray(values, dtype=np.float32).reshape(-1)[:width]
    out[: flat.size] = flat
    return out

def tokenize_text(text: str | None, width: int = TEXT_WIDTH) -> np.ndarray:
    """Character codes of the lowercased text scaled by 1/127."""
    if not text:
        return np.zeros(0, dtype=np.float32)
    codes = [ord(ch) / 127.0 for ch in text.lower()[:width]]
    return np.asarray(codes, dtype=np.float32)

def encode_context(context: Mapping[str, ContextValue], width: int = CONTEXT_WIDTH) -> np.ndarray:
    """One slot per context entry, in insertion order."""
    out = np.zeros(width, dtype=np.float32)
    for index, value in enumerate(context.values()):
        if index >= width:
            break
        out[index] = value.encode()
    return out

def encode_understanding(
    confidence: float,
    intent: str,
    entities: Mapping[str, str],
    width: int = UNDERSTANDING_WIDTH,
) -> np.ndarray:
    """[confidence, hash(intent), hash(entity value)...]."""
    out = np.zeros(width, dtype=np.float32)
    out[0] = confidence
    out[1] = stable_hash(intent)
    for index, value in enumerate(entities.values()):
        if index >= min(_MAX_ENTITY_SLOTS, width - 2):
            break
        out[index + 2] = stable_hash(value)
    return out

def fuse(
    audio: np.ndarray | None,
    text: np.ndarray | None,
    understanding: np.ndarray | None,
    context: np.ndarray | None,
) -> np.ndarray:
    return np.concatenate([
        fit(audio, AUDIO_WIDTH),
        fit(text, TEXT_WIDTH),
        fit(understanding, UNDERSTANDING_WIDTH),
        fit(context, CONTEXT_WIDTH),
    ])

def decode_intent(predictions: np.ndarray) -> str:
    if predictions.size == 0:
        return UNKNOWN_INTENT
    index = int(np.argmax(predictions))
    return INTENTS[index] if index < len(INTENTS) else UNKNOWN_INTENT

def extract_entities(text: str) -> dict[str, str]:
    lowered = text.lower()
    entities: dict[str, str] = {}
    for keyword, entity_type in _ENTITY_KEYWORDS:
        if keyword in lowered:
            entities["type"] = entity_type
    return entities

def noise_reduction(original: np.ndarray, enhanced: np.ndarray) -> float:
    """Relative drop in mean absolute amplitude, clamped to [0, 1]."""
    if original.size == 0 or enhanced.size == 0:
        return 0.0
    before = float(np.mean(np.abs(original)))
    if before == 0.0:
        return 0.0
    after = float(np.mean(np.abs(enhanced)))
    return float(np.clip((before - after) / before, 0.0, 1.0))

def clarity_score(audio: np.ndarray) -> float:
    if audio.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(audio, dtype=np.float64))))
    return float(np.clip(rms * 2.0, 0.0, 1.0))

def shape_for_model(features: np.ndarray, input_width: int | None) -> np.ndarray:
    """Fit features to a model's static input width; pass through when dynamic."""
    if input_width is None:
        return np.asarray(features, dtype=np.float32).reshape(-1)
    return fit(features, input_width)
