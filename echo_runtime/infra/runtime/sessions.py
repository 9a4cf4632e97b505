"""
Model Sessions and Assets
===========================

Sessions wrap an inference runtime instance for one model graph. The
registry only sees the ``ModelSession`` protocol: declared input/output
tensor specs, a blocking ``run`` and ``close``. The default
implementation is backed by onnxruntime.

Model assets are plain ONNX files under the models directory, or
absolute paths.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np

from echo_runtime.core.exceptions import ModelLoadError
from echo_runtime.infra.hardware.selector import ExecutionConfig
from echo_runtime.infra.telemetry import get_logger

logger = get_logger(__name__)

_ORT_DTYPES = {
    "tensor(float)": "float32",
    "tensor(float16)": "float16",
    "tensor(double)": "float64",
    "tensor(int8)": "int8",
    "tensor(uint8)": "uint8",
    "tensor(int32)": "int32",
    "tensor(int64)": "int64",
    "tensor(bool)": "bool",
}

@dataclass(frozen=True)
class TensorSpec:
    """Declared tensor: name, shape (``None`` for dynamic dims) and dtype."""

    name: str
    shape: tuple[int | None, ...]
    dtype: str = "float32"

    @property
    def static_size(self) -> int | None:
        """Elements per sample, or None when a per-sample dim is dynamic.

        The leading dim of a rank >= 2 shape is the batch dim and is ignored.
        """
        dims = self.shape[1:] if len(self.shape) > 1 else self.shape
        if not dims or any(d is None for d in dims):
            return None
        return math.prod(dims)

    @property
    def quantized(self) -> bool:
        return self.dtype in ("int8", "uint8")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "shape": list(self.shape), "dtype": self.dtype}

@runtime_checkable
class ModelSession(Protocol):
    """A constructed runtime ready to execute one model graph."""

    @property
    def input_spec(self) -> TensorSpec: ...

    @property
    def output_spec(self) -> TensorSpec: ...

    def run(self, features: np.ndarray) -> np.ndarray: ...

    def close(self) -> None: ...

class SessionFactory(Protocol):
    def create(self, model_bytes: bytes, config: ExecutionConfig) -> ModelSession: ...

def cast_features(features: np.ndarray, dtype: str, *, tensor: str = "") -> np.ndarray:
    """
    Convert float features to a model's declared input dtype.

    Integer inputs are rounded to the nearest step and clipped to the
    dtype's range. Clipped values are logged.
    """
    target = np.dtype(dtype)
    x = np.asarray(features)
    if not np.issubdtype(target, np.integer):
        return x.astype(target, copy=False)

    bounds = np.iinfo(target)
    x = np.nan_to_num(np.rint(x.astype(np.float64)), nan=0.0)
    clipped = int(np.count_nonzero((x < bounds.min) | (x > bounds.max)))
    if clipped:
        logger.warning(
            "input_features_clipped",
            tensor=tensor,
            dtype=target.name,
            clipped=clipped,
            total=int(x.size),
        )
    return np.clip(x, bounds.min, bounds.max).astype(target)

# ── onnxruntime implementation ─────────────────────────────────────

def _dim(value: Any) -> int | None:
    return value if isinstance(value, int) and value > 0 else None

def _spec(node: Any) -> TensorSpec:
    return TensorSpec(
        name=node.name,
        shape=tuple(_dim(d) for d in node.shape),
        dtype=_ORT_DTYPES.get(node.type, "float32"),
    )

class OnnxModelSession:
    """ModelSession over ``onnxruntime.InferenceSession``. Not reentrant."""

    def __init__(self, session: Any) -> None:
        self._session = session
        self._input = _spec(session.get_inputs()[0])
        self._output = _spec(session.get_outputs()[0])

    @property
    def input_spec(self) -> TensorSpec:
        return self._input

    @property
    def output_spec(self) -> TensorSpec:
        return self._output

    @property
    def providers(self) -> list[str]:
        return list(self._session.get_providers()) if self._session else []

    def _conform(self, features: np.ndarray) -> np.ndarray:
        target = tuple(d if d is not None else 1 for d in self._input.shape)
        x = cast_features(features, self._input.dtype, tensor=self._input.name)
        if target and math.prod(target) == x.size:
            return x.reshape(target)
        if len(self._input.shape) == 2:
            return x.reshape(1, -1)
        return x

    def run(self, features: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise RuntimeError("Session is closed")
        outputs = self._session.run(
            [self._output.name], {self._input.name: self._conform(features)}
        )
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def close(self) -> None:
        self._session = None

class OnnxSessionFactory:
    """Builds onnxruntime sessions according to an ExecutionConfig."""

    def create(self, model_bytes: bytes, config: ExecutionConfig) -> OnnxModelSession:
        import onnxruntime as ort

        options = ort.SessionOptions()
        options.intra_op_num_threads = config.num_threads
        options.graph_optimization_level = (
            ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            if config.allow_reduced_precision
            else ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED
        )
        session = ort.InferenceSession(
            model_bytes,
            sess_options=options,
            providers=list(config.providers),
            provider_options=[dict(o) for o in config.provider_options],
        )
        logger.debug(
            "session_created",
            backend=config.backend.value,
            providers=session.get_providers(),
            threads=config.num_threads,
        )
        return OnnxModelSession(session)

# ── Asset store ────────────────────────────────────────────────────

class AssetStore(Protocol):
    def read(self, identifier: str) -> bytes: ...

    def list_models(self) -> list[str]: ...

class FileAssetStore:
    """Resolves model identifiers to ONNX files under ``models_dir``."""

    suffix = ".onnx"

    def __init__(self, models_dir: Path | str) -> None:
        self.models_dir = Path(models_dir)

    def resolve(self, identifier: str) -> Path:
        path = Path(identifier)
        return path if path.is_absolute() else self.models_dir / path

    def read(self, identifier: str) -> bytes:
        path = self.resolve(identifier)
        if not path.is_file():
            raise ModelLoadError(identifier, f"asset not found at {path}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise ModelLoadError(identifier, f"unreadable asset: {e}") from e

    def list_models(self) -> list[str]:
        if not self.models_dir.is_dir():
            return []
        return sorted(p.name for p in self.models_dir.glob(f"*{self.suffix}") if p.is_file())
