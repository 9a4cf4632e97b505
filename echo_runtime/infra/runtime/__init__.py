"""
Runtime Layer — Model Sessions, Registry, Worker Pool
========================================================
"""

from echo_runtime.infra.runtime.ledger import PerformanceLedger, PerformanceRecord
from echo_runtime.infra.runtime.registry import ModelHandle, ModelRegistry
from echo_runtime.infra.runtime.sessions import (
    AssetStore,
    FileAssetStore,
    ModelSession,
    OnnxModelSession,
    OnnxSessionFactory,
    SessionFactory,
    TensorSpec,
)
from echo_runtime.infra.runtime.worker_pool import WorkerConfig, WorkerPool

__all__ = [
    "AssetStore",
    "FileAssetStore",
    "ModelHandle",
    "ModelRegistry",
    "ModelSession",
    "OnnxModelSession",
    "OnnxSessionFactory",
    "PerformanceLedger",
    "PerformanceRecord",
    "SessionFactory",
    "TensorSpec",
    "WorkerConfig",
    "WorkerPool",
]
