"""
Performance Ledger — per-model rolling metrics.

Every inference attempt updates its model's record under one lock:
latency is credited on success only, errors only bump the counters.
Records are created on load and deleted on eviction.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from echo_runtime.infra.telemetry import get_logger

logger = get_logger(__name__)

LATENCY_WINDOW = 100

@dataclass
class PerformanceRecord:
    identifier: str
    memory_estimate_bytes: int = 0
    invocation_count: int = 0
    error_count: int = 0
    last_latency_ms: float = 0.0
    _latencies: deque[float] = field(
        default_factory=lambda: deque(maxlen=LATENCY_WINDOW), repr=False
    )

    @property
    def average_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    @property
    def success_count(self) -> int:
        return self.invocation_count - self.error_count

    @property
    def error_rate(self) -> float:
        if self.invocation_count == 0:
            return 0.0
        return self.error_count / self.invocation_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "average_latency_ms": round(self.average_latency_ms, 3),
            "invocation_count": self.invocation_count,
            "error_count": self.error_count,
            "error_rate": round(self.error_rate, 4),
            "memory_estimate_mb": round(self.memory_estimate_bytes / (1024 * 1024), 3),
        }

class PerformanceLedger:
    """Thread-safe store of PerformanceRecords keyed by model identifier."""

    def __init__(self) -> None:
        self._records: dict[str, PerformanceRecord] = {}
        self._lock = threading.Lock()

    def register(self, identifier: str, memory_estimate_bytes: int = 0) -> PerformanceRecord:
        """Start a fresh record, replacing any previous one."""
        record = PerformanceRecord(identifier, memory_estimate_bytes=memory_estimate_bytes)
        with self._lock:
            self._records[identifier] = record
        return record

    def record_success(self, identifier: str, latency_ms: float) -> None:
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                logger.debug("ledger_record_missing", model=identifier)
                return
            record.invocation_count += 1
            record.last_latency_ms = latency_ms
            record._latencies.append(latency_ms)

    def record_failure(self, identifier: str) -> None:
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                logger.debug("ledger_record_missing", model=identifier)
                return
            record.invocation_count += 1
            record.error_count += 1

    def get(self, identifier: str) -> PerformanceRecord | None:
        return self._records.get(identifier)

    def remove(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._records

    def __len__(self) -> int:
        return len(self._records)

    def summary(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records.values())

        total = sum(r.invocation_count for r in records)
        errors = sum(r.error_count for r in records)
        averages = [r.average_latency_ms for r in records if r.success_count > 0]
        return {
            "total_inferences": total,
            "total_errors": errors,
            "average_inference_time_ms": (
                round(sum(averages) / len(averages), 3) if averages else 0.0
            ),
            "memory_usage_mb": round(
                sum(r.memory_estimate_bytes for r in records) / (1024 * 1024), 3
            ),
            "models": {r.identifier: r.to_dict() for r in records},
        }
