"""Unit tests for the per-model performance ledger."""

import threading

import pytest

from echo_runtime.infra.runtime.ledger import LATENCY_WINDOW, PerformanceLedger


class TestPerformanceLedger:
    def setup_method(self):
        self.ledger = PerformanceLedger()
        self.ledger.register("core", memory_estimate_bytes=2 * 1024 * 1024)

    def test_fresh_record_is_zeroed(self):
        record = self.ledger.get("core")
        assert record.invocation_count == 0
        assert record.error_count == 0
        assert record.average_latency_ms == 0.0
        assert record.error_rate == 0.0

    def test_success_credits_latency(self):
        self.ledger.record_success("core", 10.0)
        self.ledger.record_success("core", 20.0)
        record = self.ledger.get("core")
        assert record.invocation_count == 2
        assert record.average_latency_ms == pytest.approx(15.0)
        assert record.last_latency_ms == 20.0

    def test_failure_counts_without_latency(self):
        self.ledger.record_success("core", 10.0)
        self.ledger.record_failure("core")
        record = self.ledger.get("core")
        assert record.invocation_count == 2
        assert record.error_count == 1
        assert record.error_rate == 0.5
        assert record.average_latency_ms == pytest.approx(10.0)

    def test_latency_window_is_bounded(self):
        for _ in range(LATENCY_WINDOW):
            self.ledger.record_success("core", 100.0)
        for _ in range(LATENCY_WINDOW):
            self.ledger.record_success("core", 1.0)
        record = self.ledger.get("core")
        assert record.average_latency_ms == pytest.approx(1.0)
        assert record.invocation_count == 2 * LATENCY_WINDOW

    def test_register_resets(self):
        self.ledger.record_success("core", 5.0)
        self.ledger.register("core")
        assert self.ledger.get("core").invocation_count == 0

    def test_remove(self):
        self.ledger.remove("core")
        assert "core" not in self.ledger
        self.ledger.record_success("core", 1.0)
        assert self.ledger.get("core") is None

    def test_concurrent_updates_are_not_lost(self):
        def hammer():
            for _ in range(500):
                self.ledger.record_success("core", 1.0)
                self.ledger.record_failure("core")

        threads = [threading.Thread(target=hammer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        record = self.ledger.get("core")
        assert record.invocation_count == 8 * 1000
        assert record.error_count == 8 * 500

    def test_summary(self):
        self.ledger.register("nlu", memory_estimate_bytes=1024 * 1024)
        self.ledger.record_success("core", 4.0)
        self.ledger.record_success("nlu", 2.0)
        self.ledger.record_failure("nlu")
        summary = self.ledger.summary()
        assert summary["total_inferences"] == 3
        assert summary["total_errors"] == 1
        assert summary["average_inference_time_ms"] == pytest.approx(3.0)
        assert summary["memory_usage_mb"] == pytest.approx(3.0)
        assert summary["models"]["nlu"]["error_rate"] == 0.5
