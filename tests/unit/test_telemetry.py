"""Unit tests for structured logging and Prometheus metrics."""

import json
import logging
import sys

from echo_runtime.infra.telemetry import (
    MetricsCollector,
    PercentileTracker,
    clear_request_context,
    get_logger,
    set_request_context,
)
from echo_runtime.infra.telemetry.logger import StructuredFormatter


def make_record(event: str, **fields) -> logging.LogRecord:
    record = logging.LogRecord(
        name="echo_runtime.test", level=logging.INFO, pathname=__file__,
        lineno=1, msg=event, args=(), exc_info=None,
    )
    for key, value in fields.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def teardown_method(self):
        clear_request_context()

    def test_json_entry(self):
        formatter = StructuredFormatter(json_output=True)
        entry = json.loads(formatter.format(make_record("model_loaded", model="core.onnx", threads=4)))
        assert entry["event"] == "model_loaded"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "echo_runtime.test"
        assert entry["data"] == {"model": "core.onnx", "threads": 4}
        assert "context" not in entry

    def test_request_context_is_attached(self):
        set_request_context(request_id="abc123", stage="core")
        entry = json.loads(StructuredFormatter().format(make_record("stage_degraded")))
        assert entry["context"] == {"request_id": "abc123", "stage": "core"}

    def test_non_json_values_are_stringified(self):
        entry = json.loads(StructuredFormatter().format(make_record("x", shape=(1, 480))))
        assert entry["data"]["shape"] == "(1, 480)"

    def test_exception_details(self):
        try:
            raise ValueError("bad graph")
        except ValueError:
            record = make_record("model_load_failed")
            record.exc_info = sys.exc_info()
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad graph"

    def test_console_line(self):
        set_request_context(request_id="0123456789abcdef")
        line = StructuredFormatter(json_output=False).format(make_record("request_processed", degraded=False))
        assert "| 01234567 |" in line
        assert line.endswith("request_processed | degraded=False")


class TestStructuredLogger:
    def test_fields_reach_the_record(self):
        captured: list[logging.LogRecord] = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        stdlib = logging.getLogger("echo_runtime.tests.capture")
        stdlib.setLevel(logging.DEBUG)
        handler = Capture()
        stdlib.addHandler(handler)
        try:
            log = get_logger("echo_runtime.tests.capture")
            log.info("model_evicted", model="core.onnx", reason="manual")
            log.bind(model="nlu.onnx").warning("inference_failed", error="boom")
        finally:
            stdlib.removeHandler(handler)

        assert [r.getMessage() for r in captured] == ["model_evicted", "inference_failed"]
        assert captured[0].reason == "manual"
        assert captured[1].model == "nlu.onnx"
        assert captured[1].levelno == logging.WARNING


class TestMetrics:
    def test_percentiles(self):
        tracker = PercentileTracker(window_size=10)
        for value in range(1, 21):
            tracker.record(float(value))
        assert tracker.count == 10
        assert tracker.p50 == 16.0
        assert tracker.mean() == 15.5
        assert PercentileTracker().p95 == 0.0

    def test_collectors_are_isolated(self):
        first, second = MetricsCollector(), MetricsCollector()
        first.record_stage_failure("core")
        assert b'echo_pipeline_stage_failures_total{stage="core"} 1.0' in first.export_prometheus()
        assert b'stage="core"' not in second.export_prometheus()

    def test_pipeline_summary(self):
        metrics = MetricsCollector()
        metrics.record_pipeline(latency_s=0.010, degraded=False)
        metrics.record_pipeline(latency_s=0.030, degraded=True)
        summary = metrics.get_summary()["pipeline"]
        assert summary["count"] == 2
        assert summary["mean_ms"] == 20.0
        exported = metrics.export_prometheus()
        assert b'echo_pipeline_requests_total{status="degraded"} 1.0' in exported

    def test_inference_counts(self):
        metrics = MetricsCollector()
        metrics.record_inference(model="core.onnx", backend="GPU", latency_s=0.002, success=True)
        metrics.record_inference(model="core.onnx", backend="GPU", latency_s=0.0, success=False)
        metrics.record_model_load(success=True, active=1)
        exported = metrics.export_prometheus().decode()
        assert 'model="core.onnx",status="error"' in exported
        assert 'model="core.onnx",status="success"' in exported
