from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

import pytest

from invoice_ocr.logger import JsonFormatter, log_extraction_event, preview
from invoice_ocr.metrics import JsonlMetricsSink, MetricsCollector
from schemas.invoice_schema import ExtractionFailure, ExtractionSuccess, InvoiceData, InvoiceProduct


def test_json_formatter_includes_extraction_fields() -> None:
    logger = logging.getLogger("test-observability")
    record = logger.makeRecord(
        name=logger.name,
        level=logging.INFO,
        fn="test",
        lno=1,
        msg="parse finished",
        args=(),
        exc_info=None,
        extra={
            "request_id": "req-1",
            "stage": "parse",
            "latency_ms": 120,
            "outcome": "success",
            "not_a_known_field": "ignored",
        },
    )
    payload = json.loads(JsonFormatter().format(record))
    assert payload["request_id"] == "req-1"
    assert payload["stage"] == "parse"
    assert payload["latency_ms"] == 120
    assert payload["outcome"] == "success"
    assert "not_a_known_field" not in payload


def test_log_extraction_event_filters_unknown_fields(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test-observability-helper")
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_extraction_event(
            logger,
            logging.INFO,
            "done",
            request_id="req-22",
            stage="ocr",
            state="OCR_IN_FLIGHT",
            latency_ms=33,
            outcome="success",
            byte_length=412,
            secret_token="never-logged",
        )
    record = caplog.records[-1]
    assert record.request_id == "req-22"
    assert record.byte_length == 412
    assert not hasattr(record, "secret_token")


def test_preview_truncates_long_text() -> None:
    assert preview("short") == "short"
    assert preview(None) == ""
    long_text = preview("x" * 500, limit=10)
    assert long_text == "x" * 10 + "... (truncated)"
    assert preview(b"bytes") == "bytes"


def test_metrics_collector_snapshot() -> None:
    metrics = MetricsCollector()
    metrics.increment("ocr_requests_total")
    metrics.increment("parse_requests_total", 2)
    metrics.increment("parse_failed_total")
    metrics.increment("rate_limited_total")
    metrics.observe_latency(50)
    metrics.observe_latency(200)
    metrics.observe_latency(100)

    snapshot = metrics.snapshot()
    assert snapshot["ocr_requests_total"] == 1
    assert snapshot["ocr_failed_total"] == 0
    assert snapshot["parse_requests_total"] == 2
    assert snapshot["parse_failed_total"] == 1
    assert snapshot["rate_limited_total"] == 1
    assert snapshot["latency_p95_ms"] >= 100


def test_jsonl_metrics_sink_writes_event(tmp_path: Path) -> None:
    sink = JsonlMetricsSink(path=tmp_path / "nested" / "metrics.jsonl")
    sink.emit({"metric": "extractions_total", "value": 1})
    lines = (tmp_path / "nested" / "metrics.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["metric"] == "extractions_total"
    assert payload["value"] == 1
    assert "recorded_at_utc" in payload


def test_latency_window_stays_bounded() -> None:
    metrics = MetricsCollector(window=50)
    for value in range(10_000):
        metrics.observe_latency(value)

    snapshot = metrics.snapshot()
    assert snapshot["latency_samples"] == 50
    assert snapshot["latency_p95_ms"] >= 9_950


def test_concurrent_increments_are_not_lost() -> None:
    metrics = MetricsCollector()

    def hammer() -> None:
        for _ in range(2_000):
            metrics.increment("parse_requests_total")

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert metrics.snapshot()["parse_requests_total"] == 16_000


def test_sink_records_extraction_outcomes(tmp_path: Path) -> None:
    sink = JsonlMetricsSink(path=tmp_path / "metrics.jsonl")
    success = ExtractionSuccess(
        data=InvoiceData(products=[InvoiceProduct(name="Milk", quantity=2, unit_price=1.5, total_price=3.0)]),
        ocr_text="Milk 2 1.50 3.00",
    )
    failure = ExtractionFailure(error="Invalid file type. Please upload a JPG or PNG image.", kind="invalid_file_type")

    sink.record_extraction(success, file_name="a.png", latency_ms=40)
    sink.record_extraction(failure, file_name="b.gif", latency_ms=1)

    events = [json.loads(line) for line in (tmp_path / "metrics.jsonl").read_text(encoding="utf-8").splitlines()]
    assert [e["outcome"] for e in events] == ["success", "invalid_file_type"]
    assert [e["products"] for e in events] == [1, 0]
    assert events[0]["file_name"] == "a.png"
    assert events[0]["latency_ms"] == 40
