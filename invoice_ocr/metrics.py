from __future__ import annotations

import json
import threading
from collections import Counter, deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from schemas.invoice_schema import ExtractionResult

LATENCY_WINDOW = 1000

COUNTER_NAMES = (
    "ocr_requests_total",
    "ocr_failed_total",
    "parse_requests_total",
    "parse_failed_total",
    "parse_fallback_total",
    "rate_limited_total",
)


class MetricsCollector:
    """Proxy counters plus p95 latency over the most recent requests.

    Shared by every request thread of one app, so all access goes through a lock.
    """

    def __init__(self, window: int = LATENCY_WINDOW) -> None:
        self._lock = threading.Lock()
        self._counters: Counter[str] = Counter()
        self._latencies_ms: deque[int] = deque(maxlen=window)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def observe_latency(self, value_ms: int) -> None:
        with self._lock:
            self._latencies_ms.append(value_ms)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            ordered = sorted(self._latencies_ms)
        p95 = ordered[int(0.95 * (len(ordered) - 1))] if ordered else 0
        stats: dict[str, Any] = {name: counters.get(name, 0) for name in COUNTER_NAMES}
        stats["latency_p95_ms"] = p95
        stats["latency_samples"] = len(ordered)
        return stats


class JsonlMetricsSink:
    """Appends one JSON line per extraction run."""

    def __init__(self, path: str | Path = "logs/metrics.jsonl") -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def record_extraction(self, result: ExtractionResult, *, file_name: str, latency_ms: int) -> None:
        self.emit(
            {
                "metric": "extractions_total",
                "value": 1,
                "outcome": "success" if result.success else result.kind,
                "products": len(result.data.products) if result.success else 0,
                "file_name": file_name,
                "latency_ms": latency_ms,
            }
        )

    def emit(self, event: dict[str, Any]) -> None:
        line = json.dumps(
            {"recorded_at_utc": datetime.now(timezone.utc).isoformat(), **event},
            ensure_ascii=True,
        )
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
