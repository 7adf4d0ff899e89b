from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_EXTRA_FIELDS = (
    "request_id",
    "stage",
    "state",
    "latency_ms",
    "outcome",
    "kind",
    "file_name",
    "file_size",
    "content_type",
    "byte_length",
    "status_code",
    "response_preview",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field_name in _EXTRA_FIELDS:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    if root.handlers:
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)


def preview(text: str | bytes | None, limit: int = 200) -> str:
    if text is None:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if len(text) <= limit:
        return text
    return text[:limit] + "... (truncated)"


def log_extraction_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    request_id: str,
    stage: str | None = None,
    state: str | None = None,
    latency_ms: int | None = None,
    outcome: str | None = None,
    **fields: Any,
) -> None:
    extra: dict[str, Any] = {"request_id": request_id}
    if stage is not None:
        extra["stage"] = stage
    if state is not None:
        extra["state"] = state
    if latency_ms is not None:
        extra["latency_ms"] = latency_ms
    if outcome is not None:
        extra["outcome"] = outcome
    for key, value in fields.items():
        if key in _EXTRA_FIELDS and value is not None:
            extra[key] = value
    logger.log(level, message, extra=extra)
