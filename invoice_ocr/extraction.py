from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Protocol
from uuid import uuid4

from invoice_ocr.config import Settings
from invoice_ocr.errors import ExtractionError
from invoice_ocr.file_validation import UploadedFile, validate_upload
from invoice_ocr.logger import log_extraction_event
from invoice_ocr.proxy_client import ProxyClient
from invoice_ocr.state_machine import (
    FAILURE,
    IDLE,
    OCR_IN_FLIGHT,
    PARSING_IN_FLIGHT,
    SUCCESS,
    VALIDATING,
    VALIDATING_RESULT,
    can_transition,
    transition_state,
)
from schemas.invoice_schema import (
    ErrorKind,
    ExtractionFailure,
    ExtractionResult,
    ExtractionSuccess,
    InvoiceData,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

NO_PRODUCTS_MESSAGE = (
    "No products found in the invoice. Please ensure the invoice is clear "
    "and contains product line items."
)
UNEXPECTED_MESSAGE = "Failed to extract invoice data"


class InvoiceProxy(Protocol):
    def recognize_text(self, image_base64: str) -> str:
        """Return OCR text for a base64 encoded image."""

    def parse_text(self, ocr_text: str) -> InvoiceData:
        """Return cleaned invoice data for OCR text."""


class ExtractionObserver(Protocol):
    def record(self, event: str, *, request_id: str, **fields: Any) -> None:
        """Receive one pipeline event."""


class LoggingObserver:
    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or logger

    def record(self, event: str, *, request_id: str, **fields: Any) -> None:
        outcome = fields.get("outcome")
        level = logging.INFO if outcome in (None, "success") else logging.WARNING
        log_extraction_event(self._logger, level, event, request_id=request_id, **fields)


def _notify_progress(callback: ProgressCallback | None, progress: int, request_id: str) -> None:
    if callback is None:
        return
    try:
        callback(progress)
    except Exception:  # noqa: BLE001
        logger.exception(
            "Progress callback failed at %d%%",
            progress,
            extra={"request_id": request_id},
        )


def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ExtractionError("Invoice extraction was cancelled.", kind="cancelled")


def extract_invoice_data(
    upload: UploadedFile,
    on_progress: ProgressCallback | None = None,
    *,
    client: InvoiceProxy | None = None,
    observer: ExtractionObserver | None = None,
    cancel_event: threading.Event | None = None,
    settings: Settings | None = None,
) -> ExtractionResult:
    active_settings = settings or Settings()
    active_client = client or ProxyClient.from_settings(active_settings)
    watcher = observer or LoggingObserver()
    request_id = uuid4().hex
    started = time.perf_counter()
    state = IDLE
    ocr_text: str | None = None

    def emit(event: str, **fields: Any) -> None:
        try:
            watcher.record(event, **fields)
        except Exception:  # noqa: BLE001
            logger.exception("Extraction observer failed on %s", event, extra={"request_id": request_id})

    def elapsed_ms() -> int:
        return int((time.perf_counter() - started) * 1000)

    def advance(to_state: str) -> None:
        nonlocal state
        state = transition_state(state, to_state)
        emit("state_changed", request_id=request_id, state=state)

    def fail(message: str, kind: ErrorKind) -> ExtractionFailure:
        nonlocal state
        if can_transition(state, FAILURE):
            state = FAILURE
        emit(
            f"Invoice extraction failed: {message}",
            request_id=request_id,
            state=state,
            outcome="failure",
            kind=kind,
            latency_ms=elapsed_ms(),
        )
        return ExtractionFailure(error=message, kind=kind, ocr_text=ocr_text)

    try:
        advance(VALIDATING)
        emit(
            "Invoice extraction started",
            request_id=request_id,
            stage="validate",
            file_name=upload.name,
            file_size=upload.size,
            content_type=upload.content_type,
        )
        validate_upload(
            upload,
            allowed_mime_types=active_settings.allowed_mime_types,
            max_bytes=active_settings.max_upload_bytes,
        )
        _notify_progress(on_progress, 10, request_id)

        _raise_if_cancelled(cancel_event)
        _notify_progress(on_progress, 20, request_id)
        image_base64 = upload.read_base64()
        emit(
            "File encoded",
            request_id=request_id,
            stage="encode",
            byte_length=len(image_base64),
        )
        _notify_progress(on_progress, 40, request_id)

        _raise_if_cancelled(cancel_event)
        advance(OCR_IN_FLIGHT)
        ocr_text = active_client.recognize_text(image_base64)
        emit(
            "OCR completed",
            request_id=request_id,
            stage="ocr",
            byte_length=len(ocr_text),
            latency_ms=elapsed_ms(),
        )
        _notify_progress(on_progress, 70, request_id)

        _raise_if_cancelled(cancel_event)
        advance(PARSING_IN_FLIGHT)
        data = active_client.parse_text(ocr_text)
        _notify_progress(on_progress, 90, request_id)

        advance(VALIDATING_RESULT)
        if not data.products:
            raise ExtractionError(NO_PRODUCTS_MESSAGE, kind="no_products_extracted")

        advance(SUCCESS)
        emit(
            f"Invoice extraction succeeded with {len(data.products)} products",
            request_id=request_id,
            state=state,
            outcome="success",
            latency_ms=elapsed_ms(),
        )
        _notify_progress(on_progress, 100, request_id)
        return ExtractionSuccess(data=data, ocr_text=ocr_text)
    except ExtractionError as exc:
        return fail(str(exc), exc.kind)
    except Exception:  # noqa: BLE001
        logger.exception("Invoice extraction error", extra={"request_id": request_id})
        return fail(UNEXPECTED_MESSAGE, "unexpected_error")
