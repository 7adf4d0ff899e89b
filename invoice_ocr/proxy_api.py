from __future__ import annotations

import logging
import secrets
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from invoice_ocr.config import Settings
from invoice_ocr.errors import ExtractionError, UpstreamError
from invoice_ocr.file_validation import strip_data_uri_prefix
from invoice_ocr.logger import log_extraction_event
from invoice_ocr.metrics import MetricsCollector
from invoice_ocr.upstream_clients import (
    InvoiceParser,
    OcrEngine,
    RegexInvoiceParser,
    build_invoice_parser,
    build_ocr_engine,
)

logger = logging.getLogger(__name__)

CONFIG_ERROR_MESSAGE = "Server configuration error: API key not set"
BAD_REQUEST_MESSAGE = "Invalid request format. Please ensure you are using the latest app version."
INVALID_AI_RESPONSE_MESSAGE = (
    "The AI service returned an invalid response. This may indicate the invoice format is "
    "unsupported or the image quality is too low. Please try a clearer image or contact support."
)


class OcrRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_base64: str | None = Field(default=None, alias="imageBase64")


class ParseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ocr_text: str | None = Field(default=None, alias="ocrText")


def _error(
    status_code: int,
    message: str,
    code: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": code},
        headers=headers,
    )


def _upstream_error(exc: UpstreamError) -> JSONResponse:
    headers = {"Retry-After": exc.retry_after} if exc.retry_after else None
    return _error(exc.status_code, str(exc), exc.code, headers=headers)


def create_proxy_app(
    settings: Settings | None = None,
    *,
    ocr_engine: OcrEngine | None = None,
    invoice_parser: InvoiceParser | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    active = settings or Settings()
    engine = ocr_engine or build_ocr_engine(active)
    parser = invoice_parser or build_invoice_parser(active)
    collector = metrics or MetricsCollector()

    app = FastAPI(title="Invoice OCR Proxy", version="0.1.0")
    if active.allowed_origin == "*":
        logger.warning(
            "CORS configured to allow all origins (*). Set ALLOWED_ORIGIN in production."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[active.allowed_origin],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        _ = request
        logger.warning("Rejected malformed request body: %s", exc.errors())
        return _error(400, BAD_REQUEST_MESSAGE, "bad_request")

    def _denied(request: Request) -> JSONResponse | None:
        if not active.proxy_api_key:
            return None
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() == "bearer" and secrets.compare_digest(token.strip(), active.proxy_api_key):
            return None
        return _error(401, "Unauthorized", "unauthorized")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        return collector.snapshot()

    @app.post("/invoice-ocr")
    def invoice_ocr(body: OcrRequest, request: Request) -> Any:
        denied = _denied(request)
        if denied is not None:
            return denied
        collector.increment("ocr_requests_total")
        if engine is None:
            logger.error("Google Cloud Vision API key not configured")
            collector.increment("ocr_failed_total")
            return _error(500, CONFIG_ERROR_MESSAGE, "config_error")

        image_base64 = strip_data_uri_prefix(body.image_base64 or "")
        if not image_base64:
            collector.increment("ocr_failed_total")
            return _error(400, "Missing imageBase64 in request body", "bad_request")

        request_id = uuid4().hex
        log_extraction_event(
            logger,
            logging.INFO,
            "Starting OCR processing",
            request_id=request_id,
            stage="ocr",
            byte_length=len(image_base64),
        )
        started = time.perf_counter()
        try:
            text = engine.detect_document_text(image_base64)
        except UpstreamError as exc:
            collector.increment("ocr_failed_total")
            if exc.status_code == 429:
                collector.increment("rate_limited_total")
            log_extraction_event(
                logger,
                logging.ERROR,
                f"OCR failed: {exc}",
                request_id=request_id,
                stage="ocr",
                outcome=exc.code,
                status_code=exc.status_code,
            )
            return _upstream_error(exc)
        finally:
            collector.observe_latency(int((time.perf_counter() - started) * 1000))

        log_extraction_event(
            logger,
            logging.INFO,
            "OCR completed successfully",
            request_id=request_id,
            stage="ocr",
            outcome="success",
            byte_length=len(text),
        )
        return {"text": text}

    @app.post("/invoice-parse")
    def invoice_parse(body: ParseRequest, request: Request) -> Any:
        denied = _denied(request)
        if denied is not None:
            return denied
        collector.increment("parse_requests_total")
        if parser is None:
            logger.error("OpenAI API key not configured and regex fallback disabled")
            collector.increment("parse_failed_total")
            return _error(500, CONFIG_ERROR_MESSAGE, "config_error")

        ocr_text = body.ocr_text or ""
        if not ocr_text.strip():
            collector.increment("parse_failed_total")
            return _error(400, "Missing ocrText in request body", "bad_request")

        request_id = uuid4().hex
        if isinstance(parser, RegexInvoiceParser):
            collector.increment("parse_fallback_total")
        log_extraction_event(
            logger,
            logging.INFO,
            "Starting invoice parsing",
            request_id=request_id,
            stage="parse",
            byte_length=len(ocr_text),
        )
        started = time.perf_counter()
        try:
            data = parser.parse(ocr_text)
        except UpstreamError as exc:
            collector.increment("parse_failed_total")
            if exc.status_code == 429:
                collector.increment("rate_limited_total")
            log_extraction_event(
                logger,
                logging.ERROR,
                f"Parse failed: {exc}",
                request_id=request_id,
                stage="parse",
                outcome=exc.code,
                status_code=exc.status_code,
            )
            return _upstream_error(exc)
        except ExtractionError as exc:
            collector.increment("parse_failed_total")
            log_extraction_event(
                logger,
                logging.ERROR,
                f"Parse response rejected: {exc}",
                request_id=request_id,
                stage="parse",
                outcome=exc.kind,
            )
            return _error(502, INVALID_AI_RESPONSE_MESSAGE, "invalid_response")
        finally:
            collector.observe_latency(int((time.perf_counter() - started) * 1000))

        log_extraction_event(
            logger,
            logging.INFO,
            f"Invoice parsing completed with {len(data.products)} products",
            request_id=request_id,
            stage="parse",
            outcome="success",
        )
        return data.to_wire()

    return app
