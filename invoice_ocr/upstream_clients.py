from __future__ import annotations

import logging
from typing import Any, Protocol

import openai
import requests

from invoice_ocr.cleaning import clean_invoice_payload, parse_invoice_json
from invoice_ocr.config import Settings
from invoice_ocr.errors import UpstreamError, rate_limit_message
from invoice_ocr.fallback_parser import basic_parse_invoice
from invoice_ocr.logger import preview
from invoice_ocr.prompts import (
    PARSE_MAX_TOKENS,
    PARSE_TEMPERATURE,
    PROMPT_VERSION,
    SYSTEM_PROMPT,
    build_parse_prompt,
)
from schemas.invoice_schema import InvoiceData

logger = logging.getLogger(__name__)

VISION_ENDPOINT = "https://vision.googleapis.com/v1/images:annotate"

AUTH_FAILED_MESSAGE = "API authentication failed. Please contact support."
NO_TEXT_MESSAGE = "No text detected in the image. Please ensure the invoice is clear and readable."


class OcrEngine(Protocol):
    def detect_document_text(self, image_base64: str) -> str:
        """Return the full text detected in a base64 encoded image."""


class InvoiceParser(Protocol):
    def parse(self, ocr_text: str) -> InvoiceData:
        """Return cleaned invoice data for raw OCR text."""


def _error_message(response: requests.Response, fallback: str) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return fallback


class GoogleVisionClient:
    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._session = session or requests.Session()

    def detect_document_text(self, image_base64: str) -> str:
        try:
            response = self._session.post(
                VISION_ENDPOINT,
                params={"key": self._api_key},
                json={
                    "requests": [
                        {
                            "image": {"content": image_base64},
                            "features": [{"type": "DOCUMENT_TEXT_DETECTION", "maxResults": 1}],
                        }
                    ]
                },
                timeout=self._timeout,
            )
        except requests.Timeout as exc:
            raise UpstreamError(
                "OCR service timeout. Please try again.",
                status_code=504,
                code="timeout",
            ) from exc
        except requests.ConnectionError as exc:
            raise UpstreamError(
                "Network error: Unable to reach the OCR service. Please try again.",
                status_code=503,
                code="upstream_unavailable",
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "Google Cloud Vision API error status=%d",
                response.status_code,
                extra={"status_code": response.status_code, "response_preview": preview(response.text)},
            )
            if response.status_code in {401, 403}:
                raise UpstreamError(AUTH_FAILED_MESSAGE, status_code=500, code="upstream_auth")
            if response.status_code == 429:
                raise UpstreamError(
                    "Service quota exceeded. Please try again later.",
                    status_code=429,
                    code="rate_limited",
                    retry_after=response.headers.get("Retry-After"),
                )
            raise UpstreamError(
                _error_message(response, f"Google Cloud Vision API error: {response.reason}"),
                status_code=response.status_code,
                code="upstream_error",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "OCR service returned an invalid response",
                status_code=502,
                code="invalid_response",
            ) from exc

        responses = payload.get("responses") if isinstance(payload, dict) else None
        first = responses[0] if isinstance(responses, list) and responses else {}
        if not isinstance(first, dict):
            first = {}
        error = first.get("error")
        if isinstance(error, dict) and error.get("message"):
            raise UpstreamError(str(error["message"]), status_code=502, code="upstream_error")

        text: Any = None
        annotations = first.get("textAnnotations")
        if isinstance(annotations, list) and annotations and isinstance(annotations[0], dict):
            text = annotations[0].get("description")
        if not text:
            full = first.get("fullTextAnnotation")
            if isinstance(full, dict):
                text = full.get("text")
        if not isinstance(text, str) or not text.strip():
            logger.warning("No text detected in image")
            raise UpstreamError(NO_TEXT_MESSAGE, status_code=422, code="no_text")
        return text


class OpenAIInvoiceParser:
    def __init__(
        self,
        api_key: str,
        *,
        model_name: str = "gpt-4o-mini",
        timeout: float = 30.0,
        client: Any | None = None,
    ) -> None:
        self._model_name = model_name
        self._client = client or openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def parse(self, ocr_text: str) -> InvoiceData:
        logger.info(
            "Parsing OCR text with model=%s prompt=%s length=%d",
            self._model_name,
            PROMPT_VERSION,
            len(ocr_text),
        )
        try:
            response = self._client.chat.completions.create(
                model=self._model_name,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_parse_prompt(ocr_text)},
                ],
                temperature=PARSE_TEMPERATURE,
                max_tokens=PARSE_MAX_TOKENS,
            )
        except openai.APITimeoutError as exc:
            raise UpstreamError(
                "AI parsing service timeout. The invoice text may be too long or the service is slow. "
                "Please try again.",
                status_code=504,
                code="timeout",
            ) from exc
        except openai.APIConnectionError as exc:
            raise UpstreamError(
                "Network error: Unable to reach OpenAI API. Please try again.",
                status_code=503,
                code="upstream_unavailable",
            ) from exc
        except openai.AuthenticationError as exc:
            logger.error("OpenAI authentication failed: %s", exc)
            raise UpstreamError(AUTH_FAILED_MESSAGE, status_code=500, code="upstream_auth") from exc
        except openai.RateLimitError as exc:
            retry_after = exc.response.headers.get("Retry-After")
            logger.warning("Rate limit hit for OpenAI API retry_after=%s", retry_after)
            raise UpstreamError(
                rate_limit_message(retry_after),
                status_code=429,
                code="rate_limited",
                retry_after=retry_after,
            ) from exc
        except openai.APIStatusError as exc:
            logger.error("OpenAI API error status=%d: %s", exc.status_code, exc.message)
            raise UpstreamError(
                exc.message or f"OpenAI API error: {exc.status_code}",
                status_code=exc.status_code,
                code="upstream_error",
            ) from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise UpstreamError(
                "The AI service returned an empty response. The invoice text may be unreadable "
                "or the service is experiencing issues.",
                status_code=502,
                code="empty_response",
            )
        return clean_invoice_payload(parse_invoice_json(content))


class RegexInvoiceParser:
    def parse(self, ocr_text: str) -> InvoiceData:
        logger.warning("OpenAI API key not configured. Using basic parsing (less accurate).")
        return basic_parse_invoice(ocr_text)


def build_ocr_engine(settings: Settings) -> OcrEngine | None:
    if not settings.google_vision_api_key:
        return None
    return GoogleVisionClient(
        settings.google_vision_api_key,
        timeout=settings.upstream_timeout_seconds,
    )


def build_invoice_parser(settings: Settings) -> InvoiceParser | None:
    if settings.openai_api_key:
        return OpenAIInvoiceParser(
            settings.openai_api_key,
            model_name=settings.openai_model,
            timeout=settings.upstream_timeout_seconds,
        )
    if settings.parse_fallback_enabled:
        return RegexInvoiceParser()
    return None
