from __future__ import annotations

import logging
from typing import Any, Literal

import requests

from invoice_ocr.cleaning import clean_invoice_payload
from invoice_ocr.config import Settings
from invoice_ocr.errors import INVALID_RESPONSE_MESSAGE, ExtractionError, rate_limit_message
from invoice_ocr.logger import preview
from schemas.invoice_schema import ErrorKind, InvoiceData

logger = logging.getLogger(__name__)

Step = Literal["ocr", "parse"]

_SERVICE_KIND: dict[Step, ErrorKind] = {
    "ocr": "ocr_service_error",
    "parse": "parse_service_error",
}
_INVALID_KIND: dict[Step, ErrorKind] = {
    "ocr": "invalid_ocr_response",
    "parse": "invalid_parse_response",
}


def _json_or_none(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class ProxyClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        token: str | None = None,
        timeout: float = 35.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProxyClient":
        return cls(
            settings.proxy_base_url,
            token=settings.proxy_api_key,
            timeout=settings.proxy_timeout_seconds,
        )

    def recognize_text(self, image_base64: str) -> str:
        response = self._post("/invoice-ocr", {"imageBase64": image_base64}, step="ocr")
        body = _json_or_none(response)
        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            logger.error(
                "OCR proxy returned an unexpected payload",
                extra={"status_code": response.status_code, "response_preview": preview(response.text)},
            )
            raise ExtractionError(INVALID_RESPONSE_MESSAGE, kind="invalid_ocr_response")
        return text

    def parse_text(self, ocr_text: str) -> InvoiceData:
        response = self._post("/invoice-parse", {"ocrText": ocr_text}, step="parse")
        body = _json_or_none(response)
        if not isinstance(body, dict) or not isinstance(body.get("products"), list):
            logger.error(
                "Parse proxy returned an unexpected payload",
                extra={"status_code": response.status_code, "response_preview": preview(response.text, 5000)},
            )
            raise ExtractionError(INVALID_RESPONSE_MESSAGE, kind="invalid_parse_response")
        return clean_invoice_payload(body)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _post(self, path: str, payload: dict[str, Any], *, step: Step) -> requests.Response:
        try:
            response = self._session.post(
                f"{self._base_url}{path}",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.Timeout as exc:
            raise ExtractionError(
                "The invoice service took too long to respond. Please try again.",
                kind="timeout",
            ) from exc
        except requests.RequestException as exc:
            logger.error("Could not reach %s: %s", path, exc)
            raise ExtractionError(
                "Network error: could not reach the invoice service. "
                "Please check your connection and try again.",
                kind="network_error",
            ) from exc

        if response.status_code >= 400:
            raise self._failure(response, step)
        return response

    def _failure(self, response: requests.Response, step: Step) -> ExtractionError:
        body = _json_or_none(response)
        code = body.get("code") if isinstance(body, dict) else None
        message = body.get("error") if isinstance(body, dict) else None
        if not isinstance(message, str) or not message.strip():
            message = None

        logger.error(
            "%s proxy failed with status %d",
            step,
            response.status_code,
            extra={"status_code": response.status_code, "response_preview": preview(response.text)},
        )

        if response.status_code == 504 or code == "timeout":
            return ExtractionError(
                message or "The invoice service timed out. Please try again.",
                kind="timeout",
            )
        if code == "invalid_response":
            return ExtractionError(INVALID_RESPONSE_MESSAGE, kind=_INVALID_KIND[step])
        if response.status_code == 429:
            return ExtractionError(
                rate_limit_message(response.headers.get("Retry-After")),
                kind=_SERVICE_KIND[step],
            )
        if response.status_code == 401:
            return ExtractionError(
                "Invoice service authentication failed. Please contact support.",
                kind=_SERVICE_KIND[step],
            )
        return ExtractionError(
            message or "Invoice service error. Please try again later.",
            kind=_SERVICE_KIND[step],
        )
