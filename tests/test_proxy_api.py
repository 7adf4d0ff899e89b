from __future__ import annotations

from fastapi.testclient import TestClient

from invoice_ocr.cleaning import clean_invoice_payload
from invoice_ocr.config import Settings
from invoice_ocr.errors import ExtractionError, UpstreamError, rate_limit_message
from invoice_ocr.extraction import extract_invoice_data
from invoice_ocr.file_validation import UploadedFile
from invoice_ocr.proxy_api import create_proxy_app
from invoice_ocr.proxy_client import ProxyClient
from schemas.invoice_schema import InvoiceData

OCR_TEXT = "ACME CORP\nMilk 2 1.50 3.00\nBread 1 2.00 2.00"


class _FakeEngine:
    def __init__(self, text: str = OCR_TEXT, error: Exception | None = None) -> None:
        self._text = text
        self._error = error
        self.calls: list[str] = []

    def detect_document_text(self, image_base64: str) -> str:
        self.calls.append(image_base64)
        if self._error is not None:
            raise self._error
        return self._text


class _FakeParser:
    def __init__(self, payload: dict | None = None, error: Exception | None = None) -> None:
        self._payload = payload or {
            "supplier": "ACME CORP",
            "products": [
                {"name": "Milk", "quantity": 2, "unitPrice": 1.5, "totalPrice": 3.0},
                {"name": "Bread", "quantity": 1, "unitPrice": 2.0, "totalPrice": 2.0},
            ],
        }
        self._error = error
        self.calls: list[str] = []

    def parse(self, ocr_text: str) -> InvoiceData:
        self.calls.append(ocr_text)
        if self._error is not None:
            raise self._error
        return clean_invoice_payload(self._payload)


def _client(settings: Settings | None = None, **kwargs: object) -> TestClient:
    return TestClient(create_proxy_app(settings or Settings(), **kwargs))


def test_health_endpoint() -> None:
    response = _client().get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ocr_returns_text_and_strips_data_uri_prefix() -> None:
    engine = _FakeEngine()
    client = _client(ocr_engine=engine)

    response = client.post("/invoice-ocr", json={"imageBase64": "data:image/png;base64,QUJD"})

    assert response.status_code == 200
    assert response.json() == {"text": OCR_TEXT}
    assert engine.calls == ["QUJD"]


def test_ocr_requires_image() -> None:
    response = _client(ocr_engine=_FakeEngine()).post("/invoice-ocr", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing imageBase64 in request body", "code": "bad_request"}


def test_malformed_body_is_a_bad_request() -> None:
    response = _client(ocr_engine=_FakeEngine()).post(
        "/invoice-ocr",
        content="not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "bad_request"


def test_ocr_without_api_key_is_a_configuration_error() -> None:
    response = _client().post("/invoice-ocr", json={"imageBase64": "QUJD"})
    assert response.status_code == 500
    assert response.json() == {"error": "Server configuration error: API key not set", "code": "config_error"}


def test_ocr_no_text_is_surfaced() -> None:
    engine = _FakeEngine(error=UpstreamError("No text detected in the image.", status_code=422, code="no_text"))
    response = _client(ocr_engine=engine).post("/invoice-ocr", json={"imageBase64": "QUJD"})
    assert response.status_code == 422
    assert response.json()["code"] == "no_text"


def test_parse_returns_cleaned_invoice_data() -> None:
    parser = _FakeParser()
    response = _client(invoice_parser=parser).post("/invoice-parse", json={"ocrText": OCR_TEXT})

    assert response.status_code == 200
    body = response.json()
    assert body["supplier"] == "ACME CORP"
    assert body["products"][0] == {"name": "Milk", "quantity": 2, "unitPrice": 1.5, "totalPrice": 3.0}
    assert "invoiceNumber" not in body
    assert parser.calls == [OCR_TEXT]


def test_parse_requires_ocr_text() -> None:
    response = _client(invoice_parser=_FakeParser()).post("/invoice-parse", json={"ocrText": "  "})
    assert response.status_code == 400
    assert response.json()["error"] == "Missing ocrText in request body"


def test_parse_rate_limit_echoes_retry_after() -> None:
    parser = _FakeParser(
        error=UpstreamError(rate_limit_message("30"), status_code=429, code="rate_limited", retry_after="30")
    )
    client = _client(invoice_parser=parser)

    response = client.post("/invoice-parse", json={"ocrText": OCR_TEXT})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert "30 seconds" in response.json()["error"]
    stats = client.get("/stats").json()
    assert stats["rate_limited_total"] == 1
    assert stats["parse_failed_total"] == 1


def test_parse_invalid_model_output_is_reported_as_invalid_response() -> None:
    parser = _FakeParser(error=ExtractionError("Parse response is not valid JSON", kind="invalid_parse_response"))
    response = _client(invoice_parser=parser).post("/invoice-parse", json={"ocrText": OCR_TEXT})
    assert response.status_code == 502
    assert response.json()["code"] == "invalid_response"
    assert "not valid JSON" not in response.json()["error"]


def test_parse_fails_closed_without_llm_or_fallback() -> None:
    response = _client().post("/invoice-parse", json={"ocrText": OCR_TEXT})
    assert response.status_code == 500
    assert response.json()["code"] == "config_error"


def test_parse_uses_regex_fallback_when_enabled() -> None:
    client = _client(Settings(parse_fallback_enabled=True))

    response = client.post("/invoice-parse", json={"ocrText": OCR_TEXT})

    assert response.status_code == 200
    assert [p["name"] for p in response.json()["products"]] == ["Milk", "Bread"]
    assert "supplier" not in response.json()
    assert client.get("/stats").json()["parse_fallback_total"] == 1


def test_client_token_is_enforced_when_configured() -> None:
    client = _client(Settings(proxy_api_key="secret"), ocr_engine=_FakeEngine())

    denied = client.post("/invoice-ocr", json={"imageBase64": "QUJD"})
    wrong = client.post("/invoice-ocr", json={"imageBase64": "QUJD"}, headers={"Authorization": "Bearer nope"})
    allowed = client.post("/invoice-ocr", json={"imageBase64": "QUJD"}, headers={"Authorization": "Bearer secret"})

    assert denied.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 200


def test_cors_preflight_allows_post_from_configured_origin() -> None:
    client = _client(Settings(allowed_origin="https://shop.example.com"), ocr_engine=_FakeEngine())
    response = client.options(
        "/invoice-ocr",
        headers={
            "Origin": "https://shop.example.com",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://shop.example.com"


def test_orchestrator_end_to_end_through_proxy_service() -> None:
    engine = _FakeEngine()
    http = _client(Settings(proxy_api_key="secret"), ocr_engine=engine, invoice_parser=_FakeParser())
    client = ProxyClient("http://testserver", token="secret", session=http)
    upload = UploadedFile.from_bytes("invoice.jpg", "image/jpeg", b"jpeg bytes")
    progress: list[int] = []

    result = extract_invoice_data(upload, progress.append, client=client)

    assert result.success is True
    assert [p.name for p in result.data.products] == ["Milk", "Bread"]
    assert result.ocr_text == OCR_TEXT
    assert progress[-1] == 100
    assert len(engine.calls) == 1
