from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from invoice_ocr.errors import ExtractionError
from invoice_ocr.logger import preview
from schemas.invoice_schema import InvoiceData, InvoiceProduct

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?\n?", re.IGNORECASE)
_RAW_LOG_LIMIT = 5000

BARCODE_CLASSES: dict[int, str] = {
    13: "EAN-13",
    12: "UPC-A",
    8: "EAN-8",
    6: "UPC-E",
}


def strip_code_fences(content: str) -> str:
    return _CODE_FENCE.sub("", content).strip()


def parse_invoice_json(content: str) -> dict[str, Any]:
    text = strip_code_fences(content or "")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error(
            "Parse response is not valid JSON: %s (length=%d)",
            exc,
            len(text),
            extra={"response_preview": preview(text, _RAW_LOG_LIMIT)},
        )
        raise ExtractionError(
            "Parse response is not valid JSON",
            kind="invalid_parse_response",
        ) from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("products"), list):
        logger.error(
            "Parse response JSON is missing a products array",
            extra={"response_preview": preview(text, _RAW_LOG_LIMIT)},
        )
        raise ExtractionError(
            "Parse response JSON is missing a products array",
            kind="invalid_parse_response",
        )
    return payload


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return default


_NUMBER_TOKEN = re.compile(
    r"^(?:[€$£]|[A-Za-z]{3})?\s*(?P<number>-?\d+(?:[.,]\d+)*)\s*(?:[€$£%]|[A-Za-z]{1,5}\.?)?$"
)


def _normalise_separators(token: str) -> str | None:
    """Resolve decimal and grouping separators. The last separator is the decimal one."""
    sign, digits = ("-", token[1:]) if token.startswith("-") else ("", token)
    last = max(digits.rfind(","), digits.rfind("."))
    if last == -1:
        return sign + digits
    decimal_sep = digits[last]
    if digits.count(decimal_sep) > 1:
        # "1.234.567" repeats one separator, so it only groups thousands
        integer, fraction, group_sep = digits, "", decimal_sep
    else:
        integer, fraction = digits[:last], digits[last + 1 :]
        group_sep = "," if decimal_sep == "." else "."
    groups = integer.split(group_sep)
    if len(groups) > 1 and (len(groups[0]) > 3 or any(len(g) != 3 for g in groups[1:])):
        return None
    number = sign + "".join(groups)
    return f"{number}.{fraction}" if fraction else number


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        return None
    match = _NUMBER_TOKEN.match(value.strip())
    if match is None:
        return None
    text = _normalise_separators(match.group("number"))
    if text is None:
        return None
    number = float(text)
    return number if math.isfinite(number) else None


def clean_quantity(value: Any) -> int:
    number = to_number(value)
    if number is None or number <= 0:
        return 1
    return max(int(math.floor(number + 0.5)), 1)


def clean_price(value: Any) -> float:
    number = to_number(value)
    if number is None or number < 0:
        return 0.0
    return number


def _optional_amount(value: Any) -> float | None:
    number = to_number(value)
    if number is None or number <= 0:
        return None
    return number


def _optional_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value == 0:
            return None
        value = str(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def classify_barcode(barcode: str | None) -> str | None:
    if not barcode:
        return None
    digits = re.sub(r"\s", "", barcode)
    if not digits.isdigit():
        return None
    return BARCODE_CLASSES.get(len(digits))


def clean_product(raw: Any) -> InvoiceProduct | None:
    if not isinstance(raw, dict):
        return None
    name = _optional_text(raw.get("name"))
    if name is None:
        return None
    return InvoiceProduct(
        name=name,
        quantity=clean_quantity(_pick(raw, "quantity", "qty")),
        unit_price=clean_price(_pick(raw, "unitPrice", "unit_price", "price")),
        total_price=clean_price(_pick(raw, "totalPrice", "total_price", "total")),
        barcode=_optional_text(raw.get("barcode")),
    )


def clean_invoice_payload(raw: dict[str, Any]) -> InvoiceData:
    rows = raw.get("products")
    if not isinstance(rows, list):
        rows = []

    products: list[InvoiceProduct] = []
    dropped = 0
    for row in rows:
        product = clean_product(row)
        if product is None:
            dropped += 1
            continue
        products.append(product)
    if dropped:
        logger.debug("Dropped %d product rows without a usable name", dropped)

    return InvoiceData(
        products=products,
        supplier=_optional_text(_pick(raw, "supplier")),
        invoice_date=_optional_text(_pick(raw, "invoiceDate", "invoice_date")),
        invoice_number=_optional_text(_pick(raw, "invoiceNumber", "invoice_number")),
        total_amount=_optional_amount(_pick(raw, "totalAmount", "total_amount")),
    )
