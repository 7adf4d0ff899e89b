from __future__ import annotations

import re

from schemas.invoice_schema import InvoiceData, InvoiceProduct

# "<name> <qty> <unit_price> <total_price>", prices with two decimals and "." or ","
_PRODUCT_LINE = re.compile(
    r"^(?P<name>.+?)\s+(?P<qty>\d+)\s+(?P<unit>\d+[.,]\d{2})\s+(?P<total>\d+[.,]\d{2})$"
)


def _decimal(value: str) -> float:
    return float(value.replace(",", "."))


def basic_parse_invoice(ocr_text: str) -> InvoiceData:
    products: list[InvoiceProduct] = []
    for line in ocr_text.splitlines():
        compact = line.strip()
        if not compact:
            continue
        match = _PRODUCT_LINE.match(compact)
        if not match:
            continue
        name = match.group("name").strip()
        if not name:
            continue
        products.append(
            InvoiceProduct(
                name=name,
                quantity=max(int(match.group("qty")), 1),
                unit_price=_decimal(match.group("unit")),
                total_price=_decimal(match.group("total")),
            )
        )
    return InvoiceData(products=products)
