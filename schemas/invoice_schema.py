from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

ErrorKind = Literal[
    "invalid_file_type",
    "file_too_large",
    "file_read_error",
    "network_error",
    "timeout",
    "ocr_service_error",
    "parse_service_error",
    "invalid_ocr_response",
    "invalid_parse_response",
    "no_products_extracted",
    "cancelled",
    "unexpected_error",
]


class InvoiceProduct(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(default=0.0, ge=0, allow_inf_nan=False, alias="unitPrice")
    total_price: float = Field(default=0.0, ge=0, allow_inf_nan=False, alias="totalPrice")
    barcode: str | None = None


class InvoiceData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    products: list[InvoiceProduct] = Field(default_factory=list)
    supplier: str | None = None
    invoice_date: str | None = Field(default=None, alias="invoiceDate")
    invoice_number: str | None = Field(default=None, alias="invoiceNumber")
    total_amount: float | None = Field(default=None, ge=0, allow_inf_nan=False, alias="totalAmount")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExtractionSuccess(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: Literal[True] = True
    data: InvoiceData
    ocr_text: str | None = Field(default=None, alias="ocrText")


class ExtractionFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: Literal[False] = False
    error: str
    kind: ErrorKind
    ocr_text: str | None = Field(default=None, alias="ocrText")


ExtractionResult = Union[ExtractionSuccess, ExtractionFailure]
