from __future__ import annotations

PROMPT_VERSION = "2024-11-invoice-v1"

SYSTEM_PROMPT = (
    "You are a precise invoice data extraction assistant. "
    "Always return valid JSON only, no markdown or explanations."
)

PARSE_TEMPERATURE = 0
PARSE_MAX_TOKENS = 2000

_PARSE_PROMPT_TEMPLATE = """You are an invoice data extraction assistant. Extract the following information from this invoice OCR text:

1. Supplier name (if present)
2. Invoice number (if present)
3. Invoice date (if present, in YYYY-MM-DD format)
4. All products/line items with:
   - Product name
   - Quantity (as a number)
   - Unit price (as a number, in euros)
   - Total price (as a number, in euros)
   - Barcode (if present, usually 8-13 digits)

Return ONLY valid JSON in this exact format (no markdown, no explanation):
{{
  "supplier": "string or null",
  "invoiceNumber": "string or null",
  "invoiceDate": "YYYY-MM-DD or null",
  "totalAmount": number or null,
  "products": [
    {{
      "name": "string",
      "quantity": number,
      "unitPrice": number,
      "totalPrice": number,
      "barcode": "string or null"
    }}
  ]
}}

Important:
- Product name is REQUIRED (skip rows without a product name)
- If quantity is missing, use 1
- If prices are missing, use 0
- Extract all line items, not just the first few
- Remove any VAT/tax line items
- Barcodes are usually EAN-13 (13 digits) or UPC (12 digits)

Invoice OCR Text:
{ocr_text}"""


def build_parse_prompt(ocr_text: str) -> str:
    return _PARSE_PROMPT_TEMPLATE.format(ocr_text=ocr_text)
