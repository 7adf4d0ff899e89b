from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from invoice_ocr.config import MAX_UPLOAD_BYTES
from invoice_ocr.errors import ExtractionError

ACCEPTED_MIME_TYPES: tuple[str, ...] = ("image/jpeg", "image/jpg", "image/png")

_DATA_URI_PREFIX = re.compile(r"^data:[^;,]*(?:;[^,]*)?,")
_BASE64_DATA_URI = re.compile(rb"data:[\w.+-]+/[\w.+-]+;base64,(?P<payload>[A-Za-z0-9+/]+={0,2})\s*")


@dataclass(frozen=True)
class UploadedFile:
    name: str
    content_type: str
    size: int
    reader: Callable[[], bytes] = field(repr=False, compare=False)

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "UploadedFile":
        p = Path(path)
        guessed = content_type or mimetypes.guess_type(p.name)[0] or "application/octet-stream"
        size = p.stat().st_size if p.exists() else 0
        return cls(name=p.name, content_type=guessed, size=size, reader=p.read_bytes)

    @classmethod
    def from_bytes(cls, name: str, content_type: str, data: bytes) -> "UploadedFile":
        return cls(name=name, content_type=content_type, size=len(data), reader=lambda: data)

    def read_base64(self) -> str:
        try:
            data = self.reader()
        except OSError as exc:
            raise ExtractionError(
                "Could not read the selected file. Please try again.",
                kind="file_read_error",
            ) from exc
        if not data:
            raise ExtractionError(
                "The selected file is empty or may be corrupted. Please choose another file.",
                kind="file_read_error",
            )
        embedded = _embedded_base64(data)
        if embedded is not None:
            return embedded
        return base64.b64encode(data).decode("ascii")


def _embedded_base64(data: bytes) -> str | None:
    """Payload of a base64 data URI, or None when the bytes are not one."""
    match = _BASE64_DATA_URI.fullmatch(data)
    if match is None:
        return None
    payload = match.group("payload")
    try:
        base64.b64decode(payload, validate=True)
    except binascii.Error:
        return None
    return payload.decode("ascii")


def strip_data_uri_prefix(value: str) -> str:
    return _DATA_URI_PREFIX.sub("", value.strip(), count=1)


def validate_upload(
    upload: UploadedFile,
    *,
    allowed_mime_types: tuple[str, ...] = ACCEPTED_MIME_TYPES,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> None:
    content_type = (upload.content_type or "").strip().lower()
    if content_type == "application/pdf":
        raise ExtractionError(
            "PDF files are not supported. Please upload a JPG or PNG image of the invoice.",
            kind="invalid_file_type",
        )
    if content_type not in allowed_mime_types:
        raise ExtractionError(
            "Invalid file type. Please upload a JPG or PNG image.",
            kind="invalid_file_type",
        )
    if upload.size > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise ExtractionError(
            f"File size exceeds {limit_mb}MB limit. Please upload a smaller file.",
            kind="file_too_large",
        )
