from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path

from invoice_ocr.config import Settings, load_dotenv
from invoice_ocr.extraction import extract_invoice_data
from invoice_ocr.file_validation import UploadedFile
from invoice_ocr.logger import configure_logging
from invoice_ocr.metrics import JsonlMetricsSink
from invoice_ocr.proxy_client import ProxyClient
from invoice_ocr.proxy_main import main as serve_proxy
from schemas.invoice_schema import ExtractionResult


def _render(result: ExtractionResult) -> str:
    return json.dumps(result.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2)


def run_extract(
    path: str,
    *,
    proxy_url: str | None = None,
    token: str | None = None,
    metrics_path: str | None = None,
) -> int:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    client = ProxyClient(
        proxy_url or settings.proxy_base_url,
        token=token or settings.proxy_api_key,
        timeout=settings.proxy_timeout_seconds,
    )
    upload = UploadedFile.from_path(Path(path))
    started = time.perf_counter()
    result = extract_invoice_data(
        upload,
        lambda progress: logger.info("Extraction progress %d%%", progress),
        client=client,
        settings=settings,
    )

    if metrics_path:
        JsonlMetricsSink(metrics_path).record_extraction(
            result,
            file_name=upload.name,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )

    print(_render(result))
    return 0 if result.success else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Invoice OCR import")
    subparsers = parser.add_subparsers(dest="command", required=True)

    extract = subparsers.add_parser("extract", help="Extract line items from an invoice image")
    extract.add_argument("path")
    extract.add_argument("--proxy-url", default=None)
    extract.add_argument("--token", default=None)
    extract.add_argument("--metrics-path", default=None)

    serve = subparsers.add_parser("serve", help="Run the OCR/parse proxy service")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "extract":
        return run_extract(
            args.path,
            proxy_url=args.proxy_url,
            token=args.token,
            metrics_path=args.metrics_path,
        )
    if args.command == "serve":
        serve_proxy(host=args.host, port=args.port)
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
