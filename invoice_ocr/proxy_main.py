from __future__ import annotations

import uvicorn
from fastapi import FastAPI

from invoice_ocr.config import Settings, load_dotenv
from invoice_ocr.logger import configure_logging
from invoice_ocr.proxy_api import create_proxy_app


def build_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return create_proxy_app(settings)


def main(host: str = "0.0.0.0", port: int = 8000) -> None:
    uvicorn.run("invoice_ocr.proxy_main:build_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
