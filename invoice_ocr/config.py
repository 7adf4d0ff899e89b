from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return value


@dataclass(frozen=True)
class Settings:
    google_vision_api_key: str | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    parse_fallback_enabled: bool = False
    proxy_api_key: str | None = None
    allowed_origin: str = "*"
    upstream_timeout_seconds: float = 30.0
    proxy_base_url: str = "http://localhost:8000"
    proxy_timeout_seconds: float = 35.0
    allowed_mime_types: tuple[str, ...] = (
        "image/jpeg",
        "image/jpg",
        "image/png",
    )
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        mime_env = os.getenv("ALLOWED_MIME_TYPES", "image/jpeg,image/jpg,image/png")
        allowed_mimes = tuple(v.strip().lower() for v in mime_env.split(",") if v.strip())
        if not allowed_mimes:
            raise ValueError("ALLOWED_MIME_TYPES must contain at least one mime type")
        if "application/pdf" in allowed_mimes:
            raise ValueError("ALLOWED_MIME_TYPES must not include application/pdf")

        max_upload_raw = os.getenv("MAX_UPLOAD_BYTES", str(MAX_UPLOAD_BYTES))
        try:
            max_upload = int(max_upload_raw)
        except ValueError as exc:
            raise ValueError("MAX_UPLOAD_BYTES must be an integer") from exc
        if max_upload <= 0:
            raise ValueError("MAX_UPLOAD_BYTES must be greater than zero")

        proxy_base_url = os.getenv("PROXY_BASE_URL", "http://localhost:8000").strip().rstrip("/")
        if not proxy_base_url.startswith(("http://", "https://")):
            raise ValueError("PROXY_BASE_URL must start with http:// or https://")

        return cls(
            google_vision_api_key=_optional("GOOGLE_CLOUD_VISION_API_KEY"),
            openai_api_key=_optional("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            parse_fallback_enabled=_parse_bool(os.getenv("PARSE_FALLBACK_ENABLED")),
            proxy_api_key=_optional("PROXY_API_KEY"),
            allowed_origin=os.getenv("ALLOWED_ORIGIN", "*").strip() or "*",
            upstream_timeout_seconds=_positive_float("UPSTREAM_TIMEOUT_SECONDS", 30.0),
            proxy_base_url=proxy_base_url,
            proxy_timeout_seconds=_positive_float("PROXY_TIMEOUT_SECONDS", 35.0),
            allowed_mime_types=allowed_mimes,
            max_upload_bytes=max_upload,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def _dotenv_value(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    # unquoted values may carry a trailing "# comment"
    return value.split(" #", 1)[0].rstrip()


def load_dotenv(path: str | Path = ".env") -> list[str]:
    """Copy KEY=VALUE pairs into os.environ without overriding. Returns the keys set."""
    env_path = Path(path)
    if not env_path.exists():
        return []
    loaded: list[str] = []
    for line in env_path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if entry.startswith("export "):
            entry = entry[len("export ") :].lstrip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        key, raw = entry.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        os.environ[key] = _dotenv_value(raw)
        loaded.append(key)
    return loaded
