from __future__ import annotations

from schemas.invoice_schema import ErrorKind


class ExtractionError(RuntimeError):
    def __init__(self, message: str, kind: ErrorKind = "unexpected_error") -> None:
        super().__init__(message)
        self.kind: ErrorKind = kind


class UpstreamError(RuntimeError):
    """Failure reported by (or while reaching) Google Vision or OpenAI."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 502,
        code: str = "upstream_error",
        retry_after: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after


INVALID_RESPONSE_MESSAGE = (
    "Received an unexpected response from the invoice service. "
    "Please update the app or contact support."
)


def rate_limit_message(retry_after: str | None) -> str:
    value = (retry_after or "").strip()
    if value.isdigit():
        return f"API rate limit exceeded. Please try again in {value} seconds."
    if value:
        # Retry-After may also carry an HTTP date
        return f"API rate limit exceeded. Please try again after {value}."
    return "API rate limit exceeded. Please try again in a few minutes."
