from __future__ import annotations

from urllib.parse import urlparse

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "apikey",
    "x-auth-token",
    "proxy-authorization",
}

PREVIEW_LENGTH = 20


def preview(value: str | None, length: int = PREVIEW_LENGTH) -> str:
    """Return a log-safe prefix of a secret value."""
    if not value:
        return ""
    if len(value) <= length:
        return value[: max(1, length // 4)] + "…"
    return value[:length] + "…"


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for k, v in headers.items():
        if k.lower() in SENSITIVE_HEADERS:
            redacted[k] = "***REDACTED***"
        else:
            redacted[k] = v
    return redacted


def url_host(url: str) -> str:
    return (urlparse(url).hostname or "").lower()
