"""
Parley - Text helpers shared by adapters, the orchestrator and the tracer.
"""

import re
from typing import Any, Iterable, Optional

_SECRET_ASSIGNMENT = re.compile(
    r"(api[_-]?key|key|token|secret|password|bearer)\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_BEARER_HEADER = re.compile(r"(bearer)\s+\S+", re.IGNORECASE)
_LONG_OPAQUE = re.compile(r"[A-Za-z0-9+/_\-]{40,}={0,2}")


def sanitize_utf8(value: str) -> str:
    """Drop anything that would not survive a UTF-8 round trip (lone surrogates)."""
    return value.encode("utf-8", errors="ignore").decode("utf-8", errors="ignore")


def sanitize_payload(data: Any) -> Any:
    """Recursively apply :func:`sanitize_utf8` to every string in *data*."""
    if isinstance(data, str):
        return sanitize_utf8(data)
    if isinstance(data, dict):
        return {sanitize_payload(k): sanitize_payload(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [sanitize_payload(item) for item in data]
    return data


def strip_secrets(text: str, secrets: Optional[Iterable[Optional[str]]] = None) -> str:
    """Remove anything that looks like a secret from *text*.

    Literal values listed in *secrets* (typically the configured API key or
    access token) are masked first, then common ``key=value`` and bearer
    patterns, then long opaque tokens.
    """
    cleaned = text
    for secret in secrets or ():
        if secret and len(secret) >= 4:
            cleaned = cleaned.replace(secret, "[REDACTED]")
    cleaned = _SECRET_ASSIGNMENT.sub(r"\1=[REDACTED]", cleaned)
    cleaned = _BEARER_HEADER.sub(r"\1 [REDACTED]", cleaned)
    cleaned = _LONG_OPAQUE.sub("[REDACTED]", cleaned)
    return cleaned


def preview(value: Any, length: int = 100) -> Optional[str]:
    """Short human-readable preview of a tool result."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    if len(text) <= length:
        return text
    return text[:length] + "..."
