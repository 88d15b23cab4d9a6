"""Redaction helpers for safe logging. All external data must pass through these."""

import re
from typing import Any

# Order matters: card numbers before phones, both are long digit runs
_CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){13,19}\b")
_CPF_PATTERN = re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"


def redact_string(value: str) -> str:
    """Redact card numbers, CPFs, phones and e-mails from a string."""
    result = _CARD_PATTERN.sub(_REDACTED, value)
    result = _CPF_PATTERN.sub(_REDACTED, result)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # Structure only, never values
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}


def id_prefix(value: str | None, length: int = 8) -> str:
    """Shorten an external identifier for log lines."""
    if not value:
        return ""
    return value[:length] if len(value) >= length else value
