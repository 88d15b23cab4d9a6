"""Correlation IDs tie a request, its gateway calls and its log lines together.

The ID lives in a ContextVar, so it follows the request across awaits and is
stamped on every log record and outbox event written while it is set.
"""

import re
import uuid
from contextvars import ContextVar, Token

CORRELATION_ID_HEADER = "X-Correlation-ID"

MAX_CORRELATION_ID_LENGTH = 128

# Letters, digits and ._:- only; anything else gets a fresh ID
_VALID_CORRELATION_ID = re.compile(r"[A-Za-z0-9._:\-]+")

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def correlation_id_from_header(value: str | None) -> str:
    """Return the inbound header value if it is safe to echo, else a new ID."""
    if (
        value
        and len(value) <= MAX_CORRELATION_ID_LENGTH
        and _VALID_CORRELATION_ID.fullmatch(value)
    ):
        return value
    return generate_correlation_id()


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)
