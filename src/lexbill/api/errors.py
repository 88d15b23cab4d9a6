"""Translate billing errors into HTTP errors."""

from __future__ import annotations

from fastapi import HTTPException

from lexbill.domain.errors import (
    BillingError,
    ConflictError,
    ForbiddenError,
    GatewayError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)

_STATUS_CODES: dict[type[BillingError], int] = {
    NotFoundError: 404,
    ForbiddenError: 403,
    InvalidArgumentError: 400,
    InvalidTransitionError: 409,
    ConflictError: 409,
    GatewayError: 502,
}


def to_http_exception(error: BillingError) -> HTTPException:
    """Map a billing error to an HTTPException with code and message."""
    status_code = 500
    for error_type, code in _STATUS_CODES.items():
        if isinstance(error, error_type):
            status_code = code
            break

    detail = {"code": error.code, "message": str(error)}
    if isinstance(error, GatewayError):
        detail["retryable"] = error.retryable
    return HTTPException(status_code=status_code, detail=detail)
