"""Billing error taxonomy.

Caller errors (NotFound, Forbidden, InvalidArgument, InvalidTransition) are
surfaced synchronously. GatewayError marks an external processor failure the
caller may retry. ConflictError is only raised inside webhook reconciliation
and is never surfaced to the gateway.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing errors."""

    code = "billing_error"


class NotFoundError(BillingError):
    """Charge, payment or conversation does not exist."""

    code = "not_found"


class ForbiddenError(BillingError):
    """Caller is not authorized for the target record."""

    code = "forbidden"


class InvalidArgumentError(BillingError):
    """Input failed validation (amount, split, payment payload)."""

    code = "invalid_argument"


class InvalidTransitionError(BillingError):
    """Requested status change is not allowed from the current status."""

    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"{entity} {entity_id} cannot move from '{current}' to '{target}'"
        )


class GatewayError(BillingError):
    """Payment gateway call failed."""

    code = "gateway_error"

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class ConflictError(BillingError):
    """Gateway notification contradicts a terminal internal state."""

    code = "conflict"
