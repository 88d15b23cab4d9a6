"""Billing facade - caller-facing operations over ledger and processor.

Routes call these; each opens its own short transactions.
"""

from __future__ import annotations

from typing import Any

from lexbill.config import BillingSettings
from lexbill.domain import charges, payments
from lexbill.domain.errors import ForbiddenError
from lexbill.domain.payment_methods import MethodPayload, parse_method, validate_method_payload
from lexbill.infra.db import txn
from lexbill.infra.gateway import PaymentGateway
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)

ROLE_ADMIN = "admin"


def _load_settled(charge_id: str) -> dict[str, Any]:
    """Read a charge in its own transaction so a lazy expiry is committed.

    A write that fails afterwards (e.g. accepting an expired charge) rolls
    back only its own transaction, not the expiry.
    """
    with txn() as cur:
        return charges.get_charge(cur, charge_id)


def accept_charge_and_create_payment(
    charge_id: str,
    client_id: str,
    payment_method: str,
    payload: MethodPayload | None,
    *,
    installments: int = 1,
    gateway: PaymentGateway,
    settings: BillingSettings,
    is_admin: bool = False,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Accept a pending charge and submit its payment.

    The accept commits on its own. If the gateway then fails, the charge
    stays accepted without a submitted payment and the error propagates;
    retry_payment_for_charge picks it up later.

    Returns:
        Dict with the accepted charge and the payment.

    Raises:
        NotFoundError: If the charge does not exist.
        ForbiddenError: If the caller is not the charge's client.
        InvalidTransitionError: If the charge is not pending (including a
            concurrent accept that won).
        InvalidArgumentError: If the payment method or payload is invalid.
        GatewayError: If the gateway call fails.
    """
    # Validate before the accept so a bad payload doesn't strand the charge
    method = parse_method(payment_method)
    validate_method_payload(method, payload, installments)

    charge = _load_settled(charge_id)
    if not is_admin and charge["client_id"] != client_id:
        raise ForbiddenError("only the charged client can accept this charge")

    with txn() as cur:
        charge = charges.transition(
            cur,
            charge_id,
            charges.ChargeStatus.ACCEPTED,
            expected=charges.ChargeStatus.PENDING,
            correlation_id=correlation_id,
        )

    payment = payments.create_payment(
        payments.CreatePaymentCommand(
            conversation_id=charge["conversation_id"],
            client_id=charge["client_id"],
            payment_method=method.value,
            payload=payload,
            description=charge["title"],
            installments=installments,
            charge_id=charge_id,
        ),
        gateway=gateway,
        settings=settings,
        correlation_id=correlation_id,
    )

    with txn() as cur:
        charge = charges.get_charge(cur, charge_id)

    logger.info(
        "charge accepted",
        extra={
            "extra_fields": safe_log_context(
                charge_id=charge_id,
                payment_id=payment["id"],
                payment_status=payment["status"],
            )
        },
    )
    return {"charge": charge, "payment": payment}


def can_view_charge(charge: dict[str, Any], user_id: str, role: str) -> bool:
    return role == ROLE_ADMIN or user_id in (charge["lawyer_id"], charge["client_id"])


def get_charge_by_id(charge_id: str, user_id: str, role: str) -> dict[str, Any]:
    """Get a charge visible to the caller.

    Raises:
        NotFoundError: If the charge does not exist.
        ForbiddenError: If the caller is neither party nor admin.
    """
    with txn() as cur:
        charge = charges.get_charge(cur, charge_id)
    if not can_view_charge(charge, user_id, role):
        raise ForbiddenError("not a participant of this charge")
    return charge


def list_charges_by_conversation(conversation_id: str, user_id: str, role: str) -> list[dict[str, Any]]:
    """Charges of a conversation; non-admins only see charges they are party to."""
    with txn() as cur:
        items = charges.list_charges(cur, conversation_id=conversation_id)
    return [c for c in items if can_view_charge(c, user_id, role)]


def list_charges_by_lawyer(lawyer_id: str) -> list[dict[str, Any]]:
    with txn() as cur:
        return charges.list_charges(cur, lawyer_id=lawyer_id)


def list_charges_by_client(client_id: str) -> list[dict[str, Any]]:
    with txn() as cur:
        return charges.list_charges(cur, client_id=client_id)


def get_billing_stats(lawyer_id: str | None = None) -> dict[str, Any]:
    """Charge totals for one lawyer, or for everyone when lawyer_id is None."""
    with txn() as cur:
        return charges.charge_stats(cur, lawyer_id=lawyer_id)


def get_client_stats(client_id: str) -> dict[str, Any]:
    with txn() as cur:
        return charges.charge_stats(cur, client_id=client_id)


def create_charge(
    cmd: charges.CreateChargeCommand,
    *,
    settings: BillingSettings,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    with txn() as cur:
        return charges.create_charge(cur, cmd, settings=settings, correlation_id=correlation_id)


def reject_charge(
    charge_id: str,
    user_id: str,
    role: str,
    reason: str | None = None,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    _load_settled(charge_id)
    with txn() as cur:
        return charges.reject_charge(
            cur,
            charge_id,
            user_id,
            reason,
            is_admin=role == ROLE_ADMIN,
            correlation_id=correlation_id,
        )


def cancel_charge(
    charge_id: str,
    user_id: str,
    role: str,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    _load_settled(charge_id)
    with txn() as cur:
        return charges.cancel_charge(
            cur,
            charge_id,
            user_id,
            is_admin=role == ROLE_ADMIN,
            correlation_id=correlation_id,
        )


def update_charge_status(
    charge_id: str,
    status: str,
    reason: str | None = None,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    _load_settled(charge_id)
    with txn() as cur:
        return charges.update_charge_status(
            cur, charge_id, status, reason, correlation_id=correlation_id
        )


def expire_charges(limit: int = 500) -> list[str]:
    with txn() as cur:
        return charges.expire_stale_charges(cur, limit=limit)
