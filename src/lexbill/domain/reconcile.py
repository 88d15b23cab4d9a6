"""Webhook reconciler - applies gateway notifications to payments and charges.

Flow per notification:
1. Record (provider, event_id) in webhook_events in its own transaction.
   A repeat is a duplicate and has no further effect.
2. Resolve charge (metadata chargeId) and payment (charge.payment_id, else
   gateway object id). Unresolvable notifications mutate nothing.
3. Move the payment, then the charge, with compare-and-swap transitions.
4. Write the outcome back to the receipt row.

Gateways only ever see success once step 1 has committed; conflicts are
logged for operators instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from lexbill.domain import charges
from lexbill.domain.errors import ConflictError, InvalidTransitionError
from lexbill.domain.payments import (
    PaymentStatus,
    can_transition,
    map_gateway_status,
    transition_payment,
)
from lexbill.infra.db import txn
from lexbill.infra.repositories import (
    charges_repository,
    payments_repository,
    transactions_repository,
    webhook_events_repository,
)
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

# Events whose type alone fixes the target status
EVENT_TARGETS: dict[str, PaymentStatus] = {
    "charge.succeeded": PaymentStatus.PAID,
    "charge.paid": PaymentStatus.PAID,
    "order.paid": PaymentStatus.PAID,
    "payment_intent.succeeded": PaymentStatus.PAID,
    "charge.failed": PaymentStatus.FAILED,
    "charge.payment_failed": PaymentStatus.FAILED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
    "charge.refunded": PaymentStatus.REFUNDED,
}

# Events whose target comes from the carried gateway status
STATUS_EVENTS = {"payment.created", "payment.updated"}

SUPPORTED_EVENTS = frozenset(EVENT_TARGETS) | STATUS_EVENTS

# Lifecycle position; an older status arriving after a newer one is stale
_PROGRESS = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.AUTHORIZED: 1,
    PaymentStatus.PAID: 2,
    PaymentStatus.REFUNDED: 3,
}


@dataclass(frozen=True)
class GatewayNotification:
    """Provider-neutral view of a gateway webhook."""

    provider: str
    event_id: str
    event_type: str
    external_object_id: str | None = None
    status: str | None = None
    amount: int | None = None
    payment_method: str | None = None
    charge_id: str | None = None
    conversation_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    outcome: str
    detail: str | None = None
    payment_id: str | None = None
    charge_id: str | None = None


def target_status(notification: GatewayNotification) -> PaymentStatus:
    """Internal status a notification asks for."""
    if notification.event_type in EVENT_TARGETS:
        return EVENT_TARGETS[notification.event_type]
    return map_gateway_status(notification.status)


def _is_stale(current: PaymentStatus, target: PaymentStatus) -> bool:
    if current not in _PROGRESS or target not in _PROGRESS:
        return False
    return _PROGRESS[target] < _PROGRESS[current] or (
        current is PaymentStatus.REFUNDED and target is PaymentStatus.PAID
    )


def _reconcile_payment(
    cur: PgCursor,
    payment: dict[str, Any],
    target: PaymentStatus,
    notification: GatewayNotification,
) -> tuple[dict[str, Any], bool]:
    """Move payment toward target.

    Returns:
        Tuple of (payment dict, changed flag).

    Raises:
        ConflictError: If the notification contradicts a terminal status.
    """
    # One retry covers a concurrent writer changing status under us
    for _ in range(2):
        current = PaymentStatus(payment["status"])

        if current is target:
            return payment, False
        if _is_stale(current, target):
            return payment, False
        if not can_transition(current, target):
            raise ConflictError(
                f"payment {payment['id']} is '{current.value}', notification says '{target.value}'"
            )

        try:
            updated = transition_payment(
                cur,
                payment["id"],
                target,
                webhook_data=notification.raw,
            )
        except InvalidTransitionError:
            payment = payments_repository.get_payment(cur, payment["id"])
            continue

        transactions_repository.append_webhook_event(
            cur,
            payment_id=updated["id"],
            event=notification.event_type,
            data=notification.raw,
            status=transactions_repository.transaction_status_for(target.value),
        )
        return updated, True

    raise ConflictError(f"payment {payment['id']} changed concurrently")


def _reconcile_charge(
    cur: PgCursor,
    charge: dict[str, Any],
    payment_status: PaymentStatus,
    correlation_id: str | None,
) -> bool:
    """Mirror the payment outcome onto the charge.

    Returns:
        True if the charge changed.

    Raises:
        ConflictError: If a paid payment belongs to a charge that cannot be paid.
    """
    if payment_status is PaymentStatus.PAID:
        try:
            _, changed = charges.mark_paid(cur, charge["id"], correlation_id=correlation_id)
        except InvalidTransitionError as e:
            raise ConflictError(f"charge {charge['id']} is '{e.current}', payment is paid") from e
        return changed

    if payment_status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        # Charge stays accepted so the client can retry
        logger.warning(
            "payment for charge did not complete",
            extra={
                "extra_fields": safe_log_context(
                    charge_id=charge["id"],
                    payment_status=payment_status.value,
                )
            },
        )
    return False


def _apply(
    cur: PgCursor,
    notification: GatewayNotification,
    correlation_id: str | None,
) -> ReconcileResult:
    if notification.event_type not in SUPPORTED_EVENTS:
        return ReconcileResult(outcome="ignored", detail=f"unsupported event {notification.event_type}")

    charge = None
    if notification.charge_id:
        charge = charges_repository.get_charge(cur, notification.charge_id)

    payment = None
    if charge is not None and charge["payment_id"]:
        payment = payments_repository.get_payment(cur, charge["payment_id"])
    if payment is None and notification.external_object_id:
        payment = payments_repository.get_payment_by_external_id(
            cur,
            provider=notification.provider,
            external_id=notification.external_object_id,
        )
    if charge is None and payment is not None and payment["charge_id"]:
        charge = charges_repository.get_charge(cur, payment["charge_id"])

    if charge is None and payment is None:
        return ReconcileResult(outcome="unresolved", detail="no matching charge or payment")

    target = target_status(notification)
    result = ReconcileResult(
        outcome="ignored",
        payment_id=payment["id"] if payment else None,
        charge_id=charge["id"] if charge else None,
    )
    changed = False

    if payment is not None:
        try:
            payment, payment_changed = _reconcile_payment(cur, payment, target, notification)
        except ConflictError as e:
            result.outcome, result.detail = "conflict", str(e)
            return result
        changed = changed or payment_changed
        effective = PaymentStatus(payment["status"])
    else:
        effective = target

    if charge is not None:
        try:
            changed = _reconcile_charge(cur, charge, effective, correlation_id) or changed
        except ConflictError as e:
            result.outcome, result.detail = "conflict", str(e)
            return result

    if changed:
        result.outcome = "applied"
    else:
        result.detail = f"no change for target {target.value}"
    return result


def reconcile_notification(
    notification: GatewayNotification,
    *,
    correlation_id: str | None = None,
) -> ReconcileResult:
    """Record and apply a gateway notification.

    Never raises for business outcomes; the caller acknowledges the gateway
    whenever this returns.

    Raises:
        psycopg2.Error: Only if the receipt itself cannot be stored.
    """
    with txn() as cur:
        first_receipt = webhook_events_repository.record_receipt(
            cur,
            provider=notification.provider,
            event_id=notification.event_id,
            event_type=notification.event_type,
            external_object_id=notification.external_object_id,
            charge_id=notification.charge_id,
            payload=notification.raw,
        )

    log_context = {
        "provider": notification.provider,
        "event_id_prefix": id_prefix(notification.event_id),
        "event_type": notification.event_type,
    }

    if not first_receipt:
        logger.info(
            "duplicate webhook ignored",
            extra={"extra_fields": safe_log_context(**log_context)},
        )
        return ReconcileResult(outcome="duplicate")

    try:
        with txn() as cur:
            result = _apply(cur, notification, correlation_id)
            webhook_events_repository.set_outcome(
                cur,
                provider=notification.provider,
                event_id=notification.event_id,
                outcome=result.outcome,
                detail=result.detail,
            )
    except Exception as e:
        logger.exception(
            "webhook reconciliation failed",
            extra={"extra_fields": safe_log_context(**log_context)},
        )
        with txn() as cur:
            webhook_events_repository.set_outcome(
                cur,
                provider=notification.provider,
                event_id=notification.event_id,
                outcome="error",
                detail=type(e).__name__,
            )
        return ReconcileResult(outcome="error", detail=type(e).__name__)

    if result.outcome == "conflict":
        logger.error(
            "webhook contradicts terminal state",
            extra={
                "extra_fields": safe_log_context(
                    detail=result.detail,
                    payment_id=result.payment_id,
                    charge_id=result.charge_id,
                    **log_context,
                )
            },
        )
    elif result.outcome in ("unresolved", "ignored"):
        logger.info(
            "webhook not applied",
            extra={"extra_fields": safe_log_context(outcome=result.outcome, detail=result.detail, **log_context)},
        )
    else:
        logger.info(
            "webhook applied",
            extra={
                "extra_fields": safe_log_context(
                    payment_id=result.payment_id,
                    charge_id=result.charge_id,
                    **log_context,
                )
            },
        )
    return result
