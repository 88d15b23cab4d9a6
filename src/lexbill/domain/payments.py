"""Payment processor - payments against the configured gateway.

A payment attempt is committed before the gateway is called, so a gateway
failure still leaves a record. The idempotency key is deterministic per
charge attempt, so retries never double-charge. Once an attempt fails or is
cancelled, the next call for the charge opens a new attempt with a new key.

    pending    -> authorized | paid | failed | cancelled
    authorized -> paid | failed | cancelled
    paid       -> refunded
    refunded, failed, cancelled -> (terminal)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from lexbill.config import BillingSettings
from lexbill.domain import charges
from lexbill.domain.errors import (
    ForbiddenError,
    GatewayError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from lexbill.domain.payment_methods import (
    MethodPayload,
    PaymentMethod,
    parse_method,
    validate_method_payload,
)
from lexbill.domain.split import SplitConfig, build_split_rules
from lexbill.infra.db import txn
from lexbill.infra.gateway import GatewayPaymentRequest, GatewayPaymentResult, PaymentGateway
from lexbill.infra.repositories import (
    charges_repository,
    conversations_repository,
    payments_repository,
    transactions_repository,
)
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.AUTHORIZED, PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.AUTHORIZED: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

# Gateway status vocabulary (Pagar.me and Stripe) -> internal status
GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "processing": PaymentStatus.PENDING,
    "waiting_payment": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "paid": PaymentStatus.PAID,
    "succeeded": PaymentStatus.PAID,
    "captured": PaymentStatus.PAID,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.REFUNDED,
    "refused": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
    "chargedback": PaymentStatus.FAILED,
    "payment_failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "voided": PaymentStatus.CANCELLED,
}


def map_gateway_status(gateway_status: str | None) -> PaymentStatus:
    """Map a gateway status to an internal one. Unknown maps to pending."""
    if not gateway_status:
        return PaymentStatus.PENDING
    return GATEWAY_STATUS_MAP.get(gateway_status.strip().lower(), PaymentStatus.PENDING)


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def allowed_sources(target: PaymentStatus | str) -> list[str]:
    target = PaymentStatus(target)
    return sorted(s.value for s, targets in PAYMENT_TRANSITIONS.items() if target in targets)


def transition_payment(
    cur: PgCursor,
    payment_id: str,
    target: PaymentStatus | str,
    *,
    webhook_data: dict[str, Any] | None = None,
    refund_amount_cents: int | None = None,
    failure_reason: str | None = None,
) -> dict[str, Any]:
    """Move a payment to target status (compare-and-swap).

    Raises:
        NotFoundError: If the payment does not exist.
        InvalidTransitionError: If target is not reachable from the current status.
    """
    target = PaymentStatus(target)
    updated = payments_repository.compare_and_set_status(
        cur,
        payment_id=payment_id,
        from_statuses=allowed_sources(target),
        to_status=target.value,
        webhook_data=webhook_data,
        refund_amount_cents=refund_amount_cents,
        failure_reason=failure_reason,
    )
    if updated is None:
        current = payments_repository.get_payment(cur, payment_id)
        if current is None:
            raise NotFoundError(f"payment not found: {payment_id}")
        raise InvalidTransitionError("payment", payment_id, current["status"], target.value)
    return updated


# A charge whose latest attempt ended here may be paid again with a new attempt
RETRYABLE_STATUSES = frozenset({PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value})


def charge_idempotency_key(charge_id: str, attempt: int = 1) -> str:
    """Gateway idempotency key for the n-th payment attempt of a charge."""
    if attempt == 1:
        return f"charge:{charge_id}:payment"
    return f"charge:{charge_id}:payment:{attempt}"


def _charge_attempt_key(cur: PgCursor, charge_id: str) -> str:
    latest = payments_repository.get_payment_by_charge(cur, charge_id)
    if latest is None:
        return charge_idempotency_key(charge_id)
    if latest["status"] not in RETRYABLE_STATUSES:
        return latest["idempotency_key"]
    return charge_idempotency_key(
        charge_id, payments_repository.count_charge_attempts(cur, charge_id) + 1
    )


@dataclass(frozen=True)
class CreatePaymentCommand:
    """Input for create_payment.

    When charge_id is set, amount and split come from the charge and
    amount_cents is ignored.
    """

    conversation_id: str
    client_id: str
    payment_method: str
    payload: MethodPayload | None
    description: str
    installments: int = 1
    amount_cents: int | None = None
    charge_id: str | None = None


def _prepare_payment(
    cur: PgCursor,
    cmd: CreatePaymentCommand,
    method: PaymentMethod,
    settings: BillingSettings,
    provider: str,
) -> tuple[dict[str, Any], bool]:
    conversation = conversations_repository.find_by_room_id(cur, cmd.conversation_id)
    if conversation is None:
        raise InvalidArgumentError(f"conversation not found: {cmd.conversation_id}")
    classification = conversation.get("classification") or {}

    if cmd.charge_id:
        # Locked so concurrent retries agree on the attempt number
        charge = charges_repository.get_charge(cur, cmd.charge_id, for_update=True)
        if charge is None:
            raise NotFoundError(f"charge not found: {cmd.charge_id}")
        if charge["conversation_id"] != cmd.conversation_id:
            raise InvalidArgumentError("charge does not belong to this conversation")
        amount = charge["amount_cents"]
        lawyer_id = charge["lawyer_id"]
        split_config = SplitConfig(
            lawyer_percentage=charge["split_config"]["lawyer_percentage"],
            platform_percentage=charge["split_config"]["platform_percentage"],
        )
        idempotency_key = _charge_attempt_key(cur, cmd.charge_id)
    else:
        if not cmd.amount_cents or cmd.amount_cents < settings.min_charge_cents:
            raise InvalidArgumentError(f"amount must be at least {settings.min_charge_cents} cents")
        amount = cmd.amount_cents
        lawyer_id = conversations_repository.assigned_provider_id(conversation)
        if not lawyer_id:
            raise InvalidArgumentError("conversation has no assigned lawyer")
        split_config = SplitConfig(
            lawyer_percentage=settings.lawyer_percentage,
            platform_percentage=settings.platform_percentage,
        )
        idempotency_key = f"payment:{uuid.uuid4()}"

    split_rules = build_split_rules(
        amount,
        split_config,
        platform_recipient_id=settings.platform_recipient_id,
        lawyer_recipient_id=lawyer_id,
    )
    metadata = {
        "charge_id": cmd.charge_id,
        "case_category": classification.get("category"),
        "case_complexity": classification.get("complexity"),
        "platform_fee": split_config.apply(amount).platform_fee,
    }

    payment, created = payments_repository.insert_payment(
        cur,
        charge_id=cmd.charge_id,
        conversation_id=cmd.conversation_id,
        client_id=cmd.client_id,
        lawyer_id=lawyer_id,
        amount_cents=amount,
        currency=settings.currency,
        payment_method=method.value,
        installments=cmd.installments,
        description=cmd.description,
        provider=provider,
        idempotency_key=idempotency_key,
        split_rules=split_rules,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )
    if cmd.charge_id:
        charges_repository.attach_payment(cur, charge_id=cmd.charge_id, payment_id=payment["id"])
    return payment, created


def _record_gateway_success(
    cur: PgCursor,
    payment: dict[str, Any],
    result: GatewayPaymentResult,
    correlation_id: str | None,
) -> dict[str, Any]:
    payment_id = payment["id"]
    payments_repository.record_gateway_result(
        cur,
        payment_id=payment_id,
        external_id=result.external_id,
        transaction_id=result.transaction_id,
    )

    target = map_gateway_status(result.status)
    if target is not PaymentStatus.PENDING:
        try:
            transition_payment(cur, payment_id, target)
        except InvalidTransitionError:
            # A webhook got there first
            pass

    current = payments_repository.get_payment(cur, payment_id)

    transactions_repository.insert_transaction(
        cur,
        payment_id=payment_id,
        external_id=result.transaction_id or result.external_id,
        transaction_type="payment",
        status=transactions_repository.transaction_status_for(current["status"]),
        amount_cents=payment["amount_cents"],
        fee_cents=result.fee_cents,
        description=f"payment - {payment['description']}",
        metadata=dict(
            result.details,
            gateway_transaction_id=result.transaction_id,
            gateway_status=result.status,
        ),
    )

    if current["status"] == PaymentStatus.PAID.value and current["charge_id"]:
        try:
            charges.mark_paid(cur, current["charge_id"], correlation_id=correlation_id)
        except InvalidTransitionError as e:
            logger.error(
                "payment paid for a charge that cannot be settled",
                extra={
                    "extra_fields": safe_log_context(
                        payment_id=payment_id,
                        charge_id=current["charge_id"],
                        charge_status=e.current,
                    )
                },
            )

    return current


def create_payment(
    cmd: CreatePaymentCommand,
    *,
    gateway: PaymentGateway,
    settings: BillingSettings,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Create a payment and submit it to the gateway.

    Repeating the call for a charge whose live payment was already submitted
    returns that payment without contacting the gateway. A failed or
    cancelled attempt is replaced by a new one.

    Args:
        cmd: Payment command.
        gateway: Gateway client.
        settings: Billing settings.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The payment dict after the gateway response was recorded.

    Raises:
        InvalidArgumentError: On invalid method, payload or missing conversation.
        NotFoundError: If the referenced charge does not exist.
        GatewayError: If the gateway call fails (the attempt stays pending).
    """
    method = parse_method(cmd.payment_method)
    validate_method_payload(method, cmd.payload, cmd.installments)

    with txn() as cur:
        payment, created = _prepare_payment(cur, cmd, method, settings, gateway.name)

    if not created and (payment["external_id"] or payment["status"] != PaymentStatus.PENDING.value):
        logger.info(
            "payment reused",
            extra={"extra_fields": safe_log_context(payment_id=payment["id"], status=payment["status"])},
        )
        return payment

    request = GatewayPaymentRequest(
        amount_cents=payment["amount_cents"],
        currency=payment["currency"],
        payment_method=method,
        payload=cmd.payload,
        installments=cmd.installments,
        description=payment["description"],
        split_rules=payment["split_rules"],
        metadata={
            k: v
            for k, v in {
                "chargeId": cmd.charge_id,
                "conversationId": cmd.conversation_id,
                "paymentId": payment["id"],
            }.items()
            if v
        },
        idempotency_key=payment["idempotency_key"],
        customer_id=cmd.client_id,
    )

    try:
        result = gateway.create_payment(request)
    except GatewayError as e:
        logger.error(
            "gateway payment failed",
            extra={
                "extra_fields": safe_log_context(
                    payment_id=payment["id"],
                    gateway=gateway.name,
                    retryable=e.retryable,
                    status_code=e.status_code,
                )
            },
        )
        with txn() as cur:
            payments_repository.record_failure(cur, payment_id=payment["id"], reason=str(e))
        raise

    with txn() as cur:
        payment = _record_gateway_success(cur, payment, result, correlation_id)

    logger.info(
        "payment created",
        extra={
            "extra_fields": safe_log_context(
                payment_id=payment["id"],
                status=payment["status"],
                payment_method=method.value,
            )
        },
    )
    return payment


def retry_payment_for_charge(
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
    """Create (or re-submit) the payment of an accepted charge.

    Raises:
        NotFoundError: If the charge does not exist.
        ForbiddenError: If the caller is not the charge's client.
        InvalidArgumentError: If the charge is not accepted.
        GatewayError: If the gateway call fails.
    """
    with txn() as cur:
        charge = charges.get_charge(cur, charge_id)

    if not is_admin and charge["client_id"] != client_id:
        raise ForbiddenError("only the charged client can pay this charge")
    if charge["status"] != charges.ChargeStatus.ACCEPTED.value:
        raise InvalidArgumentError(
            f"charge must be accepted before payment (status: {charge['status']})"
        )

    return create_payment(
        CreatePaymentCommand(
            conversation_id=charge["conversation_id"],
            client_id=charge["client_id"],
            payment_method=payment_method,
            payload=payload,
            description=charge["title"],
            installments=installments,
            charge_id=charge_id,
        ),
        gateway=gateway,
        settings=settings,
        correlation_id=correlation_id,
    )


def refund_payment(
    payment_id: str,
    amount_cents: int | None = None,
    *,
    gateway: PaymentGateway,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Refund a paid payment, fully or partially.

    Raises:
        NotFoundError: If the payment does not exist.
        InvalidTransitionError: If the payment is not paid.
        InvalidArgumentError: If amount is outside (0, payment amount].
        GatewayError: If the gateway refund fails.
    """
    with txn() as cur:
        payment = payments_repository.get_payment(cur, payment_id)

    if payment is None:
        raise NotFoundError(f"payment not found: {payment_id}")
    if payment["status"] != PaymentStatus.PAID.value:
        raise InvalidTransitionError("payment", payment_id, payment["status"], PaymentStatus.REFUNDED.value)

    amount = payment["amount_cents"] if amount_cents is None else amount_cents
    if not 0 < amount <= payment["amount_cents"]:
        raise InvalidArgumentError("refund amount must be positive and at most the payment amount")
    if not payment["external_id"]:
        raise InvalidArgumentError("payment has no gateway reference")

    try:
        refund = gateway.refund(
            payment["external_id"],
            amount,
            idempotency_key=f"payment:{payment_id}:refund",
        )
    except GatewayError as e:
        logger.error(
            "gateway refund failed",
            extra={
                "extra_fields": safe_log_context(
                    payment_id=payment_id,
                    gateway=gateway.name,
                    retryable=e.retryable,
                )
            },
        )
        raise

    with txn() as cur:
        try:
            updated = transition_payment(
                cur,
                payment_id,
                PaymentStatus.REFUNDED,
                refund_amount_cents=amount,
            )
        except InvalidTransitionError as e:
            if e.current != PaymentStatus.REFUNDED.value:
                raise
            # The gateway's refund notification was applied while we waited
            updated = payments_repository.record_refund_amount(
                cur, payment_id=payment_id, refund_amount_cents=amount
            )
            logger.info(
                "refund already applied by webhook",
                extra={"extra_fields": safe_log_context(payment_id=payment_id)},
            )
        transactions_repository.insert_transaction(
            cur,
            payment_id=payment_id,
            external_id=refund.refund_id,
            transaction_type="refund",
            status="success",
            amount_cents=amount,
            fee_cents=0,
            description=f"refund - {payment['description']}",
            metadata={"gateway_status": refund.status},
        )

    logger.info(
        "payment refunded",
        extra={"extra_fields": safe_log_context(payment_id=payment_id, amount_cents=amount)},
    )
    return updated


def get_payment_by_id(cur: PgCursor, payment_id: str) -> dict[str, Any]:
    """Raises NotFoundError if the payment does not exist."""
    payment = payments_repository.get_payment(cur, payment_id)
    if payment is None:
        raise NotFoundError(f"payment not found: {payment_id}")
    return payment


def list_payments_by_conversation(cur: PgCursor, conversation_id: str) -> list[dict[str, Any]]:
    return payments_repository.list_payments(cur, conversation_id=conversation_id)


def list_payments_by_client(cur: PgCursor, client_id: str) -> list[dict[str, Any]]:
    return payments_repository.list_payments(cur, client_id=client_id)


def list_payments_by_lawyer(cur: PgCursor, lawyer_id: str) -> list[dict[str, Any]]:
    return payments_repository.list_payments(cur, lawyer_id=lawyer_id)
