"""Payments endpoints.

POST /payments/create               -> (re)submit payment of an accepted charge (client, admin)
GET  /payments/conversation/{id}    -> list by conversation
GET  /payments/client               -> list own payments (client)
GET  /payments/lawyer               -> list own payments (lawyer)
GET  /payments/{payment_id}         -> detail (participants, admin)
POST /payments/{payment_id}/refund  -> refund (admin)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, ConfigDict, Field

from lexbill.api.auth import CurrentUser
from lexbill.api.deps import gateway_dep, settings_dep
from lexbill.api.errors import to_http_exception
from lexbill.api.rbac import require_role
from lexbill.api.routes.billing import BoletoData, CardData, PixData
from lexbill.config import BillingSettings
from lexbill.domain import payments
from lexbill.domain.errors import BillingError
from lexbill.domain.payment_methods import parse_method, payload_from_dict
from lexbill.infra.db import txn
from lexbill.infra.gateway import PaymentGateway
from lexbill.observability.correlation import get_correlation_id
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    charge_id: str
    payment_method: str
    installments: int = 1
    card_data: CardData | None = None
    pix_data: PixData | None = None
    boleto_data: BoletoData | None = None


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: int | None = Field(default=None, gt=0, description="Amount in cents; defaults to full amount")


def _can_view_payment(payment: dict, user: CurrentUser) -> bool:
    return user.is_admin or user.id in (payment["client_id"], payment["lawyer_id"])


@router.post("/create", status_code=201)
def create_payment(
    body: CreatePaymentRequest,
    user: CurrentUser = Depends(require_role("client", "admin")),
    settings: BillingSettings = Depends(settings_dep),
    gateway: PaymentGateway = Depends(gateway_dep),
) -> dict:
    """Submit (or resubmit) the payment of an accepted charge.

    Safe to repeat: the charge's idempotency key is reused.
    """
    sections = {
        "credit_card": body.card_data,
        "debit_card": body.card_data,
        "pix": body.pix_data,
        "boleto": body.boleto_data,
    }
    try:
        method = parse_method(body.payment_method)
        section = sections[method.value]
        return payments.retry_payment_for_charge(
            body.charge_id,
            user.id,
            method.value,
            payload_from_dict(method, section.model_dump() if section else None),
            installments=body.installments,
            gateway=gateway,
            settings=settings,
            is_admin=user.is_admin,
            correlation_id=get_correlation_id(),
        )
    except BillingError as e:
        raise to_http_exception(e)


@router.get("/conversation/{conversation_id}")
def list_by_conversation(
    conversation_id: str = Path(..., description="Conversation room ID"),
    user: CurrentUser = Depends(require_role("client", "lawyer", "admin")),
) -> list[dict]:
    with txn() as cur:
        items = payments.list_payments_by_conversation(cur, conversation_id)
    return [p for p in items if _can_view_payment(p, user)]


@router.get("/client")
def list_for_client(
    client_id: str | None = Query(None, description="Admin only: client to list"),
    user: CurrentUser = Depends(require_role("client", "admin")),
) -> list[dict]:
    target = client_id if user.is_admin and client_id else user.id
    with txn() as cur:
        return payments.list_payments_by_client(cur, target)


@router.get("/lawyer")
def list_for_lawyer(
    lawyer_id: str | None = Query(None, description="Admin only: lawyer to list"),
    user: CurrentUser = Depends(require_role("lawyer", "admin")),
) -> list[dict]:
    target = lawyer_id if user.is_admin and lawyer_id else user.id
    with txn() as cur:
        return payments.list_payments_by_lawyer(cur, target)


@router.get("/{payment_id}")
def get_payment(
    payment_id: str = Path(..., description="Payment UUID"),
    user: CurrentUser = Depends(require_role("client", "lawyer", "admin")),
) -> dict:
    try:
        with txn() as cur:
            payment = payments.get_payment_by_id(cur, payment_id)
    except BillingError as e:
        raise to_http_exception(e)

    if not _can_view_payment(payment, user):
        raise HTTPException(status_code=403, detail="Not a participant of this payment")
    return payment


@router.post("/{payment_id}/refund")
def refund_payment(
    body: RefundRequest | None = None,
    payment_id: str = Path(..., description="Payment UUID"),
    user: CurrentUser = Depends(require_role("admin")),
    gateway: PaymentGateway = Depends(gateway_dep),
) -> dict:
    correlation_id = get_correlation_id()
    try:
        payment = payments.refund_payment(
            payment_id,
            body.amount if body else None,
            gateway=gateway,
            correlation_id=correlation_id,
        )
    except BillingError as e:
        raise to_http_exception(e)

    logger.info(
        "refund issued",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                payment_id=payment_id,
                admin_id=user.id,
            )
        },
    )
    return payment
