"""Billing endpoints - charge lifecycle for lawyers and clients.

POST   /billing/create-charge               -> create  (lawyer, admin)
POST   /billing/accept-charge/{charge_id}   -> accept + pay (client, admin)
POST   /billing/reject-charge/{charge_id}   -> reject  (client, admin)
PUT    /billing/charge/{charge_id}/status   -> status override (admin)
DELETE /billing/charge/{charge_id}          -> cancel  (lawyer, admin)
GET    /billing/conversation/{id}           -> list by conversation
GET    /billing/lawyer, /billing/client     -> list own charges
GET    /billing/charge/{charge_id}          -> detail (participants, admin)
GET    /billing/stats, /billing/client-stats
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, ConfigDict, Field

from lexbill.api.auth import CurrentUser
from lexbill.api.deps import gateway_dep, settings_dep
from lexbill.api.errors import to_http_exception
from lexbill.api.rbac import require_role
from lexbill.config import BillingSettings
from lexbill.domain import billing
from lexbill.domain.charges import CreateChargeCommand
from lexbill.domain.errors import BillingError
from lexbill.domain.payment_methods import parse_method, payload_from_dict
from lexbill.infra.gateway import PaymentGateway
from lexbill.observability.correlation import get_correlation_id
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ── Schemas ───────────────────────────────────────────────────────────────────


class ChargeMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    case_category: str | None = None
    case_complexity: str | None = None
    estimated_hours: float | None = Field(default=None, ge=0)
    urgency: Literal["low", "medium", "high", "urgent"] | None = None


class CreateChargeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str
    amount: int = Field(..., description="Amount in cents")
    type: str
    title: str
    description: str
    reason: str
    lawyer_percentage: float | None = None
    platform_percentage: float | None = None
    metadata: ChargeMetadata | None = None


class CardData(BaseModel):
    card_token: str
    card_holder_name: str | None = None


class PixData(BaseModel):
    expires_in: int | None = None


class BoletoData(BaseModel):
    expires_in: int | None = None
    instructions: str | None = None


class AcceptChargeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_method: str
    installments: int = 1
    card_data: CardData | None = None
    pix_data: PixData | None = None
    boleto_data: BoletoData | None = None

    def method_section(self) -> dict[str, Any] | None:
        section = {
            "credit_card": self.card_data,
            "debit_card": self.card_data,
            "pix": self.pix_data,
            "boleto": self.boleto_data,
        }.get(self.payment_method)
        return section.model_dump() if section is not None else None


class RejectChargeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = None


class UpdateStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str
    reason: str | None = None


# ── Write endpoints ───────────────────────────────────────────────────────────


@router.post("/create-charge", status_code=201)
def create_charge(
    body: CreateChargeRequest,
    user: CurrentUser = Depends(require_role("lawyer", "admin")),
    settings: BillingSettings = Depends(settings_dep),
) -> dict:
    """Create a pending charge in a conversation assigned to the caller."""
    cmd = CreateChargeCommand(
        conversation_id=body.conversation_id,
        lawyer_id=user.id,
        amount_cents=body.amount,
        charge_type=body.type,
        title=body.title,
        description=body.description,
        reason=body.reason,
        lawyer_percentage=body.lawyer_percentage,
        platform_percentage=body.platform_percentage,
        metadata=body.metadata.model_dump(exclude_none=True) if body.metadata else {},
    )
    try:
        return billing.create_charge(cmd, settings=settings, correlation_id=get_correlation_id())
    except BillingError as e:
        raise to_http_exception(e)


@router.post("/accept-charge/{charge_id}")
def accept_charge(
    body: AcceptChargeRequest,
    charge_id: str = Path(..., description="Charge UUID"),
    user: CurrentUser = Depends(require_role("client", "admin")),
    settings: BillingSettings = Depends(settings_dep),
    gateway: PaymentGateway = Depends(gateway_dep),
) -> dict:
    """Accept a pending charge and submit its payment.

    Returns {"charge": ..., "payment": ...}. A 502 means the charge is
    accepted but the payment must be retried via POST /payments/create.
    """
    correlation_id = get_correlation_id()
    try:
        method = parse_method(body.payment_method)
        return billing.accept_charge_and_create_payment(
            charge_id,
            user.id,
            method.value,
            payload_from_dict(method, body.method_section()),
            installments=body.installments,
            gateway=gateway,
            settings=settings,
            is_admin=user.is_admin,
            correlation_id=correlation_id,
        )
    except BillingError as e:
        logger.warning(
            "accept charge failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    charge_id=charge_id,
                    error_code=e.code,
                )
            },
        )
        raise to_http_exception(e)


@router.post("/reject-charge/{charge_id}")
def reject_charge(
    body: RejectChargeRequest | None = None,
    charge_id: str = Path(..., description="Charge UUID"),
    user: CurrentUser = Depends(require_role("client", "admin")),
) -> dict:
    reason = body.reason if body else None
    try:
        return billing.reject_charge(
            charge_id, user.id, user.role, reason, correlation_id=get_correlation_id()
        )
    except BillingError as e:
        raise to_http_exception(e)


@router.put("/charge/{charge_id}/status")
def update_charge_status(
    body: UpdateStatusRequest,
    charge_id: str = Path(..., description="Charge UUID"),
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    """Administrative status change, still bound by the transition table."""
    try:
        charge = billing.update_charge_status(
            charge_id, body.status, body.reason, correlation_id=get_correlation_id()
        )
    except BillingError as e:
        raise to_http_exception(e)

    logger.info(
        "charge status overridden",
        extra={
            "extra_fields": safe_log_context(
                charge_id=charge_id,
                status=body.status,
                admin_id=user.id,
            )
        },
    )
    return charge


@router.delete("/charge/{charge_id}")
def cancel_charge(
    charge_id: str = Path(..., description="Charge UUID"),
    user: CurrentUser = Depends(require_role("lawyer", "admin")),
) -> dict:
    """Cancel a charge. Charges are never deleted; the record stays as cancelled."""
    try:
        return billing.cancel_charge(charge_id, user.id, user.role, correlation_id=get_correlation_id())
    except BillingError as e:
        raise to_http_exception(e)


# ── Read endpoints ────────────────────────────────────────────────────────────


@router.get("/conversation/{conversation_id}")
def list_by_conversation(
    conversation_id: str = Path(..., description="Conversation room ID"),
    user: CurrentUser = Depends(require_role("client", "lawyer", "admin")),
) -> list[dict]:
    return billing.list_charges_by_conversation(conversation_id, user.id, user.role)


@router.get("/lawyer")
def list_for_lawyer(
    lawyer_id: str | None = Query(None, description="Admin only: lawyer to list"),
    user: CurrentUser = Depends(require_role("lawyer", "admin")),
) -> list[dict]:
    target = lawyer_id if user.is_admin and lawyer_id else user.id
    return billing.list_charges_by_lawyer(target)


@router.get("/client")
def list_for_client(
    client_id: str | None = Query(None, description="Admin only: client to list"),
    user: CurrentUser = Depends(require_role("client", "admin")),
) -> list[dict]:
    target = client_id if user.is_admin and client_id else user.id
    return billing.list_charges_by_client(target)


@router.get("/charge/{charge_id}")
def get_charge(
    charge_id: str = Path(..., description="Charge UUID"),
    user: CurrentUser = Depends(require_role("client", "lawyer", "admin")),
) -> dict:
    try:
        return billing.get_charge_by_id(charge_id, user.id, user.role)
    except BillingError as e:
        raise to_http_exception(e)


@router.get("/stats")
def get_stats(
    lawyer_id: str | None = Query(None, description="Admin only: restrict to one lawyer"),
    user: CurrentUser = Depends(require_role("lawyer", "admin")),
) -> dict:
    """Lawyers see their own totals; admins see everyone's unless lawyer_id is given."""
    if user.is_admin:
        return billing.get_billing_stats(lawyer_id)
    return billing.get_billing_stats(user.id)


@router.get("/client-stats")
def get_client_stats(
    client_id: str | None = Query(None, description="Admin only: client to report"),
    user: CurrentUser = Depends(require_role("client", "admin")),
) -> dict:
    if user.is_admin:
        if not client_id:
            raise HTTPException(status_code=400, detail="client_id is required")
        return billing.get_client_stats(client_id)
    return billing.get_client_stats(user.id)
