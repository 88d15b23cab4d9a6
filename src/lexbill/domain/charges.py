"""Charge ledger - charge records and the charge state machine.

Every status write goes through transition(), which is a single conditional
UPDATE (compare-and-swap on the current status). Two callers racing on the
same charge cannot both succeed.

    pending   -> accepted | rejected | cancelled | expired
    accepted  -> paid | cancelled
    rejected, cancelled, expired, paid -> (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from lexbill.config import BillingSettings
from lexbill.domain.errors import (
    ForbiddenError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
)
from lexbill.domain.split import resolve_split_config
from lexbill.infra.repositories import charges_repository, conversations_repository
from lexbill.infra.repositories.outbox_repository import (
    CHARGE_ACCEPTED,
    CHARGE_CREATED,
    CHARGE_REJECTED,
    CHARGE_UPDATED,
    emit_charge_event,
)
from lexbill.infra.time import charge_expiry, is_past, utc_now
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import safe_log_context

logger = get_logger(__name__)


class ChargeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ChargeType(str, Enum):
    CONSULTATION = "consultation"
    DOCUMENT_ANALYSIS = "document_analysis"
    LEGAL_OPINION = "legal_opinion"
    PROCESS_FOLLOWUP = "process_followup"
    MEDIATION = "mediation"
    OTHER = "other"


URGENCY_LEVELS = {"low", "medium", "high", "urgent"}

ALLOWED_TRANSITIONS: dict[ChargeStatus, frozenset[ChargeStatus]] = {
    ChargeStatus.PENDING: frozenset(
        {ChargeStatus.ACCEPTED, ChargeStatus.REJECTED, ChargeStatus.CANCELLED, ChargeStatus.EXPIRED}
    ),
    ChargeStatus.ACCEPTED: frozenset({ChargeStatus.PAID, ChargeStatus.CANCELLED}),
    ChargeStatus.PAID: frozenset(),
    ChargeStatus.REJECTED: frozenset(),
    ChargeStatus.CANCELLED: frozenset(),
    ChargeStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

TITLE_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
REASON_MAX_LENGTH = 1000

_TRANSITION_EVENTS = {
    ChargeStatus.ACCEPTED: CHARGE_ACCEPTED,
    ChargeStatus.REJECTED: CHARGE_REJECTED,
}


def can_transition(current: ChargeStatus | str, target: ChargeStatus | str) -> bool:
    return ChargeStatus(target) in ALLOWED_TRANSITIONS[ChargeStatus(current)]


def allowed_sources(target: ChargeStatus | str) -> list[str]:
    """Statuses from which target is reachable."""
    target = ChargeStatus(target)
    return sorted(s.value for s, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def parse_status(value: str) -> ChargeStatus:
    try:
        return ChargeStatus(value)
    except ValueError:
        raise InvalidArgumentError(f"unknown charge status: {value}")


def transition(
    cur: PgCursor,
    charge_id: str,
    target: ChargeStatus | str,
    *,
    expected: ChargeStatus | str | None = None,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Move a charge to target status.

    Args:
        cur: Database cursor (within transaction).
        charge_id: Charge UUID.
        target: Desired status.
        expected: If set, only succeed when the current status equals it.
        reason: Optional rejection reason, stored with the row.
        correlation_id: Optional correlation ID for the outbox event.

    Returns:
        The updated charge dict.

    Raises:
        NotFoundError: If the charge does not exist.
        InvalidTransitionError: If target is not reachable from the current
            status (or the current status is not expected).
    """
    target = ChargeStatus(target)
    sources = allowed_sources(target)
    if expected is not None:
        expected = ChargeStatus(expected)
        sources = [s for s in sources if s == expected.value]

    updated = charges_repository.compare_and_set_status(
        cur,
        charge_id=charge_id,
        from_statuses=sources,
        to_status=target.value,
        rejection_reason=reason,
    )

    if updated is None:
        current = charges_repository.get_charge(cur, charge_id)
        if current is None:
            raise NotFoundError(f"charge not found: {charge_id}")
        raise InvalidTransitionError("charge", charge_id, current["status"], target.value)

    emit_charge_event(
        cur,
        event_type=_TRANSITION_EVENTS.get(target, CHARGE_UPDATED),
        charge=updated,
        correlation_id=correlation_id,
    )

    logger.info(
        "charge transitioned",
        extra={
            "extra_fields": safe_log_context(
                charge_id=charge_id,
                status=target.value,
            )
        },
    )
    return updated


@dataclass(frozen=True)
class CreateChargeCommand:
    """Input for create_charge."""

    conversation_id: str
    lawyer_id: str
    amount_cents: int
    charge_type: str
    title: str
    description: str
    reason: str
    lawyer_percentage: float | None = None
    platform_percentage: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _validate_text(name: str, value: str, max_length: int) -> None:
    if not value or not value.strip():
        raise InvalidArgumentError(f"{name} is required")
    if len(value) > max_length:
        raise InvalidArgumentError(f"{name} must be at most {max_length} characters")


def _validate_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    urgency = metadata.get("urgency")
    if urgency is not None and urgency not in URGENCY_LEVELS:
        raise InvalidArgumentError(f"urgency must be one of {sorted(URGENCY_LEVELS)}")

    hours = metadata.get("estimated_hours")
    if hours is not None:
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0:
            raise InvalidArgumentError("estimated_hours must be a non-negative number")

    return {k: v for k, v in metadata.items() if v is not None}


def validate_command(cmd: CreateChargeCommand, settings: BillingSettings) -> None:
    """Check the command fields that don't need the database.

    Raises:
        InvalidArgumentError: On any invalid field.
    """
    if isinstance(cmd.amount_cents, bool) or not isinstance(cmd.amount_cents, int):
        raise InvalidArgumentError("amount must be an integer number of cents")
    if cmd.amount_cents < settings.min_charge_cents:
        raise InvalidArgumentError(f"amount must be at least {settings.min_charge_cents} cents")

    try:
        ChargeType(cmd.charge_type)
    except ValueError:
        raise InvalidArgumentError(f"unknown charge type: {cmd.charge_type}")

    _validate_text("title", cmd.title, TITLE_MAX_LENGTH)
    _validate_text("description", cmd.description, DESCRIPTION_MAX_LENGTH)
    _validate_text("reason", cmd.reason, REASON_MAX_LENGTH)


def create_charge(
    cur: PgCursor,
    cmd: CreateChargeCommand,
    *,
    settings: BillingSettings,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Create a pending charge in a conversation.

    Persists the charge, appends it to the conversation ledger and emits
    charge.created, all on the caller's transaction.

    Raises:
        InvalidArgumentError: On invalid amount, type, text or split.
        NotFoundError: If the conversation does not exist.
        ForbiddenError: If the caller is not the assigned lawyer or billing
            is disabled for the conversation.
    """
    validate_command(cmd, settings)
    metadata = _validate_metadata(dict(cmd.metadata or {}))
    split_config = resolve_split_config(
        cmd.lawyer_percentage,
        cmd.platform_percentage,
        default_platform_percentage=settings.platform_percentage,
    )

    conversation = conversations_repository.find_by_room_id(cur, cmd.conversation_id)
    if conversation is None:
        raise NotFoundError(f"conversation not found: {cmd.conversation_id}")
    if conversations_repository.assigned_provider_id(conversation) != cmd.lawyer_id:
        raise ForbiddenError("only the assigned lawyer can create charges in this conversation")
    if not conversations_repository.is_billing_enabled(conversation):
        raise ForbiddenError("billing is not enabled for this conversation")

    client_id = conversation.get("client_id")
    if not client_id:
        raise InvalidArgumentError("conversation has no client")

    classification = conversation.get("classification") or {}
    metadata.setdefault("case_category", classification.get("category"))
    metadata.setdefault("case_complexity", classification.get("complexity"))

    fee = split_config.apply(cmd.amount_cents).platform_fee

    charge = charges_repository.insert_charge(
        cur,
        conversation_id=cmd.conversation_id,
        lawyer_id=cmd.lawyer_id,
        client_id=client_id,
        amount_cents=cmd.amount_cents,
        currency=settings.currency,
        charge_type=cmd.charge_type,
        title=cmd.title.strip(),
        description=cmd.description.strip(),
        reason=cmd.reason.strip(),
        metadata={k: v for k, v in metadata.items() if v is not None},
        lawyer_percentage=split_config.lawyer_percentage,
        platform_percentage=split_config.platform_percentage,
        platform_fee_cents=fee,
        expires_at=charge_expiry(utc_now(), settings.charge_ttl_days),
    )

    conversations_repository.append_charge(cur, room_id=cmd.conversation_id, charge_id=charge["id"])
    conversations_repository.increment_total_charged(
        cur, room_id=cmd.conversation_id, amount_cents=cmd.amount_cents
    )
    emit_charge_event(cur, event_type=CHARGE_CREATED, charge=charge, correlation_id=correlation_id)

    logger.info(
        "charge created",
        extra={
            "extra_fields": safe_log_context(
                charge_id=charge["id"],
                amount_cents=charge["amount_cents"],
                charge_type=charge["type"],
            )
        },
    )
    return charge


def _expire_if_due(
    cur: PgCursor,
    charge: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    if charge["status"] != ChargeStatus.PENDING.value or not is_past(charge["expires_at"], now):
        return charge
    try:
        return transition(cur, charge["id"], ChargeStatus.EXPIRED, expected=ChargeStatus.PENDING)
    except InvalidTransitionError:
        # Moved concurrently; report what is stored now
        return charges_repository.get_charge(cur, charge["id"]) or charge


def get_charge(cur: PgCursor, charge_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    """Get a charge, expiring it first if its TTL has passed.

    Raises:
        NotFoundError: If the charge does not exist.
    """
    charge = charges_repository.get_charge(cur, charge_id)
    if charge is None:
        raise NotFoundError(f"charge not found: {charge_id}")
    return _expire_if_due(cur, charge, now)


def list_charges(cur: PgCursor, **filters: Any) -> list[dict[str, Any]]:
    """List charges (newest first), expiring overdue pending ones."""
    now = utc_now()
    return [_expire_if_due(cur, c, now) for c in charges_repository.list_charges(cur, **filters)]


def reject_charge(
    cur: PgCursor,
    charge_id: str,
    client_id: str,
    reason: str | None = None,
    *,
    is_admin: bool = False,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Client declines a pending charge.

    Raises:
        NotFoundError: If the charge does not exist.
        ForbiddenError: If the caller is not the charge's client.
        InvalidArgumentError: If reason is too long.
        InvalidTransitionError: If the charge is not pending.
    """
    if reason is not None and len(reason) > REASON_MAX_LENGTH:
        raise InvalidArgumentError(f"reason must be at most {REASON_MAX_LENGTH} characters")

    charge = get_charge(cur, charge_id)
    if not is_admin and charge["client_id"] != client_id:
        raise ForbiddenError("only the charged client can reject this charge")

    return transition(
        cur,
        charge_id,
        ChargeStatus.REJECTED,
        expected=ChargeStatus.PENDING,
        reason=reason,
        correlation_id=correlation_id,
    )


def cancel_charge(
    cur: PgCursor,
    charge_id: str,
    lawyer_id: str,
    *,
    is_admin: bool = False,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Lawyer withdraws a pending or accepted charge.

    Raises:
        NotFoundError: If the charge does not exist.
        ForbiddenError: If the caller did not create the charge.
        InvalidTransitionError: If the charge is already terminal.
    """
    charge = get_charge(cur, charge_id)
    if not is_admin and charge["lawyer_id"] != lawyer_id:
        raise ForbiddenError("only the lawyer who created the charge can cancel it")

    return transition(cur, charge_id, ChargeStatus.CANCELLED, correlation_id=correlation_id)


def update_charge_status(
    cur: PgCursor,
    charge_id: str,
    status: str,
    reason: str | None = None,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Administrative status change, still bound by the transition table."""
    target = parse_status(status)
    return transition(cur, charge_id, target, reason=reason, correlation_id=correlation_id)


def mark_paid(
    cur: PgCursor,
    charge_id: str,
    *,
    correlation_id: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Settle a charge whose payment was collected.

    Returns:
        Tuple of (charge dict, changed flag). Already paid is a no-op.

    Raises:
        NotFoundError: If the charge does not exist.
        InvalidTransitionError: If the charge is in another terminal status.
    """
    try:
        charge = transition(
            cur,
            charge_id,
            ChargeStatus.PAID,
            expected=ChargeStatus.ACCEPTED,
            correlation_id=correlation_id,
        )
        return charge, True
    except InvalidTransitionError as e:
        if e.current == ChargeStatus.PAID.value:
            return charges_repository.get_charge(cur, charge_id), False
        raise


def expire_stale_charges(
    cur: PgCursor,
    *,
    now: datetime | None = None,
    limit: int = 500,
) -> list[str]:
    """Expire pending charges past their expires_at.

    Returns:
        IDs of the charges expired by this call.
    """
    now = now or utc_now()
    expired: list[str] = []

    for charge_id in charges_repository.list_expired_pending_ids(cur, now=now, limit=limit):
        try:
            transition(cur, charge_id, ChargeStatus.EXPIRED, expected=ChargeStatus.PENDING)
        except InvalidTransitionError:
            # Accepted/rejected between the select and the update
            continue
        expired.append(charge_id)

    if expired:
        logger.info(
            "stale charges expired",
            extra={"extra_fields": safe_log_context(count=len(expired))},
        )
    return expired


def charge_stats(
    cur: PgCursor,
    *,
    lawyer_id: str | None = None,
    client_id: str | None = None,
) -> dict[str, Any]:
    """Aggregate charge counts and amounts by status."""
    by_status = {s.value: {"count": 0, "amount_cents": 0} for s in ChargeStatus}
    total_charges = 0
    total_amount = 0

    for status, count, amount in charges_repository.status_totals(
        cur, lawyer_id=lawyer_id, client_id=client_id
    ):
        by_status[status] = {"count": count, "amount_cents": amount}
        total_charges += count
        total_amount += amount

    return {
        "total_charges": total_charges,
        "total_amount_cents": total_amount,
        "by_status": by_status,
    }
