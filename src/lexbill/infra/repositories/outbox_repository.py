"""Outbox repository - domain events for the real-time notifier.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from lexbill.infra.db import claim_rows

CHARGE_CREATED = "charge.created"
CHARGE_ACCEPTED = "charge.accepted"
CHARGE_REJECTED = "charge.rejected"
CHARGE_UPDATED = "charge.updated"


def emit_event(
    cur: PgCursor,
    *,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    conversation_id: str | None = None,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Emit an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        event_type: Event type (e.g., charge.created).
        aggregate_type: Aggregate type (e.g., charge).
        aggregate_id: Aggregate ID (e.g., charge UUID).
        conversation_id: Conversation (room) the event belongs to.
        payload: Optional JSON payload.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    payload_json = json.dumps(payload, default=str) if payload else None

    cur.execute(
        """
        INSERT INTO outbox_events (
            event_type, aggregate_type, aggregate_id,
            conversation_id, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            event_type,
            aggregate_type,
            aggregate_id,
            conversation_id,
            payload_json,
            correlation_id,
        ),
    )
    return cur.fetchone()[0]


def emit_charge_event(
    cur: PgCursor,
    *,
    event_type: str,
    charge: dict[str, Any],
    correlation_id: str | None = None,
) -> int:
    """Emit a charge event carrying a snapshot of the charge."""
    payload = {
        "charge_id": charge["id"],
        "status": charge["status"],
        "amount_cents": charge["amount_cents"],
        "currency": charge["currency"],
        "type": charge["type"],
        "title": charge["title"],
        "lawyer_id": charge["lawyer_id"],
        "client_id": charge["client_id"],
        "payment_id": charge.get("payment_id"),
    }
    return emit_event(
        cur,
        event_type=event_type,
        aggregate_type="charge",
        aggregate_id=charge["id"],
        conversation_id=charge["conversation_id"],
        payload=payload,
        correlation_id=correlation_id,
    )


def claim_undelivered(cur: PgCursor, *, limit: int = 50, max_attempts: int = 10) -> list[dict[str, Any]]:
    """Lock a batch of undelivered events, skipping rows held by other workers."""
    rows = claim_rows(
        cur,
        """
        SELECT id, event_type, aggregate_type, aggregate_id,
               conversation_id, payload, correlation_id, attempts
        FROM outbox_events
        WHERE delivered_at IS NULL AND attempts < %s
        ORDER BY occurred_at ASC
        LIMIT %s
        """,
        (max_attempts, limit),
    )
    return [
        {
            "id": row[0],
            "event_type": row[1],
            "aggregate_type": row[2],
            "aggregate_id": row[3],
            "conversation_id": row[4],
            "payload": row[5] or {},
            "correlation_id": row[6],
            "attempts": row[7],
        }
        for row in rows
    ]


def mark_delivered(cur: PgCursor, event_id: int) -> None:
    cur.execute(
        """
        UPDATE outbox_events
        SET delivered_at = now(), attempts = attempts + 1, last_error = NULL
        WHERE id = %s
        """,
        (event_id,),
    )


def mark_failed(cur: PgCursor, event_id: int, error: str) -> None:
    cur.execute(
        """
        UPDATE outbox_events
        SET attempts = attempts + 1, last_error = %s
        WHERE id = %s
        """,
        (error[:500], event_id),
    )
