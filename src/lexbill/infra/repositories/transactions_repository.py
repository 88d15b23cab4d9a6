"""Payment transactions repository - gateway-level movements of a payment.

Uses raw SQL with psycopg2 (no ORM). The webhook_events column is
append-only.
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from lexbill.infra.time import utc_now

TRANSACTION_TYPES = {"payment", "refund", "chargeback", "split"}

# Internal payment status -> transaction status
_PAYMENT_TO_TRANSACTION_STATUS = {
    "pending": "pending",
    "authorized": "pending",
    "paid": "success",
    "refunded": "success",
    "failed": "failed",
    "cancelled": "cancelled",
}


def transaction_status_for(payment_status: str) -> str:
    return _PAYMENT_TO_TRANSACTION_STATUS.get(payment_status, "pending")


def insert_transaction(
    cur: PgCursor,
    *,
    payment_id: str,
    external_id: str,
    transaction_type: str,
    status: str,
    amount_cents: int,
    fee_cents: int,
    description: str,
    metadata: dict[str, Any] | None = None,
    failure_reason: str | None = None,
) -> str | None:
    """Record a gateway transaction.

    Args:
        cur: Database cursor (within transaction).
        external_id: Gateway transaction id (unique).
        transaction_type: One of TRANSACTION_TYPES.

    Returns:
        The new transaction id, or None if external_id was already recorded.

    Raises:
        ValueError: If transaction_type is not valid.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Invalid transaction type: {transaction_type}")

    processed_at = utc_now() if status in ("success", "failed") else None

    cur.execute(
        """
        INSERT INTO payment_transactions (
            payment_id, external_id, type, status, amount_cents, fee_cents,
            net_amount_cents, description, metadata, processed_at, failure_reason
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
        ON CONFLICT (external_id) DO NOTHING
        RETURNING id
        """,
        (
            payment_id,
            external_id,
            transaction_type,
            status,
            amount_cents,
            fee_cents,
            amount_cents - fee_cents,
            description,
            json.dumps(metadata or {}),
            processed_at,
            failure_reason,
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def append_webhook_event(
    cur: PgCursor,
    *,
    payment_id: str,
    event: str,
    data: dict[str, Any],
    status: str | None = None,
) -> bool:
    """Append a notification to the payment's primary transaction.

    Optionally moves the transaction status along with it.

    Returns:
        True if a transaction row was updated.
    """
    entry = {"event": event, "data": data, "received_at": utc_now().isoformat()}

    cur.execute(
        """
        UPDATE payment_transactions
        SET webhook_events = webhook_events || jsonb_build_array(%s::jsonb),
            status = COALESCE(%s, status),
            processed_at = CASE WHEN %s IN ('success', 'failed') THEN now() ELSE processed_at END,
            updated_at = now()
        WHERE id = (
            SELECT id FROM payment_transactions
            WHERE payment_id::text = %s AND type = 'payment'
            ORDER BY created_at ASC
            LIMIT 1
        )
        """,
        (json.dumps(entry), status, status, payment_id),
    )
    return cur.rowcount > 0


def list_transactions(cur: PgCursor, payment_id: str) -> list[dict[str, Any]]:
    """List transactions of a payment, oldest first."""
    cur.execute(
        """
        SELECT id, external_id, type, status, amount_cents, fee_cents,
               net_amount_cents, description, metadata, webhook_events,
               processed_at, failure_reason, created_at
        FROM payment_transactions
        WHERE payment_id::text = %s
        ORDER BY created_at ASC
        """,
        (payment_id,),
    )
    return [
        {
            "id": str(row[0]),
            "external_id": row[1],
            "type": row[2],
            "status": row[3],
            "amount_cents": row[4],
            "fee_cents": row[5],
            "net_amount_cents": row[6],
            "description": row[7],
            "metadata": row[8] or {},
            "webhook_events": row[9] or [],
            "processed_at": row[10],
            "failure_reason": row[11],
            "created_at": row[12],
        }
        for row in cur.fetchall()
    ]
