"""Charges repository - persistence for charge records.

Uses raw SQL with psycopg2 (no ORM). Status changes go through
compare_and_set_status(), a conditional UPDATE; nothing else in the code
base writes charges.status.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = """
    id, conversation_id, lawyer_id, client_id, amount_cents, currency,
    status, type, title, description, reason, metadata,
    lawyer_percentage, platform_percentage, platform_fee_cents,
    payment_id, rejection_reason, expires_at, accepted_at, rejected_at,
    cancelled_at, paid_at, expired_at, created_at, updated_at
"""

# Column stamped when a charge enters each status
STATUS_TIMESTAMP_COLUMNS = {
    "accepted": "accepted_at",
    "rejected": "rejected_at",
    "cancelled": "cancelled_at",
    "paid": "paid_at",
    "expired": "expired_at",
}


def _row_to_charge(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "conversation_id": row[1],
        "lawyer_id": row[2],
        "client_id": row[3],
        "amount_cents": row[4],
        "currency": row[5],
        "status": row[6],
        "type": row[7],
        "title": row[8],
        "description": row[9],
        "reason": row[10],
        "metadata": row[11] or {},
        "split_config": {
            "lawyer_percentage": float(row[12]),
            "platform_percentage": float(row[13]),
            "platform_fee_cents": row[14],
        },
        "payment_id": str(row[15]) if row[15] else None,
        "rejection_reason": row[16],
        "expires_at": row[17],
        "accepted_at": row[18],
        "rejected_at": row[19],
        "cancelled_at": row[20],
        "paid_at": row[21],
        "expired_at": row[22],
        "created_at": row[23],
        "updated_at": row[24],
    }


def insert_charge(
    cur: PgCursor,
    *,
    conversation_id: str,
    lawyer_id: str,
    client_id: str,
    amount_cents: int,
    currency: str,
    charge_type: str,
    title: str,
    description: str,
    reason: str,
    metadata: dict[str, Any] | None,
    lawyer_percentage: float,
    platform_percentage: float,
    platform_fee_cents: int,
    expires_at: datetime,
) -> dict[str, Any]:
    """Insert a charge in 'pending' status.

    Returns:
        The created charge dict.
    """
    cur.execute(
        f"""
        INSERT INTO charges (
            conversation_id, lawyer_id, client_id, amount_cents, currency,
            status, type, title, description, reason, metadata,
            lawyer_percentage, platform_percentage, platform_fee_cents,
            expires_at
        )
        VALUES (%s, %s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s)
        RETURNING {_COLUMNS}
        """,
        (
            conversation_id,
            lawyer_id,
            client_id,
            amount_cents,
            currency,
            charge_type,
            title,
            description,
            reason,
            json.dumps(metadata or {}),
            lawyer_percentage,
            platform_percentage,
            platform_fee_cents,
            expires_at,
        ),
    )
    return _row_to_charge(cur.fetchone())


def get_charge(cur: PgCursor, charge_id: str, *, for_update: bool = False) -> dict[str, Any] | None:
    """Get a charge by ID, or None if not found.

    With for_update the row stays locked until the transaction ends.
    """
    cur.execute(
        f"SELECT {_COLUMNS} FROM charges WHERE id::text = %s" + (" FOR UPDATE" if for_update else ""),
        (charge_id,),
    )
    row = cur.fetchone()
    return _row_to_charge(row) if row else None


def compare_and_set_status(
    cur: PgCursor,
    *,
    charge_id: str,
    from_statuses: list[str],
    to_status: str,
    rejection_reason: str | None = None,
) -> dict[str, Any] | None:
    """Atomically move a charge to to_status if its status is in from_statuses.

    Stamps the timestamp column for to_status in the same statement.

    Returns:
        Updated charge dict, or None if the precondition did not hold
        (charge missing or status changed concurrently).
    """
    if not from_statuses:
        return None

    ts_column = STATUS_TIMESTAMP_COLUMNS.get(to_status)
    assignments = ["status = %s", "updated_at = now()"]
    params: list[Any] = [to_status]

    if ts_column:
        assignments.append(f"{ts_column} = now()")
    if rejection_reason is not None:
        assignments.append("rejection_reason = %s")
        params.append(rejection_reason)

    params.extend([charge_id, list(from_statuses)])

    cur.execute(
        f"""
        UPDATE charges
        SET {", ".join(assignments)}
        WHERE id::text = %s AND status = ANY(%s)
        RETURNING {_COLUMNS}
        """,
        params,
    )
    row = cur.fetchone()
    return _row_to_charge(row) if row else None


def attach_payment(cur: PgCursor, *, charge_id: str, payment_id: str) -> bool:
    """Link a payment to a charge.

    An existing link is only replaced when it points at a failed or
    cancelled attempt.

    Returns:
        True if the link was written.
    """
    cur.execute(
        """
        UPDATE charges
        SET payment_id = %s, updated_at = now()
        WHERE id::text = %s
          AND (
            payment_id IS NULL
            OR payment_id::text = %s
            OR payment_id IN (SELECT id FROM payments WHERE status IN ('failed', 'cancelled'))
          )
        """,
        (payment_id, charge_id, payment_id),
    )
    return cur.rowcount > 0


def list_charges(
    cur: PgCursor,
    *,
    conversation_id: str | None = None,
    lawyer_id: str | None = None,
    client_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """List charges matching the given filters, newest first."""
    conditions = []
    params: list[Any] = []

    if conversation_id is not None:
        conditions.append("conversation_id = %s")
        params.append(conversation_id)
    if lawyer_id is not None:
        conditions.append("lawyer_id = %s")
        params.append(lawyer_id)
    if client_id is not None:
        conditions.append("client_id = %s")
        params.append(client_id)

    where_clause = " AND ".join(conditions) if conditions else "TRUE"
    params.append(limit)

    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM charges
        WHERE {where_clause}
        ORDER BY created_at DESC
        LIMIT %s
        """,
        params,
    )
    return [_row_to_charge(row) for row in cur.fetchall()]


def list_expired_pending_ids(cur: PgCursor, *, now: datetime, limit: int) -> list[str]:
    """IDs of pending charges whose expires_at has passed."""
    cur.execute(
        """
        SELECT id
        FROM charges
        WHERE status = 'pending' AND expires_at <= %s
        ORDER BY expires_at ASC
        LIMIT %s
        """,
        (now, limit),
    )
    return [str(row[0]) for row in cur.fetchall()]


def status_totals(
    cur: PgCursor,
    *,
    lawyer_id: str | None = None,
    client_id: str | None = None,
) -> list[tuple[str, int, int]]:
    """Count and sum charges grouped by status.

    Returns:
        List of (status, count, amount_cents) tuples.
    """
    cur.execute(
        """
        SELECT status, COUNT(*), COALESCE(SUM(amount_cents), 0)
        FROM charges
        WHERE (%s::text IS NULL OR lawyer_id = %s)
          AND (%s::text IS NULL OR client_id = %s)
        GROUP BY status
        """,
        (lawyer_id, lawyer_id, client_id, client_id),
    )
    return [(row[0], int(row[1]), int(row[2])) for row in cur.fetchall()]
