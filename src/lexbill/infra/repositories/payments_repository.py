"""Payments repository - persistence for payment records.

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = """
    id, charge_id, conversation_id, client_id, lawyer_id, amount_cents,
    currency, status, payment_method, installments, description, provider,
    external_id, transaction_id, idempotency_key, split_rules, metadata,
    paid_at, cancelled_at, refunded_at, refund_amount_cents, failure_reason,
    webhook_data, created_at, updated_at
"""

# Column stamped when a payment enters each status
STATUS_TIMESTAMP_COLUMNS = {
    "paid": "paid_at",
    "cancelled": "cancelled_at",
    "refunded": "refunded_at",
}


def _row_to_payment(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "charge_id": str(row[1]) if row[1] else None,
        "conversation_id": row[2],
        "client_id": row[3],
        "lawyer_id": row[4],
        "amount_cents": row[5],
        "currency": row[6],
        "status": row[7],
        "payment_method": row[8],
        "installments": row[9],
        "description": row[10],
        "provider": row[11],
        "external_id": row[12],
        "transaction_id": row[13],
        "idempotency_key": row[14],
        "split_rules": row[15] or [],
        "metadata": row[16] or {},
        "paid_at": row[17],
        "cancelled_at": row[18],
        "refunded_at": row[19],
        "refund_amount_cents": row[20],
        "failure_reason": row[21],
        "webhook_data": row[22],
        "created_at": row[23],
        "updated_at": row[24],
    }


def insert_payment(
    cur: PgCursor,
    *,
    charge_id: str | None,
    conversation_id: str,
    client_id: str,
    lawyer_id: str,
    amount_cents: int,
    currency: str,
    payment_method: str,
    installments: int,
    description: str,
    provider: str,
    idempotency_key: str,
    split_rules: list[dict[str, Any]],
    metadata: dict[str, Any],
) -> tuple[dict[str, Any], bool]:
    """Insert a pending payment, or return the one already holding the key.

    Args:
        cur: Database cursor (within transaction).
        idempotency_key: Deterministic key; a second insert with the same
            key returns the existing row.

    Returns:
        Tuple of (payment dict, created flag).
    """
    cur.execute(
        f"""
        INSERT INTO payments (
            charge_id, conversation_id, client_id, lawyer_id, amount_cents,
            currency, status, payment_method, installments, description,
            provider, idempotency_key, split_rules, metadata
        )
        VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
        ON CONFLICT (idempotency_key) DO NOTHING
        RETURNING {_COLUMNS}
        """,
        (
            charge_id,
            conversation_id,
            client_id,
            lawyer_id,
            amount_cents,
            currency,
            payment_method,
            installments,
            description,
            provider,
            idempotency_key,
            json.dumps(split_rules),
            json.dumps(metadata),
        ),
    )
    row = cur.fetchone()
    if row is not None:
        return _row_to_payment(row), True

    existing = get_payment_by_idempotency_key(cur, idempotency_key)
    return existing, False


def get_payment(cur: PgCursor, payment_id: str) -> dict[str, Any] | None:
    """Get a payment by ID, or None if not found."""
    cur.execute(
        f"SELECT {_COLUMNS} FROM payments WHERE id::text = %s",
        (payment_id,),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def get_payment_by_idempotency_key(cur: PgCursor, idempotency_key: str) -> dict[str, Any] | None:
    cur.execute(
        f"SELECT {_COLUMNS} FROM payments WHERE idempotency_key = %s",
        (idempotency_key,),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def get_payment_by_charge(cur: PgCursor, charge_id: str) -> dict[str, Any] | None:
    """Latest payment attempt for a charge, or None."""
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payments
        WHERE charge_id::text = %s
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (charge_id,),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def count_charge_attempts(cur: PgCursor, charge_id: str) -> int:
    cur.execute("SELECT count(*) FROM payments WHERE charge_id::text = %s", (charge_id,))
    return cur.fetchone()[0]


def get_payment_by_external_id(
    cur: PgCursor,
    *,
    provider: str,
    external_id: str,
) -> dict[str, Any] | None:
    """Get a payment by gateway object ID.

    Matches either the gateway order/intent id or its transaction id.
    """
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payments
        WHERE provider = %s AND (external_id = %s OR transaction_id = %s)
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (provider, external_id, external_id),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def record_gateway_result(
    cur: PgCursor,
    *,
    payment_id: str,
    external_id: str,
    transaction_id: str | None,
) -> None:
    """Store gateway identifiers returned by the create call."""
    cur.execute(
        """
        UPDATE payments
        SET external_id = %s,
            transaction_id = %s,
            failure_reason = NULL,
            updated_at = now()
        WHERE id::text = %s
        """,
        (external_id, transaction_id, payment_id),
    )


def record_failure(cur: PgCursor, *, payment_id: str, reason: str) -> None:
    """Store the last gateway failure reason. Status is left untouched."""
    cur.execute(
        """
        UPDATE payments
        SET failure_reason = %s, updated_at = now()
        WHERE id::text = %s
        """,
        (reason, payment_id),
    )


def compare_and_set_status(
    cur: PgCursor,
    *,
    payment_id: str,
    from_statuses: list[str],
    to_status: str,
    webhook_data: dict[str, Any] | None = None,
    refund_amount_cents: int | None = None,
    failure_reason: str | None = None,
) -> dict[str, Any] | None:
    """Atomically move a payment to to_status if its status is in from_statuses.

    Returns:
        Updated payment dict, or None if the precondition did not hold.
    """
    if not from_statuses:
        return None

    assignments = ["status = %s", "updated_at = now()"]
    params: list[Any] = [to_status]

    ts_column = STATUS_TIMESTAMP_COLUMNS.get(to_status)
    if ts_column:
        assignments.append(f"{ts_column} = now()")
    if webhook_data is not None:
        assignments.append("webhook_data = %s::jsonb")
        params.append(json.dumps(webhook_data))
    if refund_amount_cents is not None:
        assignments.append("refund_amount_cents = %s")
        params.append(refund_amount_cents)
    if failure_reason is not None:
        assignments.append("failure_reason = %s")
        params.append(failure_reason)

    params.extend([payment_id, list(from_statuses)])

    cur.execute(
        f"""
        UPDATE payments
        SET {", ".join(assignments)}
        WHERE id::text = %s AND status = ANY(%s)
        RETURNING {_COLUMNS}
        """,
        params,
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def record_refund_amount(cur: PgCursor, *, payment_id: str, refund_amount_cents: int) -> dict[str, Any] | None:
    """Store the refunded amount on a payment already marked refunded."""
    cur.execute(
        f"""
        UPDATE payments
        SET refund_amount_cents = %s,
            refunded_at = COALESCE(refunded_at, now()),
            updated_at = now()
        WHERE id::text = %s AND status = 'refunded'
        RETURNING {_COLUMNS}
        """,
        (refund_amount_cents, payment_id),
    )
    row = cur.fetchone()
    return _row_to_payment(row) if row else None


def store_webhook_data(cur: PgCursor, *, payment_id: str, webhook_data: dict[str, Any]) -> None:
    """Overwrite the last raw notification without touching status."""
    cur.execute(
        """
        UPDATE payments
        SET webhook_data = %s::jsonb, updated_at = now()
        WHERE id::text = %s
        """,
        (json.dumps(webhook_data), payment_id),
    )


def list_payments(
    cur: PgCursor,
    *,
    conversation_id: str | None = None,
    client_id: str | None = None,
    lawyer_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """List payments matching the given filters, newest first."""
    conditions = []
    params: list[Any] = []

    if conversation_id is not None:
        conditions.append("conversation_id = %s")
        params.append(conversation_id)
    if client_id is not None:
        conditions.append("client_id = %s")
        params.append(client_id)
    if lawyer_id is not None:
        conditions.append("lawyer_id = %s")
        params.append(lawyer_id)

    where_clause = " AND ".join(conditions) if conditions else "TRUE"
    params.append(limit)

    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM payments
        WHERE {where_clause}
        ORDER BY created_at DESC
        LIMIT %s
        """,
        params,
    )
    return [_row_to_payment(row) for row in cur.fetchall()]
