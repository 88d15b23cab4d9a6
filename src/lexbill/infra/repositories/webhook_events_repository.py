"""Webhook receipt log - one row per (provider, event_id).

Uses raw SQL with psycopg2 (no ORM).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

OUTCOMES = {"applied", "duplicate", "ignored", "unresolved", "conflict", "error"}


def record_receipt(
    cur: PgCursor,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    external_object_id: str | None,
    charge_id: str | None,
    payload: dict[str, Any],
) -> bool:
    """Insert the receipt row for a notification.

    Args:
        cur: Database cursor (within transaction).
        provider: Gateway name.
        event_id: Gateway event id.
        event_type: Gateway event type.
        external_object_id: Gateway payment/charge/intent id, if any.
        charge_id: Our charge id from notification metadata, if any.
        payload: Raw parsed notification body.

    Returns:
        True if inserted (first receipt), False if already recorded.
    """
    cur.execute(
        """
        INSERT INTO webhook_events (
            provider, event_id, event_type, external_object_id, charge_id, payload
        )
        VALUES (%s, %s, %s, %s, %s, %s::jsonb)
        ON CONFLICT (provider, event_id) DO NOTHING
        """,
        (
            provider,
            event_id,
            event_type,
            external_object_id,
            charge_id,
            json.dumps(payload),
        ),
    )
    return cur.rowcount == 1


def set_outcome(
    cur: PgCursor,
    *,
    provider: str,
    event_id: str,
    outcome: str,
    detail: str | None = None,
) -> None:
    """Write the reconciliation outcome back to the receipt row.

    Raises:
        ValueError: If outcome is not valid.
    """
    if outcome not in OUTCOMES:
        raise ValueError(f"Invalid outcome: {outcome}")

    cur.execute(
        """
        UPDATE webhook_events
        SET outcome = %s, detail = %s, processed_at = now()
        WHERE provider = %s AND event_id = %s
        """,
        (outcome, detail, provider, event_id),
    )
