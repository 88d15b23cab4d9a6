"""Conversations repository - billing view of chat conversations.

Uses raw SQL with psycopg2 (no ORM). The conversations table belongs to the
chat subsystem; only the billing_* columns are written here.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor


def find_by_room_id(cur: PgCursor, room_id: str) -> dict[str, Any] | None:
    """Get a conversation by its room id, or None if not found."""
    cur.execute(
        """
        SELECT room_id, client_id, assigned_to, billing_enabled,
               classification_category, classification_complexity,
               billing_charge_ids, billing_total_charged_cents,
               billing_last_charge_at
        FROM conversations
        WHERE room_id = %s
        """,
        (room_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None

    return {
        "room_id": row[0],
        "client_id": row[1],
        "assigned_to": row[2],
        "billing_enabled": bool(row[3]),
        "classification": {
            "category": row[4],
            "complexity": row[5],
        },
        "billing": {
            "charge_ids": list(row[6] or []),
            "total_charged_cents": int(row[7] or 0),
            "last_charge_at": row[8],
        },
    }


def is_billing_enabled(conversation: dict[str, Any]) -> bool:
    return bool(conversation.get("billing_enabled"))


def assigned_provider_id(conversation: dict[str, Any]) -> str | None:
    return conversation.get("assigned_to")


def append_charge(cur: PgCursor, *, room_id: str, charge_id: str) -> None:
    """Append a charge id to the conversation ledger and stamp last charge time."""
    cur.execute(
        """
        UPDATE conversations
        SET billing_charge_ids = array_append(billing_charge_ids, %s),
            billing_last_charge_at = now(),
            updated_at = now()
        WHERE room_id = %s
        """,
        (charge_id, room_id),
    )


def increment_total_charged(cur: PgCursor, *, room_id: str, amount_cents: int) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET billing_total_charged_cents = billing_total_charged_cents + %s,
            updated_at = now()
        WHERE room_id = %s
        """,
        (amount_cents, room_id),
    )
