"""End-to-end billing flow against a real database.

Covers create -> accept -> webhook -> paid, webhook replay, a retry after a
declined payment, lazy expiry on accept and concurrent accepts. Requires a
migrated DATABASE_URL.
"""

from __future__ import annotations

import os
import threading
import uuid
from dataclasses import replace

import pytest

from helpers import FakeGateway
from lexbill.config import BillingSettings
from lexbill.domain import billing, payments
from lexbill.domain.charges import CreateChargeCommand
from lexbill.domain.errors import InvalidTransitionError
from lexbill.domain.payment_methods import PixPayload
from lexbill.domain.reconcile import GatewayNotification, reconcile_notification
from lexbill.infra.db import txn

# Skip all tests if DATABASE_URL is not set
pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping billing DB tests",
)

SETTINGS = BillingSettings(platform_recipient_id="re_platform")

LAWYER_ID = "lawyer-db-test"
CLIENT_ID = "client-db-test"


class _UniqueIdGateway(FakeGateway):
    """FakeGateway whose ids never collide across test runs."""

    def create_payment(self, request):
        result = super().create_payment(request)
        suffix = uuid.uuid4().hex[:12]
        return replace(result, external_id=f"or_{suffix}", transaction_id=f"tran_{suffix}")


@pytest.fixture
def room_id():
    """Billing-enabled conversation, cleaned up with everything billed in it."""
    room = f"room-{uuid.uuid4()}"
    with txn() as cur:
        cur.execute(
            """
            INSERT INTO conversations (room_id, client_id, assigned_to, billing_enabled,
                                       classification_category, classification_complexity)
            VALUES (%s, %s, %s, true, 'civil', 'baixa')
            """,
            (room, CLIENT_ID, LAWYER_ID),
        )
    yield room
    with txn() as cur:
        cur.execute(
            """
            DELETE FROM payment_transactions
            WHERE payment_id IN (SELECT id FROM payments WHERE conversation_id = %s)
            """,
            (room,),
        )
        cur.execute("UPDATE charges SET payment_id = NULL WHERE conversation_id = %s", (room,))
        cur.execute("DELETE FROM payments WHERE conversation_id = %s", (room,))
        cur.execute(
            "DELETE FROM webhook_events WHERE charge_id IN (SELECT id::text FROM charges WHERE conversation_id = %s)",
            (room,),
        )
        cur.execute("DELETE FROM charges WHERE conversation_id = %s", (room,))
        cur.execute("DELETE FROM outbox_events WHERE conversation_id = %s", (room,))
        cur.execute("DELETE FROM conversations WHERE room_id = %s", (room,))


def _create_charge(room_id: str, amount: int = 10000) -> dict:
    return billing.create_charge(
        CreateChargeCommand(
            conversation_id=room_id,
            lawyer_id=LAWYER_ID,
            amount_cents=amount,
            charge_type="consultation",
            title="Consulta inicial",
            description="Analise do contrato",
            reason="Primeira consulta",
        ),
        settings=SETTINGS,
    )


def _accept(charge_id: str, gateway: FakeGateway) -> dict:
    return billing.accept_charge_and_create_payment(
        charge_id,
        CLIENT_ID,
        "pix",
        PixPayload(),
        gateway=gateway,
        settings=SETTINGS,
    )


def _paid_notification(charge: dict, payment: dict, event_id: str) -> GatewayNotification:
    return GatewayNotification(
        provider="pagarme",
        event_id=event_id,
        event_type="charge.paid",
        external_object_id=payment["transaction_id"],
        status="paid",
        amount=payment["amount_cents"],
        charge_id=charge["id"],
        raw={"id": event_id, "type": "charge.paid"},
    )


def _outcome(event_id: str) -> str | None:
    with txn() as cur:
        cur.execute(
            "SELECT outcome FROM webhook_events WHERE provider = 'pagarme' AND event_id = %s",
            (event_id,),
        )
        row = cur.fetchone()
    return row[0] if row else None


class TestFullScenario:
    def test_create_accept_and_settle(self, room_id):
        charge = _create_charge(room_id)
        assert charge["status"] == "pending"
        assert charge["split_config"]["platform_fee_cents"] == 500

        with txn() as cur:
            cur.execute(
                "SELECT billing_charge_ids, billing_total_charged_cents FROM conversations WHERE room_id = %s",
                (room_id,),
            )
            charge_ids, total = cur.fetchone()
        assert charge_ids == [charge["id"]]
        assert total == 10000

        gateway = _UniqueIdGateway()
        accepted = _accept(charge["id"], gateway)
        payment = accepted["payment"]
        assert accepted["charge"]["status"] == "accepted"
        assert accepted["charge"]["payment_id"] == payment["id"]
        assert payment["status"] == "pending"
        assert [r["amount"] for r in payment["split_rules"]] == [500, 9500]

        event_id = f"hook_{uuid.uuid4().hex}"
        result = reconcile_notification(_paid_notification(charge, payment, event_id))
        assert result.outcome == "applied"
        assert _outcome(event_id) == "applied"

        settled = billing.get_charge_by_id(charge["id"], CLIENT_ID, "client")
        assert settled["status"] == "paid"
        assert settled["paid_at"] is not None

        with txn() as cur:
            cur.execute("SELECT status FROM payments WHERE id = %s", (payment["id"],))
            assert cur.fetchone()[0] == "paid"
            cur.execute(
                "SELECT status, jsonb_array_length(webhook_events) FROM payment_transactions WHERE payment_id = %s",
                (payment["id"],),
            )
            assert cur.fetchone() == ("success", 1)

    def test_repeat_accept_is_rejected(self, room_id):
        charge = _create_charge(room_id)
        gateway = _UniqueIdGateway()
        _accept(charge["id"], gateway)

        with pytest.raises(InvalidTransitionError):
            _accept(charge["id"], gateway)
        assert len(gateway.requests) == 1


    def test_retry_after_declined_payment_settles(self, room_id):
        charge = _create_charge(room_id)
        declined = _accept(charge["id"], _UniqueIdGateway(status="refused"))
        assert declined["payment"]["status"] == "failed"
        assert declined["charge"]["status"] == "accepted"

        gateway = _UniqueIdGateway(status="paid")
        retried = payments.retry_payment_for_charge(
            charge["id"], CLIENT_ID, "pix", PixPayload(), gateway=gateway, settings=SETTINGS
        )

        assert retried["id"] != declined["payment"]["id"]
        assert retried["status"] == "paid"
        assert gateway.requests[0].idempotency_key == f"charge:{charge['id']}:payment:2"

        settled = billing.get_charge_by_id(charge["id"], CLIENT_ID, "client")
        assert settled["status"] == "paid"
        assert settled["payment_id"] == retried["id"]

    def test_accepting_overdue_charge_keeps_it_expired(self, room_id):
        charge = _create_charge(room_id)
        with txn() as cur:
            cur.execute(
                "UPDATE charges SET expires_at = now() - interval '1 minute' WHERE id = %s",
                (charge["id"],),
            )

        with pytest.raises(InvalidTransitionError):
            _accept(charge["id"], _UniqueIdGateway())

        with txn() as cur:
            cur.execute("SELECT status, expired_at FROM charges WHERE id = %s", (charge["id"],))
            status, expired_at = cur.fetchone()
        assert status == "expired"
        assert expired_at is not None


class TestWebhookReplay:
    def test_replay_and_redelivery(self, room_id):
        charge = _create_charge(room_id)
        payment = _accept(charge["id"], _UniqueIdGateway())["payment"]

        event_id = f"hook_{uuid.uuid4().hex}"
        notification = _paid_notification(charge, payment, event_id)
        assert reconcile_notification(notification).outcome == "applied"

        # Same event id: receipt already stored
        assert reconcile_notification(notification).outcome == "duplicate"

        # New event id, same news: nothing left to change
        again = _paid_notification(charge, payment, f"hook_{uuid.uuid4().hex}")
        assert reconcile_notification(again).outcome == "ignored"

        with txn() as cur:
            cur.execute(
                "SELECT count(*) FROM outbox_events WHERE aggregate_id = %s AND payload->>'status' = 'paid'",
                (charge["id"],),
            )
            assert cur.fetchone()[0] == 1

    def test_paid_webhook_for_cancelled_charge_is_conflict(self, room_id):
        charge = _create_charge(room_id)
        payment = _accept(charge["id"], _UniqueIdGateway())["payment"]
        billing.update_charge_status(charge["id"], "cancelled", "duplicada")

        event_id = f"hook_{uuid.uuid4().hex}"
        result = reconcile_notification(_paid_notification(charge, payment, event_id))

        assert result.outcome == "conflict"
        assert _outcome(event_id) == "conflict"
        assert billing.get_charge_by_id(charge["id"], CLIENT_ID, "client")["status"] == "cancelled"


class TestConcurrentAccept:
    def test_exactly_one_accept_wins(self, room_id):
        charge = _create_charge(room_id)
        gateway = _UniqueIdGateway()
        barrier = threading.Barrier(2)
        outcomes: list[str] = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                _accept(charge["id"], gateway)
                outcome = "accepted"
            except InvalidTransitionError:
                outcome = "lost"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == ["accepted", "lost"]
        assert len(gateway.requests) == 1

        with txn() as cur:
            cur.execute("SELECT count(*) FROM payments WHERE charge_id = %s", (charge["id"],))
            assert cur.fetchone()[0] == 1
