"""Tests for webhook reconciliation (storage mocked with in-memory rows)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from helpers import make_charge, make_payment, mock_txn_factory
from lexbill.domain import reconcile
from lexbill.domain.errors import InvalidTransitionError
from lexbill.domain.payments import PaymentStatus, allowed_sources
from lexbill.domain.reconcile import GatewayNotification, reconcile_notification, target_status

CHARGE_ID = "11111111-1111-1111-1111-111111111111"
PAYMENT_ID = "22222222-2222-2222-2222-222222222222"


def _notification(event_type="charge.paid", status=None, charge_id=CHARGE_ID, external_id="tran_1", event_id="evt_1"):
    return GatewayNotification(
        provider="pagarme",
        event_id=event_id,
        event_type=event_type,
        external_object_id=external_id,
        status=status,
        amount=10000,
        charge_id=charge_id,
        raw={"id": event_id, "event": event_type},
    )


class _Store:
    """Minimal in-memory charge/payment rows plus receipt bookkeeping."""

    def __init__(self, charge_status="accepted", payment_status="pending", with_payment=True):
        self.charge = make_charge(status=charge_status, payment_id=PAYMENT_ID if with_payment else None)
        self.payment = (
            make_payment(status=payment_status, external_id="tran_1") if with_payment else None
        )
        self.receipts: set[tuple[str, str]] = set()
        self.outcomes: dict[str, tuple[str, str | None]] = {}
        self.appended: list[str] = []

    def record_receipt(self, cur, *, provider, event_id, **kwargs):
        key = (provider, event_id)
        if key in self.receipts:
            return False
        self.receipts.add(key)
        return True

    def set_outcome(self, cur, *, provider, event_id, outcome, detail=None):
        self.outcomes[event_id] = (outcome, detail)

    def get_charge(self, cur, charge_id):
        return self.charge if self.charge and charge_id == self.charge["id"] else None

    def get_payment(self, cur, payment_id):
        return self.payment if self.payment and payment_id == self.payment["id"] else None

    def get_payment_by_external_id(self, cur, *, provider, external_id):
        if self.payment and self.payment["external_id"] == external_id:
            return self.payment
        return None

    def transition_payment(self, cur, payment_id, target, **kwargs):
        target = PaymentStatus(target)
        if self.payment["status"] not in allowed_sources(target):
            raise InvalidTransitionError("payment", payment_id, self.payment["status"], target.value)
        self.payment = {**self.payment, "status": target.value}
        return self.payment

    def append_webhook_event(self, cur, *, payment_id, event, data, status=None):
        self.appended.append(event)

    def mark_paid(self, cur, charge_id, *, correlation_id=None):
        if self.charge["status"] == "paid":
            return self.charge, False
        if self.charge["status"] != "accepted":
            raise InvalidTransitionError("charge", charge_id, self.charge["status"], "paid")
        self.charge = {**self.charge, "status": "paid"}
        return self.charge, True

    def patches(self):
        txn, _ = mock_txn_factory()
        return [
            patch.object(reconcile, "txn", txn),
            patch.object(reconcile.webhook_events_repository, "record_receipt", side_effect=self.record_receipt),
            patch.object(reconcile.webhook_events_repository, "set_outcome", side_effect=self.set_outcome),
            patch.object(reconcile.charges_repository, "get_charge", side_effect=self.get_charge),
            patch.object(reconcile.payments_repository, "get_payment", side_effect=self.get_payment),
            patch.object(
                reconcile.payments_repository,
                "get_payment_by_external_id",
                side_effect=self.get_payment_by_external_id,
            ),
            patch.object(reconcile, "transition_payment", side_effect=self.transition_payment),
            patch.object(reconcile.transactions_repository, "append_webhook_event", side_effect=self.append_webhook_event),
            patch.object(reconcile.charges, "mark_paid", side_effect=self.mark_paid),
        ]


@pytest.fixture
def store():
    s = _Store()
    started = s.patches()
    for p in started:
        p.start()
    yield s
    for p in started:
        p.stop()



class TestTargetStatus:
    def test_event_type_wins(self):
        assert target_status(_notification("charge.refunded", status="paid")) is PaymentStatus.REFUNDED

    def test_status_events_use_gateway_status(self):
        assert target_status(_notification("payment.updated", status="authorized")) is PaymentStatus.AUTHORIZED
        assert target_status(_notification("payment.created", status="waiting_payment")) is PaymentStatus.PENDING


class TestReconcile:
    def test_paid_settles_payment_and_charge(self, store):
        result = reconcile_notification(_notification("charge.paid"))

        assert result.outcome == "applied"
        assert store.payment["status"] == "paid"
        assert store.charge["status"] == "paid"
        assert store.appended == ["charge.paid"]
        assert store.outcomes["evt_1"][0] == "applied"

    def test_duplicate_event_has_no_effect(self, store):
        reconcile_notification(_notification("charge.paid"))
        store.appended.clear()

        result = reconcile_notification(_notification("charge.paid"))

        assert result.outcome == "duplicate"
        assert store.appended == []

    def test_redelivery_with_new_event_id_is_noop(self, store):
        reconcile_notification(_notification("charge.paid", event_id="evt_1"))
        result = reconcile_notification(_notification("charge.paid", event_id="evt_2"))

        assert result.outcome == "ignored"
        assert store.charge["status"] == "paid"

    def test_resolves_by_external_id_without_charge_metadata(self, store):
        result = reconcile_notification(_notification("charge.paid", charge_id=None))

        assert result.outcome == "applied"
        assert result.charge_id == CHARGE_ID
        assert store.charge["status"] == "paid"

    def test_unresolved(self, store):
        result = reconcile_notification(
            _notification("charge.paid", charge_id="00000000-0000-0000-0000-000000000000", external_id="tran_x")
        )
        assert result.outcome == "unresolved"
        assert store.payment["status"] == "pending"

    def test_unsupported_event_ignored(self, store):
        result = reconcile_notification(_notification("customer.created"))
        assert result.outcome == "ignored"
        assert store.outcomes["evt_1"][0] == "ignored"

    def test_failed_payment_keeps_charge_accepted(self, store):
        result = reconcile_notification(_notification("charge.failed"))

        assert result.outcome == "applied"
        assert store.payment["status"] == "failed"
        assert store.charge["status"] == "accepted"

    def test_stale_status_after_paid_is_noop(self, store):
        reconcile_notification(_notification("charge.paid", event_id="evt_1"))
        result = reconcile_notification(
            _notification("payment.updated", status="waiting_payment", event_id="evt_2")
        )

        assert result.outcome == "ignored"
        assert store.payment["status"] == "paid"

    def test_failure_after_paid_is_conflict(self, store):
        reconcile_notification(_notification("charge.paid", event_id="evt_1"))
        result = reconcile_notification(_notification("charge.failed", event_id="evt_2"))

        assert result.outcome == "conflict"
        assert store.payment["status"] == "paid"
        assert store.outcomes["evt_2"][0] == "conflict"

    def test_paid_for_cancelled_charge_is_conflict(self):
        s = _Store(charge_status="cancelled")
        patches = s.patches()
        for p in patches:
            p.start()
        try:
            result = reconcile_notification(_notification("charge.paid"))
        finally:
            for p in patches:
                p.stop()

        assert result.outcome == "conflict"
        assert s.charge["status"] == "cancelled"

    def test_refund_after_paid(self, store):
        reconcile_notification(_notification("charge.paid", event_id="evt_1"))
        result = reconcile_notification(_notification("charge.refunded", event_id="evt_2"))

        assert result.outcome == "applied"
        assert store.payment["status"] == "refunded"

    def test_unexpected_error_recorded_and_swallowed(self, store):
        with patch.object(reconcile, "_apply", side_effect=RuntimeError("db hiccup")):
            result = reconcile_notification(_notification("charge.paid"))

        assert result.outcome == "error"
        assert store.outcomes["evt_1"] == ("error", "RuntimeError")

    def test_receipt_failure_propagates(self):
        txn, _ = mock_txn_factory()
        with patch.object(reconcile, "txn", txn), \
             patch.object(reconcile.webhook_events_repository, "record_receipt", side_effect=RuntimeError("down")):
            with pytest.raises(RuntimeError):
                reconcile_notification(_notification())


def test_mark_paid_not_called_for_pending(store):
    result = reconcile_notification(_notification("payment.created", status="waiting_payment"))
    assert result.outcome == "ignored"
    assert store.charge["status"] == "accepted"
