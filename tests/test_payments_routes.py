"""Tests for /payments routes (auth overridden, processor mocked)."""

from __future__ import annotations

from unittest.mock import patch

from fastapi.testclient import TestClient

from helpers import FakeGateway, make_payment, make_user, mock_txn_factory
from lexbill.api.auth import get_current_user
from lexbill.api.deps import gateway_dep
from lexbill.api.factory import create_app
from lexbill.domain.errors import InvalidArgumentError, InvalidTransitionError, NotFoundError
from lexbill.domain.payment_methods import PixPayload

PROCESSOR = "lexbill.api.routes.payments.payments"


def _client_as(role: str, user_id: str) -> TestClient:
    app = create_app(role="public")
    user = make_user(role, user_id)
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[gateway_dep] = lambda: FakeGateway()
    return TestClient(app)


def _patch_txn():
    txn, _ = mock_txn_factory()
    return patch("lexbill.api.routes.payments.txn", txn)


class TestCreatePayment:
    def test_retry_for_accepted_charge(self):
        client = _client_as("client", "client-1")
        with patch(f"{PROCESSOR}.retry_payment_for_charge", return_value=make_payment()) as retry:
            response = client.post("/payments/create", json={"charge_id": "c-1", "payment_method": "pix"})

        assert response.status_code == 201
        assert retry.call_args.args == ("c-1", "client-1", "pix", PixPayload())

    def test_charge_not_accepted_400(self):
        client = _client_as("client", "client-1")
        err = InvalidArgumentError("charge must be accepted before payment")
        with patch(f"{PROCESSOR}.retry_payment_for_charge", side_effect=err):
            response = client.post("/payments/create", json={"charge_id": "c-1", "payment_method": "pix"})
        assert response.status_code == 400

    def test_lawyer_forbidden(self):
        client = _client_as("lawyer", "lawyer-1")
        response = client.post("/payments/create", json={"charge_id": "c-1", "payment_method": "pix"})
        assert response.status_code == 403


class TestReads:
    def test_get_payment_participant(self):
        client = _client_as("lawyer", "lawyer-1")
        with _patch_txn(), patch(f"{PROCESSOR}.get_payment_by_id", return_value=make_payment()):
            response = client.get("/payments/p-1")
        assert response.status_code == 200

    def test_get_payment_outsider_403(self):
        client = _client_as("client", "client-2")
        with _patch_txn(), patch(f"{PROCESSOR}.get_payment_by_id", return_value=make_payment()):
            response = client.get("/payments/p-1")
        assert response.status_code == 403

    def test_get_payment_missing_404(self):
        client = _client_as("admin", "admin-1")
        with _patch_txn(), patch(f"{PROCESSOR}.get_payment_by_id", side_effect=NotFoundError("payment not found")):
            response = client.get("/payments/p-1")
        assert response.status_code == 404

    def test_conversation_list_filtered(self):
        client = _client_as("client", "client-2")
        items = [make_payment(), make_payment(id="p-2", client_id="client-2")]
        with _patch_txn(), patch(f"{PROCESSOR}.list_payments_by_conversation", return_value=items):
            response = client.get("/payments/conversation/room-1")
        assert [p["id"] for p in response.json()] == ["p-2"]

    def test_client_list(self):
        client = _client_as("client", "client-1")
        with _patch_txn(), patch(f"{PROCESSOR}.list_payments_by_client", return_value=[]) as list_:
            client.get("/payments/client")
        assert list_.call_args.args[1] == "client-1"

    def test_lawyer_list(self):
        client = _client_as("lawyer", "lawyer-1")
        with _patch_txn(), patch(f"{PROCESSOR}.list_payments_by_lawyer", return_value=[]) as list_:
            client.get("/payments/lawyer")
        assert list_.call_args.args[1] == "lawyer-1"


class TestRefund:
    def test_admin_refund(self):
        client = _client_as("admin", "admin-1")
        with patch(f"{PROCESSOR}.refund_payment", return_value=make_payment(status="refunded")) as refund:
            response = client.post("/payments/p-1/refund", json={"amount": 2500})
        assert response.status_code == 200
        assert refund.call_args.args == ("p-1", 2500)

    def test_full_refund_without_body(self):
        client = _client_as("admin", "admin-1")
        with patch(f"{PROCESSOR}.refund_payment", return_value=make_payment(status="refunded")) as refund:
            client.post("/payments/p-1/refund")
        assert refund.call_args.args == ("p-1", None)

    def test_refund_unpaid_409(self):
        client = _client_as("admin", "admin-1")
        err = InvalidTransitionError("payment", "p-1", "pending", "refunded")
        with patch(f"{PROCESSOR}.refund_payment", side_effect=err):
            response = client.post("/payments/p-1/refund")
        assert response.status_code == 409

    def test_non_positive_amount_422(self):
        client = _client_as("admin", "admin-1")
        response = client.post("/payments/p-1/refund", json={"amount": 0})
        assert response.status_code == 422

    def test_client_cannot_refund(self):
        client = _client_as("client", "client-1")
        response = client.post("/payments/p-1/refund")
        assert response.status_code == 403
