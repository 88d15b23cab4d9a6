"""Shared test helper functions for LexBill tests.

Regular functions (not fixtures) importable by conftest.py and test modules.
"""

from __future__ import annotations

import base64
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

from lexbill.api.auth import CurrentUser
from lexbill.infra.gateway import GatewayPaymentResult, GatewayRefundResult


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    public_key = private_key.public_key()
    return private_key, public_key


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return (
            base64.urlsafe_b64encode(n.to_bytes(byte_length, "big"))
            .rstrip(b"=")
            .decode()
        )

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(public_numbers.n),
                "e": int_to_base64(public_numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = "https://auth.example.com",
    aud: str = "lexbill-api",
    exp: int | None = None,
    azp: str | None = None,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
    }
    if azp:
        payload["azp"] = azp

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def make_user(role: str = "client", user_id: str | None = None) -> CurrentUser:
    uid = user_id or f"{role}-1"
    return CurrentUser(
        id=uid,
        external_subject=f"sub-{uid}",
        email=None,
        name=None,
        role=role,
    )


def mock_txn_factory(cur: Any | None = None):
    """Build a txn() replacement yielding a single MagicMock cursor."""
    cursor = cur if cur is not None else MagicMock()

    @contextmanager
    def _txn(conn=None):
        yield cursor

    return _txn, cursor


def make_charge(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    charge = {
        "id": "11111111-1111-1111-1111-111111111111",
        "conversation_id": "room-1",
        "lawyer_id": "lawyer-1",
        "client_id": "client-1",
        "amount_cents": 10000,
        "currency": "BRL",
        "status": "pending",
        "type": "consultation",
        "title": "Consulta inicial",
        "description": "Analise do caso",
        "reason": "Primeira consulta",
        "metadata": {},
        "split_config": {
            "lawyer_percentage": 95.0,
            "platform_percentage": 5.0,
            "platform_fee_cents": 500,
        },
        "payment_id": None,
        "rejection_reason": None,
        "expires_at": now + timedelta(days=7),
        "accepted_at": None,
        "rejected_at": None,
        "cancelled_at": None,
        "paid_at": None,
        "expired_at": None,
        "created_at": now,
        "updated_at": now,
    }
    charge.update(overrides)
    return charge


def make_payment(**overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    payment = {
        "id": "22222222-2222-2222-2222-222222222222",
        "charge_id": "11111111-1111-1111-1111-111111111111",
        "conversation_id": "room-1",
        "client_id": "client-1",
        "lawyer_id": "lawyer-1",
        "amount_cents": 10000,
        "currency": "BRL",
        "status": "pending",
        "payment_method": "pix",
        "installments": 1,
        "description": "Consulta inicial",
        "provider": "pagarme",
        "external_id": None,
        "transaction_id": None,
        "idempotency_key": "charge:11111111-1111-1111-1111-111111111111:payment",
        "split_rules": [],
        "metadata": {},
        "paid_at": None,
        "cancelled_at": None,
        "refunded_at": None,
        "refund_amount_cents": None,
        "failure_reason": None,
        "webhook_data": None,
        "created_at": now,
        "updated_at": now,
    }
    payment.update(overrides)
    return payment


class FakeGateway:
    """In-memory PaymentGateway recording every call."""

    name = "pagarme"

    def __init__(self, status: str = "waiting_payment", error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.requests: list[Any] = []
        self.refunds: list[tuple[str, int | None, str]] = []

    def create_payment(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return GatewayPaymentResult(
            external_id=f"tran_{len(self.requests)}",
            transaction_id=f"tid_{len(self.requests)}",
            status=self.status,
            fee_cents=99,
            details={"pix_qr_code": "000201"} if request.payment_method == "pix" else {},
        )

    def refund(self, external_id, amount_cents, *, idempotency_key):
        self.refunds.append((external_id, amount_cents, idempotency_key))
        return GatewayRefundResult(
            refund_id=f"re_{external_id}",
            status="refunded",
            amount_cents=amount_cents or 0,
        )

    def get_payment(self, external_id):
        return GatewayPaymentResult(
            external_id=external_id,
            transaction_id=None,
            status=self.status,
        )
