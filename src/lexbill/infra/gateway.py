"""Payment gateway abstraction.

Domain code talks to a PaymentGateway; concrete clients live in
lexbill.pagarme and lexbill.stripe. The active one is chosen by
PAYMENT_GATEWAY.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from lexbill.config import BillingSettings
from lexbill.domain.payment_methods import MethodPayload, PaymentMethod


@dataclass(frozen=True)
class GatewayPaymentRequest:
    amount_cents: int
    currency: str
    payment_method: PaymentMethod
    payload: MethodPayload
    installments: int
    description: str
    split_rules: list[dict[str, Any]]
    metadata: dict[str, str]
    idempotency_key: str
    customer_id: str | None = None


@dataclass(frozen=True)
class GatewayPaymentResult:
    """Gateway response to a payment creation or lookup.

    status is the gateway's own vocabulary; map it with map_gateway_status.
    """

    external_id: str
    transaction_id: str | None
    status: str
    fee_cents: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayRefundResult:
    refund_id: str
    status: str
    amount_cents: int


class PaymentGateway(Protocol):
    """Protocol for payment gateway clients."""

    name: str

    def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResult:
        """Create a payment. Must honor request.idempotency_key."""
        ...

    def refund(
        self,
        external_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
    ) -> GatewayRefundResult:
        """Refund amount_cents of a paid payment."""
        ...

    def get_payment(self, external_id: str) -> GatewayPaymentResult:
        """Fetch current gateway state of a payment."""
        ...


def get_gateway(settings: BillingSettings) -> PaymentGateway:
    """Build the gateway client configured by settings.gateway.

    Raises:
        RuntimeError: If the gateway name is unknown or credentials are missing.
    """
    if settings.gateway == "pagarme":
        from lexbill.pagarme.client import PagarmeClient

        return PagarmeClient(settings=settings)
    if settings.gateway == "stripe":
        from lexbill.stripe.client import StripeClient

        return StripeClient(settings=settings)
    raise RuntimeError(f"Unknown PAYMENT_GATEWAY: {settings.gateway}")
