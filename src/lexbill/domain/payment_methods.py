"""Payment method payloads.

Each payment method carries exactly one payload type:

    credit_card, debit_card -> CardPayload
    pix                     -> PixPayload
    boleto                  -> BoletoPayload
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from lexbill.domain.errors import InvalidArgumentError


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PIX = "pix"
    BOLETO = "boleto"


@dataclass(frozen=True)
class CardPayload:
    """Tokenized card data. Raw card numbers never reach this service."""

    card_token: str
    card_holder_name: str | None = None


@dataclass(frozen=True)
class PixPayload:
    expires_in: int | None = None


@dataclass(frozen=True)
class BoletoPayload:
    expires_in: int | None = None
    instructions: str | None = None


MethodPayload = Union[CardPayload, PixPayload, BoletoPayload]

_PAYLOAD_TYPES: dict[PaymentMethod, type] = {
    PaymentMethod.CREDIT_CARD: CardPayload,
    PaymentMethod.DEBIT_CARD: CardPayload,
    PaymentMethod.PIX: PixPayload,
    PaymentMethod.BOLETO: BoletoPayload,
}

MIN_INSTALLMENTS = 1
MAX_INSTALLMENTS = 12


def parse_method(value: str) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise InvalidArgumentError(f"unsupported payment method: {value}")


def validate_method_payload(
    method: PaymentMethod,
    payload: MethodPayload | None,
    installments: int = 1,
) -> None:
    """Check that payload matches method.

    Raises:
        InvalidArgumentError: On a missing or mismatched payload, or
            installments outside 1-12 (only credit cards may exceed 1).
    """
    expected = _PAYLOAD_TYPES[method]
    if payload is None or not isinstance(payload, expected):
        raise InvalidArgumentError(
            f"payment method '{method.value}' requires a {expected.__name__}"
        )

    if not MIN_INSTALLMENTS <= installments <= MAX_INSTALLMENTS:
        raise InvalidArgumentError("installments must be between 1 and 12")
    if installments > 1 and method is not PaymentMethod.CREDIT_CARD:
        raise InvalidArgumentError("installments are only allowed for credit cards")

    if isinstance(payload, CardPayload) and not payload.card_token:
        raise InvalidArgumentError("card_token is required")
    if isinstance(payload, (PixPayload, BoletoPayload)):
        if payload.expires_in is not None and payload.expires_in <= 0:
            raise InvalidArgumentError("expires_in must be positive")


def payload_from_dict(method: PaymentMethod, data: dict[str, Any] | None) -> MethodPayload:
    """Build the payload for method from a loosely-typed request body section."""
    data = data or {}
    if method in (PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD):
        return CardPayload(
            card_token=data.get("card_token") or "",
            card_holder_name=data.get("card_holder_name"),
        )
    if method is PaymentMethod.PIX:
        return PixPayload(expires_in=data.get("expires_in"))
    return BoletoPayload(
        expires_in=data.get("expires_in"),
        instructions=data.get("instructions"),
    )
