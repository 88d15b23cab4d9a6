"""Stripe webhook signature validation and payload parsing.

Purpose:
- Validate webhook signature using Stripe-Signature header.
- Extract the fields reconciliation needs into a GatewayNotification.
- Never log payload or signature.
"""

from __future__ import annotations

import json
from typing import Any

import stripe

from lexbill.domain.reconcile import GatewayNotification
from lexbill.observability.logging import get_logger

logger = get_logger(__name__)

PROVIDER = "stripe"


class InvalidSignatureError(Exception):
    """Webhook signature validation failed."""


class InvalidPayloadError(Exception):
    """Payload structure is invalid or missing required fields."""


def verify_and_parse(
    payload_bytes: bytes,
    signature_header: str,
    webhook_secret: str,
) -> GatewayNotification:
    """Validate Stripe webhook signature and parse the event.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: Value of Stripe-Signature header.
        webhook_secret: Webhook endpoint secret from Stripe.

    Returns:
        GatewayNotification for reconciliation.

    Raises:
        InvalidSignatureError: If signature validation fails.
        InvalidPayloadError: If event structure is invalid.
    """
    try:
        stripe.Webhook.construct_event(
            payload_bytes,
            signature_header,
            webhook_secret,
        )
    except stripe.SignatureVerificationError as e:
        # Do NOT log signature or payload
        logger.warning("stripe webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature") from e
    except ValueError as e:
        logger.warning("stripe webhook payload parsing failed")
        raise InvalidPayloadError("Invalid payload") from e

    # Signature covers the raw bytes; work from the plain dict
    try:
        event = json.loads(payload_bytes)
    except ValueError as e:
        raise InvalidPayloadError("Invalid payload") from e

    return parse_event(event)


def parse_event(event: Any) -> GatewayNotification:
    """Map a Stripe event dict to a GatewayNotification.

    The object is a PaymentIntent (payment_intent.*) or a Charge (charge.*).
    Our chargeId lives in the object's metadata.

    Raises:
        InvalidPayloadError: If id or type is missing.
    """
    if not isinstance(event, dict):
        raise InvalidPayloadError("Event must be an object")

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    # Charge objects point back to their PaymentIntent, which is what we store
    external_id = obj.get("payment_intent") if obj.get("object") == "charge" else obj.get("id")

    amount = obj.get("amount")
    method_types = obj.get("payment_method_types") or []

    return GatewayNotification(
        provider=PROVIDER,
        event_id=event_id,
        event_type=event_type,
        external_object_id=external_id or obj.get("id"),
        status=obj.get("status"),
        amount=int(amount) if isinstance(amount, int) else None,
        payment_method=method_types[0] if method_types else None,
        charge_id=metadata.get("chargeId"),
        conversation_id=metadata.get("conversationId"),
        raw=event,
    )
