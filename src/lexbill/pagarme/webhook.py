"""Pagar.me webhook signature validation and payload parsing.

Purpose:
- Validate X-Hub-Signature (HMAC of the raw body) before parsing.
- Extract the fields reconciliation needs into a GatewayNotification.
- Never log payload or signature.
"""

from __future__ import annotations

import json
from typing import Any

from lexbill.domain.reconcile import GatewayNotification
from lexbill.infra.hashing import verify_signature
from lexbill.observability.logging import get_logger

logger = get_logger(__name__)

PROVIDER = "pagarme"


class InvalidSignatureError(Exception):
    """Webhook signature validation failed."""


class InvalidPayloadError(Exception):
    """Payload structure is invalid or missing required fields."""


def verify_and_parse(
    payload_bytes: bytes,
    signature_header: str | None,
    webhook_secret: bytes,
) -> GatewayNotification:
    """Validate Pagar.me webhook signature and parse the notification.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: Value of X-Hub-Signature header.
        webhook_secret: Shared webhook secret.

    Returns:
        GatewayNotification for reconciliation.

    Raises:
        InvalidSignatureError: If signature validation fails.
        InvalidPayloadError: If the body is not a valid notification.
    """
    if not verify_signature(webhook_secret, payload_bytes, signature_header):
        # Do NOT log signature or payload
        logger.warning("pagarme webhook signature verification failed")
        raise InvalidSignatureError("Invalid signature")

    try:
        body = json.loads(payload_bytes)
    except ValueError as e:
        logger.warning("pagarme webhook payload parsing failed")
        raise InvalidPayloadError("Invalid payload") from e

    return parse_notification(body)


def parse_notification(body: Any) -> GatewayNotification:
    """Map a Pagar.me notification body to a GatewayNotification.

    Expected shape:
        {"id": ..., "event": ..., "data": {"id", "status", "amount",
         "payment_method", "charges": [...], "metadata": {"chargeId", ...}}}

    Raises:
        InvalidPayloadError: If id, event or data is missing.
    """
    if not isinstance(body, dict):
        raise InvalidPayloadError("Payload must be an object")

    event_id = body.get("id")
    event_type = body.get("event") or body.get("type")
    data = body.get("data")

    if not event_id or not event_type or not isinstance(data, dict):
        raise InvalidPayloadError("Missing event id, type or data")

    metadata = data.get("metadata") or {}
    status = data.get("status")

    # Order payloads carry the real state on the last charge
    charges = data.get("charges") or []
    if not status and charges and isinstance(charges[-1], dict):
        status = charges[-1].get("status")

    amount = data.get("amount")

    return GatewayNotification(
        provider=PROVIDER,
        event_id=str(event_id),
        event_type=str(event_type),
        external_object_id=str(data["id"]) if data.get("id") is not None else None,
        status=str(status) if status else None,
        amount=int(amount) if isinstance(amount, (int, float)) else None,
        payment_method=data.get("payment_method"),
        charge_id=metadata.get("chargeId") or metadata.get("charge_id"),
        conversation_id=metadata.get("conversationId") or metadata.get("conversation_id"),
        raw=body,
    )
