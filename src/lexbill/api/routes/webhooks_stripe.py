"""Stripe webhook route - public endpoint for Stripe events.

Security rules:
- Validate Stripe-Signature on every request.
- Never log payload or signature header.
- Return 5xx only if the receipt could not be stored (so Stripe retries).
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from lexbill.domain.reconcile import reconcile_notification
from lexbill.observability.correlation import get_correlation_id
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import id_prefix, safe_log_context
from lexbill.stripe.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    verify_and_parse,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


def _get_webhook_secret() -> str:
    """Get Stripe webhook secret from environment."""
    secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
    return secret


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
) -> Response:
    """Receive Stripe webhook events.

    Returns:
        200 once the receipt is recorded (including duplicates).
        400 if the signature or payload is invalid.
        500 if the secret is missing or the receipt could not be stored.
    """
    correlation_id = get_correlation_id()

    try:
        payload_bytes = await request.body()
    except Exception:
        logger.warning(
            "failed to read request body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid body")

    try:
        webhook_secret = _get_webhook_secret()
    except RuntimeError:
        logger.error(
            "webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="server configuration error")

    try:
        notification = verify_and_parse(payload_bytes, stripe_signature, webhook_secret)
    except InvalidSignatureError:
        logger.warning(
            "stripe signature validation failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid signature")
    except InvalidPayloadError:
        logger.warning(
            "stripe payload invalid",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload")

    logger.info(
        "stripe webhook received",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event_id_prefix=id_prefix(notification.event_id),
                event_type=notification.event_type,
            )
        },
    )

    try:
        result = reconcile_notification(notification, correlation_id=correlation_id)
    except Exception:
        logger.exception(
            "stripe webhook receipt failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse(status_code=200, content={"received": True, "outcome": result.outcome})
