"""Pagar.me webhook route - public endpoint for gateway notifications.

Security rules:
- Validate X-Hub-Signature on every request.
- Never log payload or signature header.
- Return 5xx only if the receipt could not be stored (so Pagar.me retries).
- Once the receipt is stored, always 200, whatever the reconciliation outcome.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from lexbill.domain.reconcile import reconcile_notification
from lexbill.infra.hashing import get_webhook_secret
from lexbill.observability.correlation import get_correlation_id
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import id_prefix, safe_log_context
from lexbill.pagarme.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    verify_and_parse,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)

SECRET_ENV = "PAGARME_WEBHOOK_SECRET"


@router.post("/webhooks/pagarme")
async def pagarme_webhook(request: Request) -> Response:
    """Receive Pagar.me notifications.

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
        webhook_secret = get_webhook_secret(SECRET_ENV)
    except RuntimeError:
        logger.error(
            "webhook secret not configured",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="server configuration error")

    signature = request.headers.get("X-Hub-Signature") or request.headers.get("X-Signature")

    try:
        notification = verify_and_parse(payload_bytes, signature, webhook_secret)
    except InvalidSignatureError:
        logger.warning(
            "pagarme signature validation failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid signature")
    except InvalidPayloadError:
        logger.warning(
            "pagarme payload invalid",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload")

    logger.info(
        "pagarme webhook received",
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
        # Receipt not stored - let the gateway retry
        logger.exception(
            "pagarme webhook receipt failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="processing failed")

    return JSONResponse(status_code=200, content={"received": True, "outcome": result.outcome})
