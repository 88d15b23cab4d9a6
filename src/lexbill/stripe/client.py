"""Thin wrapper around Stripe SDK.

Purpose:
- Encapsulate Stripe API calls so domain code doesn't import stripe.* directly.
- Accept idempotency_key for safe retries.
- Never log full Stripe payloads (only IDs + correlation metadata).
"""

from __future__ import annotations

import math
import os
from typing import Any

import stripe

from lexbill.config import BillingSettings
from lexbill.domain.errors import GatewayError
from lexbill.domain.payment_methods import BoletoPayload, CardPayload, PixPayload
from lexbill.infra.gateway import (
    GatewayPaymentRequest,
    GatewayPaymentResult,
    GatewayRefundResult,
)
from lexbill.observability.logging import get_logger
from lexbill.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

# PaymentIntent status -> shared gateway vocabulary
_INTENT_STATUS = {
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "waiting_payment",
    "processing": "processing",
    "requires_capture": "authorized",
    "succeeded": "succeeded",
    "canceled": "canceled",
}


def _wrap_stripe_error(e: stripe.StripeError) -> GatewayError:
    retryable = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError))
    status_code = getattr(e, "http_status", None)
    if status_code is not None and status_code >= 500:
        retryable = True
    return GatewayError(
        f"stripe error: {type(e).__name__}",
        retryable=retryable,
        status_code=status_code,
    )


class StripeClient:
    """Wrapper for Stripe PaymentIntent operations.

    Usage:
        client = StripeClient(settings=get_settings())  # reads STRIPE_SECRET_KEY
        result = client.create_payment(request)
        print(result.external_id, result.status)
    """

    name = "stripe"

    def __init__(self, *, settings: BillingSettings, api_key: str | None = None) -> None:
        """Initialize the Stripe client.

        Args:
            settings: Billing settings (timeouts, retry policy, expiries).
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY env var.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )
        self._settings = settings

    def _client(self) -> stripe.StripeClient:
        # The SDK retries network errors itself; idempotency keys make that safe
        return stripe.StripeClient(
            self._api_key,
            max_network_retries=self._settings.gateway_max_retries,
            http_client=stripe.RequestsClient(timeout=self._settings.gateway_timeout_seconds),
        )

    def _intent_params(self, request: GatewayPaymentRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": request.amount_cents,
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": request.metadata,
            "confirm": True,
        }

        lawyer_rule = next((r for r in request.split_rules if not r["liable"]), None)
        platform_rule = next((r for r in request.split_rules if r["liable"]), None)
        if lawyer_rule and lawyer_rule.get("recipient_id"):
            params["transfer_data"] = {"destination": lawyer_rule["recipient_id"]}
            params["application_fee_amount"] = platform_rule["amount"] if platform_rule else 0

        payload = request.payload
        if isinstance(payload, CardPayload):
            params["payment_method_types"] = ["card"]
            params["payment_method"] = payload.card_token
            if request.installments > 1:
                params["payment_method_options"] = {
                    "card": {
                        "installments": {
                            "enabled": True,
                            "plan": {"count": request.installments, "interval": "month", "type": "fixed_count"},
                        }
                    }
                }
        elif isinstance(payload, PixPayload):
            params["payment_method_types"] = ["pix"]
            params["payment_method_data"] = {"type": "pix"}
            params["payment_method_options"] = {
                "pix": {"expires_after_seconds": payload.expires_in or self._settings.pix_expires_in}
            }
        elif isinstance(payload, BoletoPayload):
            seconds = payload.expires_in or self._settings.boleto_expires_in
            params["payment_method_types"] = ["boleto"]
            params["payment_method_data"] = {"type": "boleto"}
            params["payment_method_options"] = {
                "boleto": {"expires_after_days": max(1, math.ceil(seconds / 86400))}
            }
        return params

    @staticmethod
    def _to_result(intent: Any) -> GatewayPaymentResult:
        details: dict[str, Any] = {}
        next_action = intent.get("next_action") or {}
        pix = next_action.get("pix_display_qr_code") or {}
        boleto = next_action.get("boleto_display_details") or {}
        if pix.get("data"):
            details["pix_qr_code"] = pix["data"]
        if boleto.get("hosted_voucher_url"):
            details["boleto_url"] = boleto["hosted_voucher_url"]
        if boleto.get("number"):
            details["boleto_barcode"] = boleto["number"]

        latest_charge = intent.get("latest_charge")
        if latest_charge is not None and not isinstance(latest_charge, str):
            latest_charge = latest_charge.get("id")

        return GatewayPaymentResult(
            external_id=intent["id"],
            transaction_id=latest_charge,
            status=_INTENT_STATUS.get(intent.get("status", ""), intent.get("status", "")),
            details=details,
        )

    def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResult:
        """Create and confirm a PaymentIntent.

        Raises:
            GatewayError: If the Stripe call fails.
        """
        try:
            intent = self._client().v1.payment_intents.create(
                params=self._intent_params(request),
                options={"idempotency_key": request.idempotency_key},
            )
        except stripe.StripeError as e:
            raise _wrap_stripe_error(e) from e

        result = self._to_result(intent)

        # Log only IDs, never full payload
        logger.info(
            "stripe payment intent created",
            extra={
                "extra_fields": safe_log_context(
                    intent_id_prefix=id_prefix(result.external_id),
                    gateway_status=result.status,
                )
            },
        )
        return result

    def refund(
        self,
        external_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
    ) -> GatewayRefundResult:
        """Refund a PaymentIntent (full or partial)."""
        try:
            refund = self._client().v1.refunds.create(
                params={"payment_intent": external_id, "amount": amount_cents},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _wrap_stripe_error(e) from e

        logger.info(
            "stripe refund created",
            extra={
                "extra_fields": safe_log_context(
                    intent_id_prefix=id_prefix(external_id),
                    amount_cents=amount_cents,
                )
            },
        )
        return GatewayRefundResult(
            refund_id=refund["id"],
            status=refund.get("status", ""),
            amount_cents=amount_cents,
        )

    def get_payment(self, external_id: str) -> GatewayPaymentResult:
        try:
            intent = self._client().v1.payment_intents.retrieve(external_id)
        except stripe.StripeError as e:
            raise _wrap_stripe_error(e) from e
        return self._to_result(intent)
