"""Thin wrapper around the Pagar.me REST API.

Purpose:
- Encapsulate Pagar.me calls so domain code doesn't build HTTP requests.
- Send an Idempotency-Key on every write for safe retries.
- Never log request or response bodies (only IDs + status).
"""

from __future__ import annotations

import os
import time
from typing import Any, Callable

import requests

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

DEFAULT_BASE_URL = "https://api.pagar.me/1"

# HTTP statuses worth retrying
_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class PagarmeClient:
    """Pagar.me transactions client.

    Usage:
        client = PagarmeClient(settings=get_settings())  # reads PAGARME_API_KEY
        result = client.create_payment(request)
        print(result.external_id, result.status)
    """

    name = "pagarme"

    def __init__(
        self,
        *,
        settings: BillingSettings,
        api_key: str | None = None,
        base_url: str | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the Pagar.me client.

        Args:
            settings: Billing settings (timeouts, retry policy).
            api_key: Pagar.me API key. Defaults to PAGARME_API_KEY env var.
            base_url: API base URL. Defaults to PAGARME_BASE_URL or the public API.
            session: Optional requests session (tests inject a fake).
            sleep: Backoff sleep function.

        Raises:
            RuntimeError: If no API key is provided or found in environment.
        """
        self._api_key = api_key or os.environ.get("PAGARME_API_KEY")
        if not self._api_key:
            raise RuntimeError(
                "Pagar.me API key not provided. "
                "Set PAGARME_API_KEY or pass api_key parameter."
            )
        self._base_url = (base_url or os.environ.get("PAGARME_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._session = session or requests.Session()
        self._timeout = settings.gateway_timeout_seconds
        self._max_retries = settings.gateway_max_retries
        self._backoff = settings.gateway_backoff_seconds
        self._pix_expires_in = settings.pix_expires_in
        self._boleto_expires_in = settings.boleto_expires_in
        self._sleep = sleep

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Send a request, retrying transient failures.

        Only reads and requests carrying an idempotency key are retried.

        Raises:
            GatewayError: On non-2xx response or transport failure.
        """
        url = f"{self._base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        payload = dict(body or {})
        payload["api_key"] = self._api_key

        retryable_call = method == "GET" or idempotency_key is not None
        attempts = 1 + (self._max_retries if retryable_call else 0)

        last_error: GatewayError | None = None
        for attempt in range(attempts):
            if attempt:
                self._sleep(self._backoff * (2 ** (attempt - 1)))
            try:
                if method == "GET":
                    response = self._session.request(
                        method, url, params={"api_key": self._api_key}, headers=headers, timeout=self._timeout
                    )
                else:
                    response = self._session.request(
                        method, url, json=payload, headers=headers, timeout=self._timeout
                    )
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = GatewayError(f"pagarme transport error: {type(e).__name__}", retryable=True)
                logger.warning(
                    "pagarme request failed",
                    extra={
                        "extra_fields": safe_log_context(
                            path=path, attempt=attempt + 1, error_type=type(e).__name__
                        )
                    },
                )
                continue

            if response.status_code in _RETRYABLE_STATUSES:
                last_error = GatewayError(
                    f"pagarme responded {response.status_code}",
                    retryable=True,
                    status_code=response.status_code,
                )
                logger.warning(
                    "pagarme transient response",
                    extra={
                        "extra_fields": safe_log_context(
                            path=path, attempt=attempt + 1, status_code=response.status_code
                        )
                    },
                )
                continue

            if response.status_code >= 400:
                raise GatewayError(
                    f"pagarme rejected request ({response.status_code})",
                    retryable=False,
                    status_code=response.status_code,
                )

            try:
                return response.json()
            except ValueError:
                raise GatewayError("pagarme returned invalid JSON", status_code=response.status_code)

        assert last_error is not None
        raise last_error

    def _build_transaction_body(self, request: GatewayPaymentRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "amount": request.amount_cents,
            "payment_method": request.payment_method.value,
            "installments": request.installments,
            "async": False,
            "customer": {"external_id": request.customer_id or ""},
            "items": [
                {
                    "id": request.metadata.get("paymentId", ""),
                    "title": request.description,
                    "unit_price": request.amount_cents,
                    "quantity": 1,
                    "tangible": False,
                }
            ],
            "split_rules": [
                {
                    "recipient_id": rule["recipient_id"],
                    "amount": rule["amount"],
                    "liable": rule["liable"],
                    "charge_processing_fee": rule["charge_processing_fee"],
                }
                for rule in request.split_rules
            ],
            "metadata": dict(request.metadata, idempotency_key=request.idempotency_key),
        }

        payload = request.payload
        if isinstance(payload, CardPayload):
            body["card_hash"] = payload.card_token
            if payload.card_holder_name:
                body["card_holder_name"] = payload.card_holder_name
        elif isinstance(payload, PixPayload):
            body["pix_expiration_date_seconds"] = payload.expires_in or self._pix_expires_in
        elif isinstance(payload, BoletoPayload):
            body["boleto_expiration_seconds"] = payload.expires_in or self._boleto_expires_in
            if payload.instructions:
                body["boleto_instructions"] = payload.instructions

        return body

    @staticmethod
    def _to_result(data: dict[str, Any]) -> GatewayPaymentResult:
        card = data.get("card") or {}
        details = {
            "card_last_digits": card.get("last_digits"),
            "card_brand": card.get("brand"),
            "pix_qr_code": data.get("pix_qr_code"),
            "boleto_url": data.get("boleto_url"),
            "boleto_barcode": data.get("boleto_barcode"),
        }
        return GatewayPaymentResult(
            external_id=str(data.get("id", "")),
            transaction_id=str(data["tid"]) if data.get("tid") is not None else None,
            status=str(data.get("status", "")),
            fee_cents=int(data.get("cost") or 0),
            details={k: v for k, v in details.items() if v is not None},
        )

    def create_payment(self, request: GatewayPaymentRequest) -> GatewayPaymentResult:
        """Create a Pagar.me transaction.

        Returns:
            GatewayPaymentResult with Pagar.me transaction id and status.

        Raises:
            GatewayError: If the API call fails.
        """
        data = self._request(
            "POST",
            "/transactions",
            body=self._build_transaction_body(request),
            idempotency_key=request.idempotency_key,
        )
        result = self._to_result(data)

        # Log only IDs, never full payload
        logger.info(
            "pagarme transaction created",
            extra={
                "extra_fields": safe_log_context(
                    transaction_id_prefix=id_prefix(result.external_id),
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
        """Refund a Pagar.me transaction (full or partial)."""
        data = self._request(
            "POST",
            f"/transactions/{external_id}/refund",
            body={"amount": amount_cents},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "pagarme transaction refunded",
            extra={
                "extra_fields": safe_log_context(
                    transaction_id_prefix=id_prefix(external_id),
                    amount_cents=amount_cents,
                )
            },
        )
        return GatewayRefundResult(
            refund_id=f"{data.get('id', external_id)}:refund:{data.get('refunded_amount', amount_cents)}",
            status=str(data.get("status", "")),
            amount_cents=amount_cents,
        )

    def get_payment(self, external_id: str) -> GatewayPaymentResult:
        data = self._request("GET", f"/transactions/{external_id}")
        return self._to_result(data)
