"""Shared FastAPI dependencies: settings and payment gateway.

Both are process-wide singletons built lazily; tests override them through
app.dependency_overrides.
"""

from __future__ import annotations

from lexbill.config import BillingSettings, get_settings
from lexbill.infra.gateway import PaymentGateway, get_gateway

_gateway: PaymentGateway | None = None


def settings_dep() -> BillingSettings:
    return get_settings()


def gateway_dep() -> PaymentGateway:
    """Get the configured gateway client (lazy init)."""
    global _gateway
    if _gateway is None:
        _gateway = get_gateway(get_settings())
    return _gateway
