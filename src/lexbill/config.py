"""Billing settings loaded from the environment.

Settings are read once into an immutable value and passed explicitly to the
split calculator, the payment processor and the gateway clients.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class BillingSettings:
    """Billing configuration.

    Attributes:
        platform_percentage: Default platform share of a charge (0-100).
        min_charge_cents: Smallest accepted charge amount.
        charge_ttl_days: Days until a pending charge expires.
        currency: Default currency code.
        gateway: Active payment gateway ("pagarme" or "stripe").
        platform_recipient_id: Gateway recipient that receives the platform fee.
        gateway_timeout_seconds: Timeout for each gateway HTTP call.
        gateway_max_retries: Retries for transient gateway failures.
        gateway_backoff_seconds: Base delay for exponential backoff.
        pix_expires_in: Default Pix expiry in seconds.
        boleto_expires_in: Default boleto expiry in seconds.
    """

    platform_percentage: float = 5.0
    min_charge_cents: int = 100
    charge_ttl_days: int = 7
    currency: str = "BRL"
    gateway: str = "pagarme"
    platform_recipient_id: str = ""
    gateway_timeout_seconds: float = 15.0
    gateway_max_retries: int = 2
    gateway_backoff_seconds: float = 0.5
    pix_expires_in: int = 3600
    boleto_expires_in: int = 86400

    @property
    def lawyer_percentage(self) -> float:
        return 100 - self.platform_percentage

    @classmethod
    def from_env(cls) -> BillingSettings:
        """Build settings from environment variables.

        Raises:
            RuntimeError: If a numeric variable is malformed or the platform
                percentage is outside [0, 100].
        """
        platform_percentage = _env_float("PLATFORM_FEE_PERCENTAGE", 5.0)
        if not 0 <= platform_percentage <= 100:
            raise RuntimeError("PLATFORM_FEE_PERCENTAGE must be between 0 and 100")

        gateway = os.environ.get("PAYMENT_GATEWAY", "pagarme").strip().lower()

        return cls(
            platform_percentage=platform_percentage,
            min_charge_cents=_env_int("MIN_CHARGE_CENTS", 100),
            charge_ttl_days=_env_int("CHARGE_TTL_DAYS", 7),
            currency=os.environ.get("DEFAULT_CURRENCY", "BRL"),
            gateway=gateway,
            platform_recipient_id=os.environ.get("PLATFORM_RECIPIENT_ID", ""),
            gateway_timeout_seconds=_env_float("GATEWAY_TIMEOUT_SECONDS", 15.0),
            gateway_max_retries=_env_int("GATEWAY_MAX_RETRIES", 2),
            gateway_backoff_seconds=_env_float("GATEWAY_BACKOFF_SECONDS", 0.5),
            pix_expires_in=_env_int("PIX_EXPIRES_IN", 3600),
            boleto_expires_in=_env_int("BOLETO_EXPIRES_IN", 86400),
        )


_settings: BillingSettings | None = None


def get_settings() -> BillingSettings:
    """Get process-wide settings (lazy, allows override in tests)."""
    global _settings
    if _settings is None:
        _settings = BillingSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
