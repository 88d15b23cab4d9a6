"""Split calculator - platform/lawyer division of a charge amount.

Pure functions, no I/O. All amounts are integer cents.

    platform_fee    = round_half_up(amount * platform_pct / 100)
    provider_amount = amount - platform_fee

so provider_amount + platform_fee == amount for every valid input.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from lexbill.domain.errors import InvalidArgumentError


@dataclass(frozen=True)
class SplitResult:
    provider_amount: int
    platform_fee: int


@dataclass(frozen=True)
class SplitConfig:
    """Percentages stored on a charge."""

    lawyer_percentage: float
    platform_percentage: float

    def apply(self, amount: int) -> SplitResult:
        return split(amount, self.lawyer_percentage, self.platform_percentage)


def _validate_percentages(provider_pct: float, platform_pct: float) -> None:
    for name, pct in (("lawyer_percentage", provider_pct), ("platform_percentage", platform_pct)):
        if not 0 <= pct <= 100:
            raise InvalidArgumentError(f"{name} must be between 0 and 100")
    if Decimal(str(provider_pct)) + Decimal(str(platform_pct)) != 100:
        raise InvalidArgumentError("split percentages must sum to 100")


def split(amount: int, provider_pct: float, platform_pct: float) -> SplitResult:
    """Split amount between provider and platform.

    Args:
        amount: Amount in cents (>= 0).
        provider_pct: Provider percentage (0-100).
        platform_pct: Platform percentage (0-100), provider_pct + platform_pct == 100.

    Returns:
        SplitResult with provider_amount and platform_fee.

    Raises:
        InvalidArgumentError: On negative amount or malformed percentages.
    """
    if amount < 0:
        raise InvalidArgumentError("amount must be >= 0")
    _validate_percentages(provider_pct, platform_pct)

    fee = (Decimal(amount) * Decimal(str(platform_pct)) / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    platform_fee = int(fee)
    return SplitResult(provider_amount=amount - platform_fee, platform_fee=platform_fee)


def resolve_split_config(
    lawyer_percentage: float | None,
    platform_percentage: float | None,
    *,
    default_platform_percentage: float,
) -> SplitConfig:
    """Resolve a requested split against the configured default.

    Neither given -> default. One given -> the other is its complement.
    Both given -> must sum to 100.

    Raises:
        InvalidArgumentError: If the resulting split is malformed.
    """
    if lawyer_percentage is None and platform_percentage is None:
        platform_percentage = default_platform_percentage
        lawyer_percentage = 100 - default_platform_percentage
    elif platform_percentage is None:
        platform_percentage = 100 - lawyer_percentage
    elif lawyer_percentage is None:
        lawyer_percentage = 100 - platform_percentage

    _validate_percentages(lawyer_percentage, platform_percentage)
    return SplitConfig(
        lawyer_percentage=lawyer_percentage,
        platform_percentage=platform_percentage,
    )


def build_split_rules(
    amount: int,
    config: SplitConfig,
    *,
    platform_recipient_id: str,
    lawyer_recipient_id: str,
) -> list[dict]:
    """Build gateway split rules for a payment.

    The platform is liable for chargebacks and absorbs the processing fee.
    Per-recipient amounts always add up to amount.
    """
    result = config.apply(amount)
    return [
        {
            "recipient_id": platform_recipient_id,
            "percentage": config.platform_percentage,
            "amount": result.platform_fee,
            "liable": True,
            "charge_processing_fee": True,
        },
        {
            "recipient_id": lawyer_recipient_id,
            "percentage": config.lawyer_percentage,
            "amount": result.provider_amount,
            "liable": False,
            "charge_processing_fee": False,
        },
    ]
