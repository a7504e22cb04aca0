from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from escrowhub.utils.config import env_decimal


def platform_fee_percentage() -> Decimal:
    return env_decimal("PLATFORM_FEE_PERCENTAGE", "0.05", minimum="0", maximum="0.5")


def compute_platform_fee(price: int, percentage: Decimal | None = None) -> tuple[int, Decimal]:
    """Return (fee in whole VND, percentage used) for one order item."""
    pct = platform_fee_percentage() if percentage is None else Decimal(str(percentage))
    fee = (Decimal(int(price)) * pct).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee), pct


def seller_amount(price: int, platform_fee: int) -> int:
    return max(0, int(price) - int(platform_fee))
