"""Platform / instructor commission split."""

from dataclasses import dataclass
from decimal import Decimal

from coursepay.core.money import percent_of


@dataclass(frozen=True)
class CommissionSplit:
    amount_cents: int
    platform_share_cents: int
    instructor_share_cents: int
    rate: Decimal


def split(amount_cents: int, platform_rate_percent: Decimal) -> CommissionSplit:
    """
    Split a sale between platform and instructor.

    The platform share is rounded half-up to the cent and the instructor gets the rest,
    so platform_share + instructor_share == amount always holds.
    """
    if amount_cents < 0:
        raise ValueError("amount_cents must be >= 0")
    rate = Decimal(platform_rate_percent)
    if rate < 0 or rate > 100:
        raise ValueError("platform_rate_percent must be within 0..100")
    platform = percent_of(amount_cents, rate)
    return CommissionSplit(
        amount_cents=amount_cents,
        platform_share_cents=platform,
        instructor_share_cents=amount_cents - platform,
        rate=rate,
    )
