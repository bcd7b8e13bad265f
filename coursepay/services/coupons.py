"""Coupon applicability and discount calculation."""

import re
from datetime import datetime, timezone

from coursepay.core.exceptions import ValidationError
from coursepay.core.money import percent_of, to_cents
from coursepay.schemas import CouponRecord, DiscountType

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")


def normalize_code(code: str) -> str:
    """Upper-case and validate a coupon code; raises ValidationError on bad format."""
    normalized = (code or "").strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise ValidationError("Invalid coupon code format", details={"code": code})
    return normalized


def is_applicable(coupon: CouponRecord, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if not coupon.is_active:
        return False
    if coupon.expires_at is not None:
        expires_at = coupon.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            return False
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        return False
    return True


def evaluate(coupon: CouponRecord, subtotal_cents: int, now: datetime | None = None) -> int:
    """Discount in cents for subtotal_cents; 0 when the coupon does not apply. Never exceeds the subtotal."""
    if subtotal_cents <= 0 or not is_applicable(coupon, now):
        return 0
    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = percent_of(subtotal_cents, coupon.value)
    else:
        discount = to_cents(coupon.value)
    return max(0, min(discount, subtotal_cents))
