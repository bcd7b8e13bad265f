"""Instructor balance, commission history and coupon management."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from coursepay.core.audit import log_event
from coursepay.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.core.money import format_amount
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import CouponRecord, DiscountType, utcnow
from coursepay.services.coupons import normalize_code

log = get_logger(__name__)


async def get_balance(store: LedgerStore, instructor_id: str) -> int:
    profile = await store.find_instructor_profile(instructor_id)
    return profile.balance_cents if profile else 0


def coupon_to_dict(coupon: CouponRecord) -> dict[str, Any]:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "discount_type": coupon.discount_type.value,
        "value": str(coupon.value),
        "max_uses": coupon.max_uses,
        "used_count": coupon.used_count,
        "expires_at": coupon.expires_at.isoformat() if coupon.expires_at else None,
        "is_active": coupon.is_active,
        "course_id": coupon.course_id,
    }


async def create_coupon(
    store: LedgerStore,
    instructor_id: str,
    code: str,
    discount_type: DiscountType,
    value: Decimal,
    max_uses: int | None = None,
    expires_at: datetime | None = None,
    course_id: str | None = None,
) -> CouponRecord:
    code = normalize_code(code)
    if value <= 0:
        raise ValidationError("Coupon value must be positive")
    if discount_type == DiscountType.PERCENTAGE and value > 100:
        raise ValidationError("Percentage coupons cannot exceed 100")
    if max_uses is not None and max_uses < 1:
        raise ValidationError("max_uses must be at least 1")
    if expires_at is not None and expires_at <= utcnow():
        raise ValidationError("expires_at must be in the future")
    if course_id is not None:
        course = await store.find_course(course_id)
        if course is None:
            raise NotFoundError("Course not found")
        if course.instructor_id != instructor_id:
            raise ForbiddenError("Coupon can only target your own courses")
    coupon = await store.create_coupon(
        CouponRecord(
            code=code,
            discount_type=discount_type,
            value=value,
            max_uses=max_uses,
            expires_at=expires_at,
            instructor_id=instructor_id,
            course_id=course_id,
        )
    )
    await log_event(store, instructor_id, "coupon_created", "coupon", coupon.id, {"code": code})
    log.info("coupon_created", instructor_id=instructor_id, code=code, course_id=course_id)
    return coupon


async def commission_history(store: LedgerStore, instructor_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
    entries = await store.list_commissions(instructor_id, limit=limit, offset=offset)
    return [
        {
            "order_id": e.order_id,
            "course_id": e.course_id,
            "amount": format_amount(e.amount_cents),
            "platform_share": format_amount(e.platform_share_cents),
            "instructor_share": format_amount(e.instructor_share_cents),
            "rate": str(e.rate),
            "created_at": e.created_at.isoformat(),
        }
        for e in entries
    ]
