from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from coursepay.models.fields import MongoDecimal
from coursepay.schemas import DiscountType


class Coupon(Document):
    code: Indexed(str, unique=True)  # stored upper-case
    discount_type: DiscountType
    value: MongoDecimal
    max_uses: int | None = None
    used_count: int = 0
    redeemed_order_ids: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    is_active: bool = True
    instructor_id: str | None = None
    course_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "coupons"
        indexes = [[("instructor_id", 1), ("created_at", -1)]]
