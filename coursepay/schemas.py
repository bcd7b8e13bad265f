"""Ledger-store records shared by every backend."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class GatewayName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    MERCADOPAGO = "mercadopago"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class UserRecord(BaseModel):
    id: str
    email: str
    name: str = ""
    role: str = "student"  # "student" | "instructor" | "admin"
    session_version: int = 0


class CourseRecord(BaseModel):
    id: str
    title: str
    price_cents: int
    instructor_id: str
    is_published: bool = True


class OrderItemRecord(BaseModel):
    course_id: str
    instructor_id: str
    title: str = ""
    price_at_purchase_cents: int
    net_amount_cents: int


class OrderRecord(BaseModel):
    id: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    gateway: GatewayName
    gateway_ref: str | None = None
    gateway_payment_id: str | None = None
    currency: str = "BRL"
    subtotal_cents: int
    discount_cents: int = 0
    total_cents: int
    coupon_code: str | None = None
    items: list[OrderItemRecord] = Field(default_factory=list)
    failure_reason: str | None = None
    settled_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EnrollmentRecord(BaseModel):
    user_id: str
    course_id: str
    order_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class InstructorProfileRecord(BaseModel):
    user_id: str
    balance_cents: int = 0
    commission_rate: Decimal | None = None  # overrides PLATFORM_COMMISSION_RATE
    credited_keys: list[str] = Field(default_factory=list)  # "<order_id>:<course_id>" already in balance_cents


class CommissionEntryRecord(BaseModel):
    """One instructor credit per (order, course). Append-only."""
    order_id: str
    course_id: str
    instructor_id: str
    amount_cents: int
    platform_share_cents: int
    instructor_share_cents: int
    rate: Decimal
    created_at: datetime = Field(default_factory=utcnow)


class CouponRecord(BaseModel):
    id: str | None = None
    code: str
    discount_type: DiscountType
    value: Decimal  # percent for PERCENTAGE, currency units for FIXED
    max_uses: int | None = None
    used_count: int = 0
    redeemed_order_ids: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    is_active: bool = True
    instructor_id: str | None = None
    course_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class AuditLogRecord(BaseModel):
    user_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class FailedJobRecord(BaseModel):
    job_name: str
    job_id: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    created_at: datetime = Field(default_factory=utcnow)
