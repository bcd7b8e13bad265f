from datetime import datetime

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import IndexModel

from coursepay.schemas import GatewayName, OrderStatus


class OrderItem(BaseModel):
    """Embedded so that an order and its items are written in one atomic insert."""
    course_id: str
    instructor_id: str
    title: str = ""
    price_at_purchase_cents: int  # snapshot, never follows later price changes
    net_amount_cents: int


class Order(Document):
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    gateway: GatewayName
    gateway_ref: str | None = None  # vendor checkout reference, reconciliation key
    gateway_payment_id: str | None = None
    currency: str = "BRL"
    subtotal_cents: int
    discount_cents: int = 0
    total_cents: int
    coupon_code: str | None = None
    items: list[OrderItem] = Field(default_factory=list)
    failure_reason: str | None = None
    settled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            IndexModel([("gateway_ref", 1)], unique=True, partialFilterExpression={"gateway_ref": {"$type": "string"}}),
        ]
