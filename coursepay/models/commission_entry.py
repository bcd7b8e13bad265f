from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import IndexModel

from coursepay.models.fields import MongoDecimal


class CommissionEntry(Document):
    order_id: str
    course_id: str
    instructor_id: str
    amount_cents: int
    platform_share_cents: int
    instructor_share_cents: int
    rate: MongoDecimal
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "commission_entries"
        indexes = [
            IndexModel([("order_id", 1), ("course_id", 1)], unique=True),
            [("instructor_id", 1), ("created_at", -1)],
        ]
