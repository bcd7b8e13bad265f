from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import IndexModel


class Enrollment(Document):
    user_id: str
    course_id: str
    order_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "enrollments"
        indexes = [IndexModel([("user_id", 1), ("course_id", 1)], unique=True)]
