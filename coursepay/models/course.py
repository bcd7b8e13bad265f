from datetime import datetime

from beanie import Document
from pydantic import Field


class Course(Document):
    title: str
    price_cents: int
    instructor_id: str
    is_published: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "courses"
        indexes = [[("instructor_id", 1)]]
