from beanie import Document, Indexed
from pydantic import Field

from coursepay.models.fields import MongoDecimal


class InstructorProfile(Document):
    """Running balance; only ever changed by a guarded $inc that also records its credit key."""
    user_id: Indexed(str, unique=True)
    balance_cents: int = 0
    commission_rate: MongoDecimal | None = None
    credited_keys: list[str] = Field(default_factory=list)

    class Settings:
        name = "instructor_profiles"
