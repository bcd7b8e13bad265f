import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from coursepay.core.config import get_settings
from coursepay.models.audit_log import AuditLog
from coursepay.models.commission_entry import CommissionEntry
from coursepay.models.coupon import Coupon
from coursepay.models.course import Course
from coursepay.models.enrollment import Enrollment
from coursepay.models.failed_job import FailedJob
from coursepay.models.instructor_profile import InstructorProfile
from coursepay.models.order import Order
from coursepay.models.user import User

DOCUMENT_MODELS = [
    User,
    Course,
    Order,
    Enrollment,
    InstructorProfile,
    CommissionEntry,
    Coupon,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> AsyncIOMotorClient:
    settings = get_settings()
    kwargs = {"tz_aware": True}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
