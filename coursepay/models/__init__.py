from coursepay.models.user import User
from coursepay.models.course import Course
from coursepay.models.order import Order, OrderItem
from coursepay.models.enrollment import Enrollment
from coursepay.models.instructor_profile import InstructorProfile
from coursepay.models.commission_entry import CommissionEntry
from coursepay.models.coupon import Coupon
from coursepay.models.audit_log import AuditLog
from coursepay.models.failed_job import FailedJob

__all__ = [
    "User",
    "Course",
    "Order",
    "OrderItem",
    "Enrollment",
    "InstructorProfile",
    "CommissionEntry",
    "Coupon",
    "AuditLog",
    "FailedJob",
]
