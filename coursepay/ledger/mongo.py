"""MongoDB ledger backend (Beanie documents, Motor sessions)."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from beanie import PydanticObjectId
from beanie.operators import In
from bson import Decimal128
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo.errors import DuplicateKeyError

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConflictError
from coursepay.core.logging import get_logger
from coursepay.db.init import init_db
from coursepay.ledger.base import LedgerStore
from coursepay.models.audit_log import AuditLog
from coursepay.models.commission_entry import CommissionEntry
from coursepay.models.coupon import Coupon
from coursepay.models.course import Course
from coursepay.models.enrollment import Enrollment
from coursepay.models.failed_job import FailedJob
from coursepay.models.instructor_profile import InstructorProfile
from coursepay.models.order import Order
from coursepay.models.user import User
from coursepay.schemas import (
    AuditLogRecord,
    CommissionEntryRecord,
    CouponRecord,
    CourseRecord,
    EnrollmentRecord,
    FailedJobRecord,
    InstructorProfileRecord,
    OrderRecord,
    OrderStatus,
    UserRecord,
    utcnow,
)

log = get_logger(__name__)

_DOC_EXCLUDE = {"id", "revision_id"}

T = TypeVar("T")


def _oid(value: str) -> PydanticObjectId | None:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        return None


def _order_record(doc: Order) -> OrderRecord:
    return OrderRecord(id=str(doc.id), **doc.model_dump(exclude=_DOC_EXCLUDE))


def _coupon_record(doc: Coupon) -> CouponRecord:
    return CouponRecord(id=str(doc.id), **doc.model_dump(exclude=_DOC_EXCLUDE))


class MongoLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self.client: AsyncIOMotorClient | None = None
        self.use_transactions = get_settings().mongodb_transactions

    async def connect(self) -> None:
        if self.client is None:
            self.client = await init_db()
            log.info("ledger_connected", backend="mongo", transactions=self.use_transactions)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncIOMotorClientSession | None]:
        if not self.use_transactions:
            # Conditional writes and unique keys still hold without a session
            yield None
            return
        await self.connect()
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def run_in_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Commit or retry the whole body on TransientTransactionError (write conflicts between deliveries)."""
        if not self.use_transactions:
            return await fn(None)
        await self.connect()
        async with await self.client.start_session() as session:
            return await session.with_transaction(fn)

    # Users / catalog

    async def find_user(self, user_id: str) -> UserRecord | None:
        oid = _oid(user_id)
        doc = await User.get(oid) if oid else None
        if not doc:
            return None
        return UserRecord(id=str(doc.id), email=doc.email, name=doc.name, role=doc.role, session_version=doc.session_version)

    async def find_course(self, course_id: str) -> CourseRecord | None:
        oid = _oid(course_id)
        doc = await Course.get(oid) if oid else None
        if not doc:
            return None
        return CourseRecord(id=str(doc.id), **doc.model_dump(exclude=_DOC_EXCLUDE | {"created_at"}))

    async def find_courses(self, course_ids: list[str]) -> list[CourseRecord]:
        oids = [o for o in (_oid(c) for c in course_ids) if o is not None]
        if not oids:
            return []
        docs = await Course.find(In(Course.id, oids)).to_list()
        return [CourseRecord(id=str(d.id), **d.model_dump(exclude=_DOC_EXCLUDE | {"created_at"})) for d in docs]

    # Orders

    async def create_order_with_items(self, order: OrderRecord, session: Any = None) -> OrderRecord:
        doc = Order(**order.model_dump(exclude={"id"}))
        if order.id:
            doc.id = _oid(order.id)
        try:
            await doc.insert(session=session)
        except DuplicateKeyError as e:
            raise ConflictError("Order already exists", details={"gateway_ref": order.gateway_ref}) from e
        return _order_record(doc)

    async def find_order(self, order_id: str, session: Any = None) -> OrderRecord | None:
        oid = _oid(order_id)
        doc = await Order.get(oid, session=session) if oid else None
        return _order_record(doc) if doc else None

    async def find_order_by_gateway_ref(self, gateway_ref: str, session: Any = None) -> OrderRecord | None:
        doc = await Order.find_one(Order.gateway_ref == gateway_ref, session=session)
        return _order_record(doc) if doc else None

    async def find_orders_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[OrderRecord]:
        docs = (
            await Order.find(Order.user_id == user_id)
            .sort(-Order.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [_order_record(d) for d in docs]

    async def set_gateway_ref(self, order_id: str, gateway_ref: str, session: Any = None) -> None:
        try:
            await Order.get_motor_collection().update_one(
                {"_id": _oid(order_id)},
                {"$set": {"gateway_ref": gateway_ref, "updated_at": utcnow()}},
                session=session,
            )
        except DuplicateKeyError as e:
            raise ConflictError("Gateway reference already used", details={"gateway_ref": gateway_ref}) from e

    async def conditional_update_order_status(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        session: Any = None,
        **fields: Any,
    ) -> bool:
        update = {**fields, "status": to_status.value, "updated_at": utcnow()}
        result = await Order.get_motor_collection().update_one(
            {"_id": _oid(order_id), "status": from_status.value},
            {"$set": update},
            session=session,
        )
        return result.modified_count == 1

    async def mark_order_settled(self, order_id: str, settled_at: datetime, session: Any = None) -> None:
        await Order.get_motor_collection().update_one(
            {"_id": _oid(order_id)},
            {"$set": {"settled_at": settled_at, "updated_at": utcnow()}},
            session=session,
        )

    # Balances

    async def find_instructor_profile(self, instructor_id: str, session: Any = None) -> InstructorProfileRecord | None:
        doc = await InstructorProfile.find_one(InstructorProfile.user_id == instructor_id, session=session)
        if not doc:
            return None
        return InstructorProfileRecord(**doc.model_dump(exclude=_DOC_EXCLUDE))

    async def credit_balance_once(
        self, instructor_id: str, credit_key: str, delta_cents: int, session: Any = None
    ) -> bool:
        collection = InstructorProfile.get_motor_collection()
        try:
            await collection.update_one(
                {"user_id": instructor_id},
                {"$setOnInsert": {"balance_cents": 0, "commission_rate": None, "credited_keys": []}},
                upsert=True,
                session=session,
            )
        except DuplicateKeyError:
            pass  # created by a concurrent upsert
        result = await collection.update_one(
            {"user_id": instructor_id, "credited_keys": {"$ne": credit_key}},
            {"$inc": {"balance_cents": delta_cents}, "$push": {"credited_keys": credit_key}},
            session=session,
        )
        return result.modified_count == 1

    async def record_commission_if_absent(self, entry: CommissionEntryRecord, session: Any = None) -> bool:
        fields = entry.model_dump(exclude={"order_id", "course_id"})
        fields["rate"] = Decimal128(str(entry.rate))
        result = await CommissionEntry.get_motor_collection().update_one(
            {"order_id": entry.order_id, "course_id": entry.course_id},
            {"$setOnInsert": fields},
            upsert=True,
            session=session,
        )
        return result.upserted_id is not None

    async def list_commissions(self, instructor_id: str, limit: int = 50, offset: int = 0) -> list[CommissionEntryRecord]:
        docs = (
            await CommissionEntry.find(CommissionEntry.instructor_id == instructor_id)
            .sort(-CommissionEntry.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [CommissionEntryRecord(**d.model_dump(exclude=_DOC_EXCLUDE)) for d in docs]

    # Enrollments

    async def create_enrollment_if_absent(
        self, user_id: str, course_id: str, order_id: str | None = None, session: Any = None
    ) -> bool:
        result = await Enrollment.get_motor_collection().update_one(
            {"user_id": user_id, "course_id": course_id},
            {"$setOnInsert": {"order_id": order_id, "created_at": utcnow()}},
            upsert=True,
            session=session,
        )
        return result.upserted_id is not None

    async def find_enrollments(self, user_id: str, course_ids: list[str] | None = None) -> list[EnrollmentRecord]:
        query = [Enrollment.user_id == user_id]
        if course_ids is not None:
            query.append(In(Enrollment.course_id, course_ids))
        docs = await Enrollment.find(*query).to_list()
        return [EnrollmentRecord(**d.model_dump(exclude=_DOC_EXCLUDE)) for d in docs]

    # Coupons

    async def find_coupon(self, code: str) -> CouponRecord | None:
        doc = await Coupon.find_one(Coupon.code == code.upper())
        return _coupon_record(doc) if doc else None

    async def create_coupon(self, coupon: CouponRecord) -> CouponRecord:
        doc = Coupon(**coupon.model_dump(exclude={"id"}))
        doc.code = coupon.code.upper()
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise ConflictError("Coupon code already exists", details={"code": doc.code}) from e
        return _coupon_record(doc)

    async def list_coupons(self, instructor_id: str) -> list[CouponRecord]:
        docs = await Coupon.find(Coupon.instructor_id == instructor_id).sort(-Coupon.created_at).to_list()
        return [_coupon_record(d) for d in docs]

    async def redeem_coupon(self, code: str, order_id: str, session: Any = None) -> bool:
        result = await Coupon.get_motor_collection().update_one(
            {
                "code": code.upper(),
                "redeemed_order_ids": {"$ne": order_id},
                "$or": [
                    {"max_uses": None},
                    {"$expr": {"$lt": ["$used_count", "$max_uses"]}},
                ],
            },
            {"$inc": {"used_count": 1}, "$push": {"redeemed_order_ids": order_id}},
            session=session,
        )
        return result.modified_count == 1

    # Bookkeeping

    async def record_audit(self, entry: AuditLogRecord, session: Any = None) -> None:
        await AuditLog(**entry.model_dump()).insert(session=session)

    async def record_failed_job(self, entry: FailedJobRecord) -> None:
        await FailedJob(**entry.model_dump()).insert()
