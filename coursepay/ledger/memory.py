"""In-process ledger backend for local runs and tests."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from coursepay.core.exceptions import ConflictError
from coursepay.core.logging import get_logger
from coursepay.ledger.base import LedgerStore
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


class MemoryTransaction:
    """Undo journal for one transaction."""

    def __init__(self) -> None:
        self.undo: list[Callable[[], None]] = []

    def on_rollback(self, fn: Callable[[], None]) -> None:
        self.undo.append(fn)

    def rollback(self) -> None:
        while self.undo:
            self.undo.pop()()


class MemoryLedgerStore(LedgerStore):
    """
    Dict-backed store. Single operations never await, so each is atomic on the event loop.
    Transactions are serialized by one lock and undone in reverse order on error.
    """

    def __init__(self) -> None:
        self._tx_lock = asyncio.Lock()
        self.users: dict[str, UserRecord] = {}
        self.courses: dict[str, CourseRecord] = {}
        self.orders: dict[str, OrderRecord] = {}
        self.enrollments: dict[tuple[str, str], EnrollmentRecord] = {}
        self.profiles: dict[str, InstructorProfileRecord] = {}
        self.commissions: dict[tuple[str, str], CommissionEntryRecord] = {}
        self.coupons: dict[str, CouponRecord] = {}
        self.audit_logs: list[AuditLogRecord] = []
        self.failed_jobs: list[FailedJobRecord] = []

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._tx_lock:
            tx = MemoryTransaction()
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise

    # Seeding helpers

    def add_user(self, user: UserRecord) -> UserRecord:
        self.users[user.id] = user
        return user

    def add_course(self, course: CourseRecord) -> CourseRecord:
        self.courses[course.id] = course
        return course

    def add_instructor_profile(self, profile: InstructorProfileRecord) -> InstructorProfileRecord:
        self.profiles[profile.user_id] = profile
        return profile

    # Users / catalog

    async def find_user(self, user_id: str) -> UserRecord | None:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def find_course(self, course_id: str) -> CourseRecord | None:
        course = self.courses.get(course_id)
        return course.model_copy() if course else None

    async def find_courses(self, course_ids: list[str]) -> list[CourseRecord]:
        return [self.courses[c].model_copy() for c in dict.fromkeys(course_ids) if c in self.courses]

    # Orders

    async def create_order_with_items(self, order: OrderRecord, session: MemoryTransaction | None = None) -> OrderRecord:
        stored = order.model_copy(deep=True)
        if not stored.id:
            stored.id = uuid.uuid4().hex
        if stored.id in self.orders:
            raise ConflictError("Order already exists", details={"order_id": stored.id})
        if stored.gateway_ref and self._by_ref(stored.gateway_ref):
            raise ConflictError("Gateway reference already used", details={"gateway_ref": stored.gateway_ref})
        self.orders[stored.id] = stored
        if session is not None:
            session.on_rollback(lambda: self.orders.pop(stored.id, None))
        return stored.model_copy(deep=True)

    def _by_ref(self, gateway_ref: str) -> OrderRecord | None:
        for order in self.orders.values():
            if order.gateway_ref == gateway_ref:
                return order
        return None

    async def find_order(self, order_id: str, session: MemoryTransaction | None = None) -> OrderRecord | None:
        order = self.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_order_by_gateway_ref(self, gateway_ref: str, session: MemoryTransaction | None = None) -> OrderRecord | None:
        order = self._by_ref(gateway_ref)
        return order.model_copy(deep=True) if order else None

    async def find_orders_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[OrderRecord]:
        mine = [o for o in self.orders.values() if o.user_id == user_id]
        mine.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in mine[offset:offset + limit]]

    async def set_gateway_ref(self, order_id: str, gateway_ref: str, session: MemoryTransaction | None = None) -> None:
        order = self.orders[order_id]
        other = self._by_ref(gateway_ref)
        if other is not None and other.id != order_id:
            raise ConflictError("Gateway reference already used", details={"gateway_ref": gateway_ref})
        previous = order.gateway_ref
        order.gateway_ref = gateway_ref
        order.updated_at = utcnow()
        if session is not None:
            session.on_rollback(lambda: setattr(order, "gateway_ref", previous))

    async def conditional_update_order_status(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        session: MemoryTransaction | None = None,
        **fields: Any,
    ) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.status != from_status:
            return False
        before = {key: getattr(order, key) for key in ("status", "updated_at", *fields)}
        order.status = to_status
        for key, value in fields.items():
            setattr(order, key, value)
        order.updated_at = utcnow()
        if session is not None:
            def undo() -> None:
                for key, value in before.items():
                    setattr(order, key, value)
            session.on_rollback(undo)
        return True

    async def mark_order_settled(self, order_id: str, settled_at: datetime, session: MemoryTransaction | None = None) -> None:
        order = self.orders[order_id]
        previous = order.settled_at
        order.settled_at = settled_at
        if session is not None:
            session.on_rollback(lambda: setattr(self.orders[order_id], "settled_at", previous))

    # Balances

    async def find_instructor_profile(self, instructor_id: str, session: MemoryTransaction | None = None) -> InstructorProfileRecord | None:
        profile = self.profiles.get(instructor_id)
        return profile.model_copy(deep=True) if profile else None

    async def credit_balance_once(
        self, instructor_id: str, credit_key: str, delta_cents: int, session: MemoryTransaction | None = None
    ) -> bool:
        created = instructor_id not in self.profiles
        if created:
            self.profiles[instructor_id] = InstructorProfileRecord(user_id=instructor_id)
        profile = self.profiles[instructor_id]
        if credit_key in profile.credited_keys:
            return False
        profile.balance_cents += delta_cents
        profile.credited_keys.append(credit_key)
        if session is not None:
            def undo() -> None:
                if created:
                    self.profiles.pop(instructor_id, None)
                else:
                    profile.balance_cents -= delta_cents
                    profile.credited_keys.remove(credit_key)
            session.on_rollback(undo)
        return True

    async def record_commission_if_absent(self, entry: CommissionEntryRecord, session: MemoryTransaction | None = None) -> bool:
        key = (entry.order_id, entry.course_id)
        if key in self.commissions:
            return False
        self.commissions[key] = entry.model_copy()
        if session is not None:
            session.on_rollback(lambda: self.commissions.pop(key, None))
        return True

    async def list_commissions(self, instructor_id: str, limit: int = 50, offset: int = 0) -> list[CommissionEntryRecord]:
        mine = [c for c in self.commissions.values() if c.instructor_id == instructor_id]
        mine.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy() for c in mine[offset:offset + limit]]

    # Enrollments

    async def create_enrollment_if_absent(
        self, user_id: str, course_id: str, order_id: str | None = None, session: MemoryTransaction | None = None
    ) -> bool:
        key = (user_id, course_id)
        if key in self.enrollments:
            return False
        self.enrollments[key] = EnrollmentRecord(user_id=user_id, course_id=course_id, order_id=order_id)
        if session is not None:
            session.on_rollback(lambda: self.enrollments.pop(key, None))
        return True

    async def find_enrollments(self, user_id: str, course_ids: list[str] | None = None) -> list[EnrollmentRecord]:
        wanted = set(course_ids) if course_ids is not None else None
        return [
            e.model_copy()
            for (uid, cid), e in self.enrollments.items()
            if uid == user_id and (wanted is None or cid in wanted)
        ]

    # Coupons

    async def find_coupon(self, code: str) -> CouponRecord | None:
        coupon = self.coupons.get(code.upper())
        return coupon.model_copy(deep=True) if coupon else None

    async def create_coupon(self, coupon: CouponRecord) -> CouponRecord:
        code = coupon.code.upper()
        if code in self.coupons:
            raise ConflictError("Coupon code already exists", details={"code": code})
        stored = coupon.model_copy(update={"code": code, "id": coupon.id or uuid.uuid4().hex}, deep=True)
        self.coupons[code] = stored
        return stored.model_copy(deep=True)

    async def list_coupons(self, instructor_id: str) -> list[CouponRecord]:
        mine = [c for c in self.coupons.values() if c.instructor_id == instructor_id]
        mine.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in mine]

    async def redeem_coupon(self, code: str, order_id: str, session: MemoryTransaction | None = None) -> bool:
        coupon = self.coupons.get(code.upper())
        if coupon is None or order_id in coupon.redeemed_order_ids:
            return False
        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            return False
        coupon.used_count += 1
        coupon.redeemed_order_ids.append(order_id)
        if session is not None:
            def undo() -> None:
                coupon.used_count -= 1
                coupon.redeemed_order_ids.remove(order_id)
            session.on_rollback(undo)
        return True

    # Bookkeeping

    async def record_audit(self, entry: AuditLogRecord, session: MemoryTransaction | None = None) -> None:
        self.audit_logs.append(entry)
        if session is not None:
            session.on_rollback(lambda: self.audit_logs.remove(entry))

    async def record_failed_job(self, entry: FailedJobRecord) -> None:
        self.failed_jobs.append(entry)
