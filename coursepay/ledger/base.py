from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from coursepay.core.config import get_settings
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
)

T = TypeVar("T")


class LedgerStore(ABC):
    """
    Transactional store for orders, enrollments, instructor balances and coupons.

    Every mutating call takes an optional `session` obtained from `transaction()`;
    calls made with the same session commit or roll back together.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Async context manager yielding a session. Exceptions roll the session back."""
        ...

    async def run_in_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run `fn(session)` in one transaction. Backends that can abort on conflict retry the whole body."""
        async with self.transaction() as tx:
            return await fn(tx)

    # Users / catalog

    @abstractmethod
    async def find_user(self, user_id: str) -> UserRecord | None:
        ...

    @abstractmethod
    async def find_course(self, course_id: str) -> CourseRecord | None:
        ...

    @abstractmethod
    async def find_courses(self, course_ids: list[str]) -> list[CourseRecord]:
        """Return the courses that exist (any publish state), in no particular order."""
        ...

    # Orders

    @abstractmethod
    async def create_order_with_items(self, order: OrderRecord, session: Any = None) -> OrderRecord:
        """Insert order and its items in one write; assigns id when empty."""
        ...

    @abstractmethod
    async def find_order(self, order_id: str, session: Any = None) -> OrderRecord | None:
        ...

    @abstractmethod
    async def find_order_by_gateway_ref(self, gateway_ref: str, session: Any = None) -> OrderRecord | None:
        ...

    @abstractmethod
    async def find_orders_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> list[OrderRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def set_gateway_ref(self, order_id: str, gateway_ref: str, session: Any = None) -> None:
        ...

    @abstractmethod
    async def conditional_update_order_status(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        session: Any = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap on status; extra fields are set only when the swap wins."""
        ...

    @abstractmethod
    async def mark_order_settled(self, order_id: str, settled_at: datetime, session: Any = None) -> None:
        ...

    # Balances

    @abstractmethod
    async def find_instructor_profile(self, instructor_id: str, session: Any = None) -> InstructorProfileRecord | None:
        ...

    @abstractmethod
    async def credit_balance_once(
        self, instructor_id: str, credit_key: str, delta_cents: int, session: Any = None
    ) -> bool:
        """
        Add delta_cents to the balance unless credit_key was already applied, in one
        single-document write. Creates the profile when missing. True when applied.
        """
        ...

    @abstractmethod
    async def record_commission_if_absent(self, entry: CommissionEntryRecord, session: Any = None) -> bool:
        """Insert unless (order_id, course_id) already exists. True when inserted."""
        ...

    @abstractmethod
    async def list_commissions(self, instructor_id: str, limit: int = 50, offset: int = 0) -> list[CommissionEntryRecord]:
        ...

    # Enrollments

    @abstractmethod
    async def create_enrollment_if_absent(
        self, user_id: str, course_id: str, order_id: str | None = None, session: Any = None
    ) -> bool:
        """True when a new enrollment was created, False when it already existed."""
        ...

    @abstractmethod
    async def find_enrollments(self, user_id: str, course_ids: list[str] | None = None) -> list[EnrollmentRecord]:
        ...

    # Coupons

    @abstractmethod
    async def find_coupon(self, code: str) -> CouponRecord | None:
        ...

    @abstractmethod
    async def create_coupon(self, coupon: CouponRecord) -> CouponRecord:
        """Raises ConflictError when the code is taken."""
        ...

    @abstractmethod
    async def list_coupons(self, instructor_id: str) -> list[CouponRecord]:
        ...

    @abstractmethod
    async def redeem_coupon(self, code: str, order_id: str, session: Any = None) -> bool:
        """Count order_id against the coupon at most once, unless max_uses is reached. True when counted."""
        ...

    # Bookkeeping

    @abstractmethod
    async def record_audit(self, entry: AuditLogRecord, session: Any = None) -> None:
        ...

    @abstractmethod
    async def record_failed_job(self, entry: FailedJobRecord) -> None:
        ...

    async def connect(self) -> None:
        """Open connections / create indexes. No-op by default."""
        return None


_store: LedgerStore | None = None


def get_ledger_store() -> LedgerStore:
    global _store
    if _store is None:
        settings = get_settings()
        if settings.ledger_backend == "memory":
            from coursepay.ledger.memory import MemoryLedgerStore
            _store = MemoryLedgerStore()
        else:
            from coursepay.ledger.mongo import MongoLedgerStore
            _store = MongoLedgerStore()
    return _store


def set_ledger_store(store: LedgerStore | None) -> None:
    global _store
    _store = store
