"""Reconciliation engine against the in-memory ledger."""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from pymongo.errors import PyMongoError

from coursepay.core.exceptions import ReconciliationError
from coursepay.gateways.events import PaymentEvent, PaymentOutcome
from coursepay.ledger.memory import MemoryLedgerStore
from coursepay.schemas import CouponRecord, DiscountType, GatewayName, InstructorProfileRecord, OrderStatus
from coursepay.services.checkout import checkout
from coursepay.services.reconciliation import ReconcileResult, reconcile, reconcile_event

from conftest import seed

pytestmark = pytest.mark.asyncio


async def _pending_order(store, gateways, course_ids=("course-a",), coupon=None, user_id="student-1"):
    result = await checkout(store, user_id, list(course_ids), "CREDIT_CARD", coupon, gateway_factory=gateways)
    order = await store.find_order(result.order_id)
    assert order.status == OrderStatus.PENDING
    return order


async def _balance(store, instructor_id):
    profile = await store.find_instructor_profile(instructor_id)
    return profile.balance_cents if profile else 0


def _interleave_lookups(store, monkeypatch):
    """Yield to the event loop on every order lookup so concurrent deliveries overlap."""
    original = store.find_order_by_gateway_ref

    async def lookup(*args, **kwargs):
        await asyncio.sleep(0)
        return await original(*args, **kwargs)

    monkeypatch.setattr(store, "find_order_by_gateway_ref", lookup)


async def test_purchase_with_coupon_completes_and_credits_instructor(store, gateways, notifier):
    await store.create_coupon(
        CouponRecord(code="SAVE20", discount_type=DiscountType.PERCENTAGE, value=Decimal("20"), max_uses=10, used_count=3)
    )
    order = await _pending_order(store, gateways, coupon="SAVE20")
    assert order.total_cents == 80_00

    result = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, payment_id="pi_1", notifier=notifier)

    assert result == ReconcileResult.COMPLETED
    order = await store.find_order(order.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.settled_at is not None
    assert order.gateway_payment_id == "pi_1"
    assert await store.find_enrollments("student-1", ["course-a"])
    assert await _balance(store, "inst-1") == 56_00
    entry = store.commissions[(order.id, "course-a")]
    assert entry.platform_share_cents == 24_00
    assert entry.instructor_share_cents == 56_00
    assert (await store.find_coupon("SAVE20")).used_count == 4
    assert [o.id for o in notifier.orders] == [order.id]


async def test_duplicate_delivery_credits_once(store, gateways, notifier):
    order = await _pending_order(store, gateways)
    first = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    second = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    assert first == ReconcileResult.COMPLETED
    assert second == ReconcileResult.ALREADY_SETTLED
    assert await _balance(store, "inst-1") == 70_00
    assert len(store.commissions) == 1
    assert len(store.enrollments) == 1
    assert len(notifier.orders) == 1


async def test_denied_after_completed_is_a_no_op(store, gateways, notifier):
    order = await _pending_order(store, gateways)
    await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    result = await reconcile(store, order.gateway_ref, PaymentOutcome.DENIED, notifier=notifier)

    assert result == ReconcileResult.ALREADY_SETTLED
    order = await store.find_order(order.id)
    assert order.status == OrderStatus.COMPLETED
    assert await _balance(store, "inst-1") == 70_00
    assert await store.find_enrollments("student-1", ["course-a"])


async def test_denied_fails_order_without_side_effects(store, gateways, notifier):
    order = await _pending_order(store, gateways)

    result = await reconcile(store, order.gateway_ref, PaymentOutcome.DENIED, notifier=notifier)

    assert result == ReconcileResult.FAILED
    order = await store.find_order(order.id)
    assert order.status == OrderStatus.FAILED
    assert order.failure_reason == "payment_denied"
    assert await _balance(store, "inst-1") == 0
    assert not store.enrollments
    assert not notifier.orders

    late = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    assert late == ReconcileResult.ALREADY_SETTLED
    assert (await store.find_order(order.id)).status == OrderStatus.FAILED


async def test_unknown_reference_is_not_found(store):
    result = await reconcile(store, "cs_does_not_exist", PaymentOutcome.SUCCEEDED)
    assert result == ReconcileResult.NOT_FOUND
    assert not store.audit_logs


async def test_falls_back_to_echoed_order_id(store, gateways, notifier):
    order = await _pending_order(store, gateways)
    event = PaymentEvent(
        gateway=GatewayName.STRIPE,
        external_ref="cs_not_yet_recorded",
        order_id=order.id,
        outcome=PaymentOutcome.SUCCEEDED,
    )
    assert await reconcile_event(store, event, notifier=notifier) == ReconcileResult.COMPLETED


async def test_echoed_order_id_must_match_gateway(store, gateways):
    order = await _pending_order(store, gateways)
    event = PaymentEvent(gateway=GatewayName.PAYPAL, order_id=order.id, outcome=PaymentOutcome.SUCCEEDED)
    assert await reconcile_event(store, event) == ReconcileResult.NOT_FOUND
    assert (await store.find_order(order.id)).status == OrderStatus.PENDING


async def test_multi_course_order_credits_each_instructor(store, gateways, notifier):
    order = await _pending_order(store, gateways, course_ids=("course-a", "course-b", "course-c"))
    await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    # course-a 100.00 + course-c 33.33 for inst-1, course-b 50.00 for inst-2, 30% platform
    assert await _balance(store, "inst-1") == 70_00 + 23_33
    assert await _balance(store, "inst-2") == 35_00
    assert len(store.enrollments) == 3
    total = sum(e.platform_share_cents + e.instructor_share_cents for e in store.commissions.values())
    assert total == order.total_cents


async def test_instructor_rate_override(store, gateways, notifier):
    store.add_instructor_profile(InstructorProfileRecord(user_id="inst-1", commission_rate=Decimal("10")))
    order = await _pending_order(store, gateways)
    await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    assert await _balance(store, "inst-1") == 90_00


async def test_concurrent_deliveries_settle_once(store, gateways, notifier, monkeypatch):
    order = await _pending_order(store, gateways, course_ids=("course-a", "course-b"))
    _interleave_lookups(store, monkeypatch)

    results = await asyncio.gather(
        *[reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) for _ in range(10)]
    )

    assert results.count(ReconcileResult.COMPLETED) == 1
    assert results.count(ReconcileResult.ALREADY_SETTLED) == 9
    assert await _balance(store, "inst-1") == 70_00
    assert await _balance(store, "inst-2") == 35_00
    assert len(store.commissions) == 2
    assert len(notifier.orders) == 1


async def test_concurrent_success_and_denial_pick_one(store, gateways, notifier, monkeypatch):
    order = await _pending_order(store, gateways)
    _interleave_lookups(store, monkeypatch)

    results = await asyncio.gather(
        reconcile(store, order.gateway_ref, PaymentOutcome.DENIED, notifier=notifier),
        reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier),
    )

    order = await store.find_order(order.id)
    assert results[0] == ReconcileResult.FAILED
    assert results[1] == ReconcileResult.ALREADY_SETTLED
    assert order.status == OrderStatus.FAILED
    assert await _balance(store, "inst-1") == 0
    assert any(a.event_type == "payment_succeeded_after_failure" for a in store.audit_logs)


async def test_crash_mid_transaction_rolls_back_and_retry_succeeds(store, gateways, notifier, monkeypatch):
    await store.create_coupon(CouponRecord(code="ONCE", discount_type=DiscountType.FIXED, value=Decimal("10"), max_uses=1))
    order = await _pending_order(store, gateways, course_ids=("course-a", "course-b"), coupon="ONCE")
    original = store.create_enrollment_if_absent

    async def boom(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "create_enrollment_if_absent", boom)
    with pytest.raises(ReconciliationError):
        await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    after_crash = await store.find_order(order.id)
    assert after_crash.status == OrderStatus.PENDING
    assert await _balance(store, "inst-1") == 0
    assert not store.commissions
    assert not store.enrollments
    assert (await store.find_coupon("ONCE")).used_count == 0
    assert not notifier.orders

    monkeypatch.setattr(store, "create_enrollment_if_absent", original)
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.COMPLETED
    assert len(store.enrollments) == 2
    assert (await store.find_coupon("ONCE")).used_count == 1
    assert sum(e.instructor_share_cents for e in store.commissions.values()) == (
        await _balance(store, "inst-1") + await _balance(store, "inst-2")
    )


class NonTransactionalStore(MemoryLedgerStore):
    """Conditional writes only, like a Mongo deployment without a replica set."""

    @asynccontextmanager
    async def transaction(self):
        yield None


async def test_crash_without_transactions_resumes_without_double_credit(gateways, notifier, monkeypatch):
    store = seed(NonTransactionalStore())
    order = await _pending_order(store, gateways, course_ids=("course-a", "course-b"))
    original = store.create_enrollment_if_absent
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("primary stepped down")
        return await original(*args, **kwargs)

    monkeypatch.setattr(store, "create_enrollment_if_absent", flaky)
    with pytest.raises(ReconciliationError):
        await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    partial = await store.find_order(order.id)
    assert partial.status == OrderStatus.COMPLETED
    assert partial.settled_at is None
    assert await _balance(store, "inst-1") == 70_00

    result = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    assert result == ReconcileResult.COMPLETED
    settled = await store.find_order(order.id)
    assert settled.settled_at is not None
    assert await _balance(store, "inst-1") == 70_00
    assert await _balance(store, "inst-2") == 35_00
    assert len(store.enrollments) == 2
    assert len(notifier.orders) == 1
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED) == ReconcileResult.ALREADY_SETTLED


async def test_resumed_delivery_redeems_coupon_the_crash_skipped(gateways, notifier, monkeypatch):
    store = seed(NonTransactionalStore())
    await store.create_coupon(CouponRecord(code="ONCE", discount_type=DiscountType.FIXED, value=Decimal("10"), max_uses=1))
    order = await _pending_order(store, gateways, coupon="ONCE")
    original = store.create_enrollment_if_absent

    async def boom(*args, **kwargs):
        raise RuntimeError("primary stepped down")

    monkeypatch.setattr(store, "create_enrollment_if_absent", boom)
    with pytest.raises(ReconciliationError):
        await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    assert (await store.find_order(order.id)).status == OrderStatus.COMPLETED
    assert (await store.find_coupon("ONCE")).used_count == 0

    monkeypatch.setattr(store, "create_enrollment_if_absent", original)
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.COMPLETED
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.ALREADY_SETTLED

    coupon = await store.find_coupon("ONCE")
    assert coupon.used_count == 1
    assert coupon.redeemed_order_ids == [order.id]


async def test_resumed_delivery_does_not_redeem_coupon_twice(gateways, notifier, monkeypatch):
    store = seed(NonTransactionalStore())
    await store.create_coupon(CouponRecord(code="SAVE5", discount_type=DiscountType.FIXED, value=Decimal("5"), max_uses=5))
    order = await _pending_order(store, gateways, coupon="SAVE5")
    original = store.mark_order_settled

    async def boom(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "mark_order_settled", boom)
    with pytest.raises(ReconciliationError):
        await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    assert (await store.find_coupon("SAVE5")).used_count == 1

    monkeypatch.setattr(store, "mark_order_settled", original)
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.COMPLETED
    assert (await store.find_coupon("SAVE5")).used_count == 1
    assert await _balance(store, "inst-1") == 66_50


async def test_credit_lost_after_commission_entry_is_applied_on_resume(gateways, notifier, monkeypatch):
    store = seed(NonTransactionalStore())
    order = await _pending_order(store, gateways)
    original = store.credit_balance_once

    async def boom(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(store, "credit_balance_once", boom)
    with pytest.raises(ReconciliationError):
        await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)
    assert len(store.commissions) == 1
    assert await _balance(store, "inst-1") == 0

    monkeypatch.setattr(store, "credit_balance_once", original)
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.COMPLETED
    assert await _balance(store, "inst-1") == 70_00
    assert await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier) == ReconcileResult.ALREADY_SETTLED
    assert await _balance(store, "inst-1") == 70_00
    assert len(store.commissions) == 1


class WriteConflictStore(MemoryLedgerStore):
    """Aborts the first transaction attempt with a transient write conflict, then retries the body."""

    def __init__(self) -> None:
        super().__init__()
        self.conflicts = 1
        self.attempts = 0

    async def run_in_transaction(self, fn):
        while True:
            self.attempts += 1
            try:
                async with self.transaction() as tx:
                    result = await fn(tx)
                    if self.conflicts:
                        self.conflicts -= 1
                        raise PyMongoError("WriteConflict", error_labels=["TransientTransactionError"])
                    return result
            except PyMongoError as exc:
                if not exc.has_error_label("TransientTransactionError"):
                    raise


async def test_write_conflict_between_deliveries_is_retried(gateways, notifier, monkeypatch):
    store = seed(WriteConflictStore())
    order = await _pending_order(store, gateways, course_ids=("course-a", "course-b"))
    _interleave_lookups(store, monkeypatch)

    results = await asyncio.gather(
        reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier),
        reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier),
    )

    assert sorted(r.value for r in results) == ["ALREADY_SETTLED", "COMPLETED"]
    assert store.attempts == 3
    assert await _balance(store, "inst-1") == 70_00
    assert await _balance(store, "inst-2") == 35_00
    assert len(notifier.orders) == 1


async def test_items_keep_price_at_purchase(store, gateways, notifier):
    order = await _pending_order(store, gateways)
    store.courses["course-a"].price_cents = 250_00

    await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    settled = await store.find_order(order.id)
    assert settled.items[0].price_at_purchase_cents == 100_00
    assert settled.total_cents == 100_00
    assert store.commissions[(order.id, "course-a")].amount_cents == 100_00
    assert await _balance(store, "inst-1") == 70_00


async def test_refund_is_audited_without_state_change(store, gateways, notifier):
    order = await _pending_order(store, gateways)
    await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=notifier)

    result = await reconcile(store, None, PaymentOutcome.REFUNDED, order_id=order.id, gateway=GatewayName.STRIPE)

    assert result == ReconcileResult.IGNORED
    assert (await store.find_order(order.id)).status == OrderStatus.COMPLETED
    assert await store.find_enrollments("student-1", ["course-a"])
    assert await _balance(store, "inst-1") == 70_00
    assert store.audit_logs[-1].event_type == "payment_refunded"


async def test_notifier_failure_does_not_undo_completion(store, gateways):
    async def broken(store, order):
        raise RuntimeError("redis down")

    order = await _pending_order(store, gateways)
    result = await reconcile(store, order.gateway_ref, PaymentOutcome.SUCCEEDED, notifier=broken)

    assert result == ReconcileResult.COMPLETED
    assert (await store.find_order(order.id)).status == OrderStatus.COMPLETED
