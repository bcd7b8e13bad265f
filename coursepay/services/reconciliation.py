"""
Payment reconciliation: converge a verified payment event with the order state exactly once.

State machine per order: PENDING -> COMPLETED | FAILED, terminal thereafter. Completion applies
instructor credits, enrollments and coupon redemption in one ledger transaction. Every step is
also duplicate-safe on its own (status compare-and-swap, balance credits and coupon redemptions
keyed by order, commission entries unique per (order, course), enrollment upserts), so a
COMPLETED order that was never marked settled can be resumed by the next delivery without
double-crediting.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple

from coursepay.core.audit import log_event
from coursepay.core.config import get_settings
from coursepay.core.exceptions import ReconciliationError
from coursepay.core.logging import get_logger
from coursepay.gateways.events import PaymentEvent, PaymentOutcome
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import CommissionEntryRecord, GatewayName, OrderRecord, OrderStatus, utcnow
from coursepay.services.commission import split

log = get_logger(__name__)

Notifier = Callable[[LedgerStore, OrderRecord], Awaitable[None]]


class ReconcileResult(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    NOT_FOUND = "NOT_FOUND"
    IGNORED = "IGNORED"


def is_settled(order: OrderRecord) -> bool:
    if order.status == OrderStatus.FAILED:
        return True
    return order.status == OrderStatus.COMPLETED and order.settled_at is not None


async def find_order_for_event(
    store: LedgerStore,
    gateway_ref: str | None,
    order_id: str | None = None,
    gateway: GatewayName | None = None,
) -> OrderRecord | None:
    """By vendor reference first; by the echoed order id when the webhook beat set_gateway_ref."""
    order = await store.find_order_by_gateway_ref(gateway_ref) if gateway_ref else None
    if order is None and order_id:
        order = await store.find_order(order_id)
        if order is not None and gateway is not None and order.gateway != gateway:
            log.warning("reconcile_gateway_mismatch", order_id=order_id, expected=order.gateway.value, got=gateway.value)
            return None
    return order


async def reconcile(
    store: LedgerStore,
    gateway_ref: str | None,
    outcome: PaymentOutcome,
    *,
    order_id: str | None = None,
    payment_id: str | None = None,
    gateway: GatewayName | None = None,
    notifier: Notifier | None = None,
) -> ReconcileResult:
    """Apply one verified payment outcome. Safe to call any number of times for the same event."""
    order = await find_order_for_event(store, gateway_ref, order_id, gateway)
    if order is None:
        log.warning("reconcile_order_not_found", gateway_ref=gateway_ref, order_id=order_id, outcome=outcome.value)
        return ReconcileResult.NOT_FOUND
    if outcome == PaymentOutcome.REFUNDED:
        await _record_refund(store, order, payment_id)
        return ReconcileResult.IGNORED
    if is_settled(order):
        log.info("reconcile_already_settled", order_id=order.id, status=order.status.value, outcome=outcome.value)
        return ReconcileResult.ALREADY_SETTLED
    if outcome == PaymentOutcome.DENIED:
        return await _fail(store, order)

    result, applied = await _complete(store, order, payment_id)
    if applied is not None:
        await _notify(store, applied, notifier)
    return result


async def reconcile_event(store: LedgerStore, event: PaymentEvent, notifier: Notifier | None = None) -> ReconcileResult:
    return await reconcile(
        store,
        event.external_ref,
        event.outcome,
        order_id=event.order_id,
        payment_id=event.payment_id,
        gateway=event.gateway,
        notifier=notifier,
    )


async def _fail(store: LedgerStore, order: OrderRecord) -> ReconcileResult:
    async def apply(tx: Any) -> bool:
        won = await store.conditional_update_order_status(
            order.id,
            OrderStatus.PENDING,
            OrderStatus.FAILED,
            session=tx,
            failure_reason="payment_denied",
            settled_at=utcnow(),
        )
        if won:
            await log_event(store, order.user_id, "order_failed", "order", order.id, {"gateway": order.gateway.value}, session=tx)
        return won

    if not await store.run_in_transaction(apply):
        log.info("reconcile_already_settled", order_id=order.id, outcome=PaymentOutcome.DENIED.value)
        return ReconcileResult.ALREADY_SETTLED
    log.info("reconcile_failed", order_id=order.id, gateway=order.gateway.value)
    return ReconcileResult.FAILED


class _Settlement(NamedTuple):
    order: OrderRecord
    won: bool
    credited: int
    enrolled: int


async def _complete(
    store: LedgerStore, order: OrderRecord, payment_id: str | None
) -> tuple[ReconcileResult, OrderRecord | None]:
    """Returns (result, order); order is set when this call granted access and the buyer should be notified."""
    fields: dict[str, Any] = {"gateway_payment_id": payment_id} if payment_id else {}

    async def apply(tx: Any) -> _Settlement | None:
        won = await store.conditional_update_order_status(
            order.id, OrderStatus.PENDING, OrderStatus.COMPLETED, session=tx, **fields
        )
        current = await store.find_order(order.id, session=tx)
        if current is None:
            raise ReconciliationError("Order vanished during reconciliation", details={"order_id": order.id})
        if not won:
            if current.status == OrderStatus.FAILED:
                log.error("payment_succeeded_after_failure", order_id=order.id, payment_id=payment_id)
                await log_event(
                    store,
                    current.user_id,
                    "payment_succeeded_after_failure",
                    "order",
                    order.id,
                    {"payment_id": payment_id, "gateway": current.gateway.value},
                    session=tx,
                )
                return None
            if current.settled_at is not None:
                return None
            log.warning("reconcile_resuming", order_id=order.id)

        credited = await _credit_instructors(store, current, tx)
        enrolled = 0
        for item in current.items:
            if await store.create_enrollment_if_absent(current.user_id, item.course_id, order_id=current.id, session=tx):
                enrolled += 1
        # Counted at most once per order, including on resume
        if current.coupon_code and not await store.redeem_coupon(current.coupon_code, current.id, session=tx):
            if won:
                log.warning("coupon_usage_limit_reached", order_id=current.id, code=current.coupon_code)
        await store.mark_order_settled(current.id, utcnow(), session=tx)
        await log_event(
            store,
            current.user_id,
            "order_completed",
            "order",
            current.id,
            {"total_cents": current.total_cents, "credited_cents": credited, "gateway": current.gateway.value},
            session=tx,
        )
        return _Settlement(current, won, credited, enrolled)

    try:
        settled = await store.run_in_transaction(apply)
    except ReconciliationError:
        raise
    except Exception as e:
        log.exception("reconcile_error", order_id=order.id)
        raise ReconciliationError("Reconciliation failed", details={"order_id": order.id}) from e

    if settled is None:
        return ReconcileResult.ALREADY_SETTLED, None
    log.info(
        "reconcile_completed",
        order_id=settled.order.id,
        user_id=settled.order.user_id,
        total_cents=settled.order.total_cents,
        credited_cents=settled.credited,
        resumed=not settled.won,
    )
    return ReconcileResult.COMPLETED, (settled.order if settled.won or settled.enrolled else None)


async def _credit_instructors(store: LedgerStore, order: OrderRecord, tx: Any) -> int:
    default_rate = get_settings().platform_commission_rate
    credited = 0
    for item in order.items:
        profile = await store.find_instructor_profile(item.instructor_id, session=tx)
        rate = profile.commission_rate if profile and profile.commission_rate is not None else Decimal(default_rate)
        shares = split(item.net_amount_cents, rate)
        entry = CommissionEntryRecord(
            order_id=order.id,
            course_id=item.course_id,
            instructor_id=item.instructor_id,
            amount_cents=shares.amount_cents,
            platform_share_cents=shares.platform_share_cents,
            instructor_share_cents=shares.instructor_share_cents,
            rate=shares.rate,
        )
        await store.record_commission_if_absent(entry, session=tx)
        # At most once per (order, course), independent of the entry write above
        credit_key = f"{order.id}:{item.course_id}"
        if await store.credit_balance_once(item.instructor_id, credit_key, shares.instructor_share_cents, session=tx):
            credited += shares.instructor_share_cents
    return credited


async def _record_refund(store: LedgerStore, order: OrderRecord, payment_id: str | None) -> None:
    # Refunds never move the state machine, revoke access or claw back balance; finance follows up
    log.warning("payment_refunded", order_id=order.id, status=order.status.value, payment_id=payment_id)
    await log_event(
        store,
        order.user_id,
        "payment_refunded",
        "order",
        order.id,
        {"payment_id": payment_id, "gateway": order.gateway.value, "status": order.status.value},
    )


async def _notify(store: LedgerStore, order: OrderRecord, notifier: Notifier | None) -> None:
    if notifier is None:
        from coursepay.services.notifications import notify_order_completed
        notifier = notify_order_completed
    try:
        await notifier(store, order)
    except Exception:
        log.exception("notification_enqueue_failed", order_id=order.id)
