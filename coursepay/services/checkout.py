"""Checkout: validate cart, price it, create the PENDING order, hand off to the gateway."""

import asyncio
from typing import Callable

from pydantic import BaseModel

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConflictError, GatewayError, NotFoundError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.core.money import allocate, format_amount
from coursepay.gateways.base import PaymentGateway, get_gateway
from coursepay.gateways.events import PaymentOutcome
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import CourseRecord, GatewayName, OrderItemRecord, OrderRecord, OrderStatus
from coursepay.services import coupons as coupons_service
from coursepay.services.reconciliation import Notifier, is_settled, reconcile, reconcile_event

log = get_logger(__name__)

MAX_COURSES_PER_ORDER = 20

# On top of the gateway client timeout, before the order is left PENDING for the webhook
GATEWAY_GRACE_SECONDS = 5.0

PAYMENT_METHOD_GATEWAYS = {
    "CREDIT_CARD": GatewayName.STRIPE,
    "PAYPAL": GatewayName.PAYPAL,
    "PIX": GatewayName.MERCADOPAGO,
    "BOLETO": GatewayName.MERCADOPAGO,
    "MERCADOPAGO": GatewayName.MERCADOPAGO,
}

GatewayFactory = Callable[[GatewayName], PaymentGateway]


class CheckoutResult(BaseModel):
    order_id: str
    status: OrderStatus
    gateway: GatewayName
    subtotal: str
    discount: str
    total: str
    redirect_url: str | None = None
    immediate_result: OrderStatus | None = None


def gateway_for_method(payment_method: str) -> GatewayName:
    try:
        return PAYMENT_METHOD_GATEWAYS[(payment_method or "").upper()]
    except KeyError:
        raise ValidationError(
            "Unsupported payment method",
            details={"payment_method": payment_method, "supported": sorted(PAYMENT_METHOD_GATEWAYS)},
        ) from None


def _validate_course_ids(course_ids: list[str]) -> None:
    if not course_ids:
        raise ValidationError("At least one course is required")
    if len(course_ids) > MAX_COURSES_PER_ORDER:
        raise ValidationError(f"At most {MAX_COURSES_PER_ORDER} courses per order")
    if len(set(course_ids)) != len(course_ids):
        raise ValidationError("Duplicate course in cart")


def _price_items(
    courses: list[CourseRecord], discount_cents: int, coupon_course_id: str | None
) -> list[OrderItemRecord]:
    weights = [
        c.price_cents if coupon_course_id is None or c.id == coupon_course_id else 0
        for c in courses
    ]
    parts = allocate(discount_cents, weights)
    return [
        OrderItemRecord(
            course_id=c.id,
            instructor_id=c.instructor_id,
            title=c.title,
            price_at_purchase_cents=c.price_cents,
            net_amount_cents=c.price_cents - part,
        )
        for c, part in zip(courses, parts)
    ]


async def checkout(
    store: LedgerStore,
    user_id: str,
    course_ids: list[str],
    payment_method: str,
    coupon_code: str | None = None,
    gateway_factory: GatewayFactory = get_gateway,
    notifier: Notifier | None = None,
) -> CheckoutResult:
    settings = get_settings()
    gateway_name = gateway_for_method(payment_method)
    _validate_course_ids(course_ids)
    code = coupons_service.normalize_code(coupon_code) if coupon_code else None

    found = {c.id: c for c in await store.find_courses(course_ids) if c.is_published}
    missing = [cid for cid in course_ids if cid not in found]
    if missing:
        raise NotFoundError("One or more courses were not found", details={"course_ids": missing})
    enrolled = await store.find_enrollments(user_id, course_ids)
    if enrolled:
        raise ConflictError(
            "Already enrolled in one or more of these courses",
            details={"course_ids": sorted(e.course_id for e in enrolled)},
        )
    courses = [found[cid] for cid in course_ids]
    subtotal = sum(c.price_cents for c in courses)

    discount = 0
    applied_code = None
    coupon_course_id = None
    if code:
        coupon = await store.find_coupon(code)
        if coupon is None:
            raise NotFoundError("Coupon not found", details={"code": code})
        if coupon.course_id is None:
            base = subtotal
        else:
            base = sum(c.price_cents for c in courses if c.id == coupon.course_id)
        discount = coupons_service.evaluate(coupon, base)
        if discount > 0:
            applied_code = coupon.code
            coupon_course_id = coupon.course_id
        else:
            log.info("coupon_not_applied", code=code, user_id=user_id)
    total = max(0, subtotal - discount)

    order = await store.create_order_with_items(
        OrderRecord(
            id="",
            user_id=user_id,
            gateway=gateway_name,
            currency=settings.currency,
            subtotal_cents=subtotal,
            discount_cents=subtotal - total,
            total_cents=total,
            coupon_code=applied_code,
            items=_price_items(courses, subtotal - total, coupon_course_id),
        )
    )
    log.info(
        "checkout_created",
        order_id=order.id,
        user_id=user_id,
        gateway=gateway_name.value,
        total_cents=total,
        coupon=applied_code,
    )

    result = CheckoutResult(
        order_id=order.id,
        status=OrderStatus.PENDING,
        gateway=gateway_name,
        subtotal=format_amount(subtotal),
        discount=format_amount(subtotal - total),
        total=format_amount(total),
    )

    if total == 0:
        # Nothing to charge: settle right away
        ref = f"free_{order.id}"
        await store.set_gateway_ref(order.id, ref)
        await reconcile(store, ref, PaymentOutcome.SUCCEEDED, gateway=gateway_name, notifier=notifier)
        result.status = result.immediate_result = OrderStatus.COMPLETED
        return result

    gateway = gateway_factory(gateway_name)
    try:
        session = await asyncio.wait_for(
            gateway.create_checkout(order),
            timeout=settings.gateway_timeout_seconds + GATEWAY_GRACE_SECONDS,
        )
    except asyncio.TimeoutError as e:
        log.warning("checkout_gateway_timeout", order_id=order.id, gateway=gateway_name.value)
        raise GatewayError("Payment gateway timed out, retry or poll the order", gateway=gateway_name.value) from e
    except GatewayError:
        log.warning("checkout_gateway_failed", order_id=order.id, gateway=gateway_name.value)
        raise
    await store.set_gateway_ref(order.id, session.external_ref)
    result.redirect_url = session.checkout_url
    return result


async def capture_paypal(
    store: LedgerStore,
    user_id: str,
    paypal_order_id: str,
    gateway_factory: GatewayFactory = get_gateway,
    notifier: Notifier | None = None,
) -> OrderRecord:
    """Explicit capture after the buyer approved on PayPal; converges on the same reconcile path."""
    order = await store.find_order_by_gateway_ref(paypal_order_id)
    if order is None or order.user_id != user_id:
        raise NotFoundError("Order not found")
    if order.gateway != GatewayName.PAYPAL:
        raise ValidationError("Order was not placed with PayPal", details={"order_id": order.id})
    if is_settled(order):
        return order
    event = await gateway_factory(GatewayName.PAYPAL).capture(paypal_order_id)
    if event is not None:
        if event.order_id is None:
            event = event.model_copy(update={"order_id": order.id})
        await reconcile_event(store, event, notifier=notifier)
    return await store.find_order(order.id) or order
