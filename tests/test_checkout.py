"""Checkout orchestrator: validation, pricing, gateway hand-off."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConflictError, GatewayError, NotFoundError, ValidationError
from coursepay.gateways.events import PaymentEvent, PaymentOutcome
from coursepay.schemas import CouponRecord, DiscountType, GatewayName, OrderStatus, utcnow
from coursepay.services import checkout as checkout_service
from coursepay.services.checkout import capture_paypal, checkout, gateway_for_method


async def test_creates_pending_order_and_redirect(store, gateways):
    result = await checkout(store, "student-1", ["course-a", "course-b"], "CREDIT_CARD", gateway_factory=gateways)

    assert result.status == OrderStatus.PENDING
    assert result.gateway == GatewayName.STRIPE
    assert result.total == "150.00"
    assert result.redirect_url == f"https://pay.example/stripe/{result.order_id}"
    order = await store.find_order(result.order_id)
    assert order.gateway_ref == "stripe_ref_1"
    assert [i.course_id for i in order.items] == ["course-a", "course-b"]
    assert [i.instructor_id for i in order.items] == ["inst-1", "inst-2"]
    assert gateways[GatewayName.STRIPE].created[0].id == order.id


@pytest.mark.parametrize(
    "method,gateway",
    [
        ("CREDIT_CARD", GatewayName.STRIPE),
        ("paypal", GatewayName.PAYPAL),
        ("PIX", GatewayName.MERCADOPAGO),
        ("BOLETO", GatewayName.MERCADOPAGO),
    ],
)
def test_payment_method_mapping(method, gateway):
    assert gateway_for_method(method) == gateway


def test_unknown_payment_method():
    with pytest.raises(ValidationError):
        gateway_for_method("BITCOIN")


async def test_already_enrolled_conflicts_without_creating_order(store, gateways):
    await store.create_enrollment_if_absent("student-1", "course-a")

    with pytest.raises(ConflictError) as exc:
        await checkout(store, "student-1", ["course-a", "course-b"], "CREDIT_CARD", gateway_factory=gateways)

    assert exc.value.details == {"course_ids": ["course-a"]}
    assert not store.orders
    assert not gateways[GatewayName.STRIPE].created


async def test_missing_and_unpublished_courses(store, gateways):
    with pytest.raises(NotFoundError) as exc:
        await checkout(store, "student-1", ["course-a", "nope", "course-draft"], "PIX", gateway_factory=gateways)
    assert exc.value.details == {"course_ids": ["nope", "course-draft"]}
    assert not store.orders


@pytest.mark.parametrize("course_ids", [[], ["course-a", "course-a"], [f"c{i}" for i in range(21)]])
async def test_cart_shape_is_validated(store, gateways, course_ids):
    with pytest.raises(ValidationError):
        await checkout(store, "student-1", course_ids, "CREDIT_CARD", gateway_factory=gateways)


async def test_unknown_coupon(store, gateways):
    with pytest.raises(NotFoundError):
        await checkout(store, "student-1", ["course-a"], "CREDIT_CARD", "NOSUCH", gateway_factory=gateways)
    assert not store.orders


async def test_expired_coupon_charges_full_price(store, gateways):
    await store.create_coupon(
        CouponRecord(
            code="OLD10",
            discount_type=DiscountType.PERCENTAGE,
            value=Decimal("10"),
            expires_at=utcnow() - timedelta(days=1),
        )
    )
    result = await checkout(store, "student-1", ["course-a"], "CREDIT_CARD", "old10", gateway_factory=gateways)
    order = await store.find_order(result.order_id)
    assert order.total_cents == 100_00
    assert order.coupon_code is None


async def test_discount_is_spread_across_items(store, gateways):
    await store.create_coupon(CouponRecord(code="TENOFF", discount_type=DiscountType.FIXED, value=Decimal("10")))
    result = await checkout(
        store, "student-1", ["course-a", "course-b", "course-c"], "CREDIT_CARD", "TENOFF", gateway_factory=gateways
    )
    order = await store.find_order(result.order_id)
    assert order.subtotal_cents == 183_33
    assert order.discount_cents == 10_00
    assert order.total_cents == 173_33
    assert sum(i.net_amount_cents for i in order.items) == order.total_cents
    assert order.coupon_code == "TENOFF"


async def test_course_scoped_coupon_only_discounts_that_course(store, gateways):
    await store.create_coupon(
        CouponRecord(
            code="BHALF",
            discount_type=DiscountType.PERCENTAGE,
            value=Decimal("50"),
            instructor_id="inst-2",
            course_id="course-b",
        )
    )
    result = await checkout(store, "student-1", ["course-a", "course-b"], "CREDIT_CARD", "BHALF", gateway_factory=gateways)
    order = await store.find_order(result.order_id)
    assert order.total_cents == 125_00
    nets = {i.course_id: i.net_amount_cents for i in order.items}
    assert nets == {"course-a": 100_00, "course-b": 25_00}

    other = await checkout(store, "student-2", ["course-a"], "CREDIT_CARD", "BHALF", gateway_factory=gateways)
    assert other.total == "100.00"


async def test_coupon_is_not_consumed_at_checkout(store, gateways):
    await store.create_coupon(CouponRecord(code="ONE", discount_type=DiscountType.FIXED, value=Decimal("5"), max_uses=1))
    await checkout(store, "student-1", ["course-a"], "CREDIT_CARD", "ONE", gateway_factory=gateways)
    await checkout(store, "student-2", ["course-a"], "CREDIT_CARD", "ONE", gateway_factory=gateways)
    assert (await store.find_coupon("ONE")).used_count == 0


async def test_free_order_completes_immediately(store, gateways, notifier):
    await store.create_coupon(CouponRecord(code="FREE100", discount_type=DiscountType.PERCENTAGE, value=Decimal("100")))

    result = await checkout(
        store, "student-1", ["course-a"], "CREDIT_CARD", "FREE100", gateway_factory=gateways, notifier=notifier
    )

    assert result.status == OrderStatus.COMPLETED
    assert result.immediate_result == OrderStatus.COMPLETED
    assert result.redirect_url is None
    assert result.total == "0.00"
    assert not gateways[GatewayName.STRIPE].created
    order = await store.find_order(result.order_id)
    assert order.gateway_ref == f"free_{order.id}"
    assert await store.find_enrollments("student-1", ["course-a"])
    assert store.profiles["inst-1"].balance_cents == 0
    assert (await store.find_coupon("FREE100")).used_count == 1


async def test_gateway_failure_leaves_order_pending(store, gateways):
    gateways[GatewayName.MERCADOPAGO].fail_with = GatewayError("boom", gateway="mercadopago")

    with pytest.raises(GatewayError):
        await checkout(store, "student-1", ["course-a"], "PIX", gateway_factory=gateways)

    [order] = store.orders.values()
    assert order.status == OrderStatus.PENDING
    assert order.gateway_ref is None


async def test_gateway_timeout_is_retryable_and_leaves_order_pending(store, gateways, monkeypatch):
    stripe = gateways[GatewayName.STRIPE]

    async def hang(order):
        await asyncio.sleep(1)

    monkeypatch.setattr(stripe, "create_checkout", hang)
    monkeypatch.setattr(get_settings(), "gateway_timeout_seconds", 0.0)
    monkeypatch.setattr(checkout_service, "GATEWAY_GRACE_SECONDS", 0.01)

    with pytest.raises(GatewayError) as exc_info:
        await checkout(store, "student-1", ["course-a"], "CREDIT_CARD", gateway_factory=gateways)

    assert exc_info.value.details["retryable"] is True
    assert exc_info.value.details["gateway"] == "stripe"
    [order] = store.orders.values()
    assert order.status == OrderStatus.PENDING
    assert order.gateway_ref is None


async def test_paypal_capture_completes_order(store, gateways, notifier):
    result = await checkout(store, "student-1", ["course-a"], "PAYPAL", gateway_factory=gateways)
    order = await store.find_order(result.order_id)
    gateways[GatewayName.PAYPAL].capture_event = PaymentEvent(
        gateway=GatewayName.PAYPAL,
        external_ref=order.gateway_ref,
        outcome=PaymentOutcome.SUCCEEDED,
        payment_id="CAPTURE-1",
    )

    captured = await capture_paypal(store, "student-1", order.gateway_ref, gateway_factory=gateways, notifier=notifier)

    assert captured.status == OrderStatus.COMPLETED
    assert captured.gateway_payment_id == "CAPTURE-1"
    again = await capture_paypal(store, "student-1", order.gateway_ref, gateway_factory=gateways, notifier=notifier)
    assert again.status == OrderStatus.COMPLETED
    assert store.profiles["inst-1"].balance_cents == 70_00
    assert len(notifier.orders) == 1


async def test_paypal_capture_of_someone_elses_order(store, gateways):
    result = await checkout(store, "student-1", ["course-a"], "PAYPAL", gateway_factory=gateways)
    order = await store.find_order(result.order_id)
    with pytest.raises(NotFoundError):
        await capture_paypal(store, "student-2", order.gateway_ref, gateway_factory=gateways)
