"""Order reads and admin refunds."""

from typing import Any

from coursepay.core.audit import log_event
from coursepay.core.exceptions import NotFoundError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.core.money import format_amount
from coursepay.gateways.base import get_gateway
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import OrderRecord, OrderStatus, UserRecord

log = get_logger(__name__)

FREE_REF_PREFIX = "free_"


def order_to_dict(order: OrderRecord) -> dict[str, Any]:
    return {
        "id": order.id,
        "status": order.status.value,
        "gateway": order.gateway.value,
        "currency": order.currency,
        "subtotal": format_amount(order.subtotal_cents),
        "discount": format_amount(order.discount_cents),
        "total": format_amount(order.total_cents),
        "coupon_code": order.coupon_code,
        "failure_reason": order.failure_reason,
        "items": [
            {
                "course_id": i.course_id,
                "title": i.title,
                "price": format_amount(i.price_at_purchase_cents),
                "net_amount": format_amount(i.net_amount_cents),
            }
            for i in order.items
        ],
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
    }


async def get_order_for_user(store: LedgerStore, order_id: str, user: UserRecord) -> OrderRecord:
    """Owner or admin only; anyone else gets the same 404 as a missing order."""
    order = await store.find_order(order_id)
    if order is None or (order.user_id != user.id and user.role != "admin"):
        raise NotFoundError("Order not found")
    return order


async def refund_order(
    store: LedgerStore,
    order_id: str,
    admin_id: str,
    amount_cents: int | None = None,
    gateway_factory=get_gateway,
) -> dict[str, Any]:
    """
    Ask the gateway to refund a completed order. The order keeps its status and the buyer keeps
    access; the gateway's own refund notification is audited when it arrives.
    """
    order = await store.find_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != OrderStatus.COMPLETED:
        raise ValidationError("Only completed orders can be refunded", details={"status": order.status.value})
    if order.total_cents == 0 or (order.gateway_ref or "").startswith(FREE_REF_PREFIX):
        raise ValidationError("Nothing was charged for this order")
    if amount_cents is not None and not 0 < amount_cents <= order.total_cents:
        raise ValidationError("Refund amount out of range", details={"max_cents": order.total_cents})
    result = await gateway_factory(order.gateway).refund(order, amount_cents)
    refunded = amount_cents if amount_cents is not None else order.total_cents
    await log_event(
        store,
        admin_id,
        "refund_requested",
        "order",
        order.id,
        {"amount_cents": refunded, "gateway": order.gateway.value, "refund_id": result.get("id")},
    )
    log.info("refund_requested", order_id=order.id, amount_cents=refunded, gateway=order.gateway.value)
    return {"order_id": order.id, "amount": format_amount(refunded), "refund": result}
