"""
Vendor webhook payloads as a tagged union, and the vendor-neutral PaymentEvent.

Each adapter parses its own variant and maps it through `normalize()`; the
reconciliation engine only ever sees PaymentEvent.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from coursepay.schemas import GatewayName


class PaymentOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    DENIED = "DENIED"
    REFUNDED = "REFUNDED"


class PaymentEvent(BaseModel):
    gateway: GatewayName
    external_ref: str | None = None  # Order.gateway_ref
    order_id: str | None = None  # opaque reference the vendor echoes back
    outcome: PaymentOutcome
    payment_id: str | None = None
    event_id: str | None = None
    event_type: str = ""


class StripeWebhook(BaseModel):
    gateway: Literal["stripe"] = "stripe"
    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.get("object") or {}


class PayPalWebhook(BaseModel):
    gateway: Literal["paypal"] = "paypal"
    id: str
    event_type: str
    resource: dict[str, Any] = Field(default_factory=dict)


class MercadoPagoPayment(BaseModel):
    """Payment fetched from the API after a verified notification."""
    gateway: Literal["mercadopago"] = "mercadopago"
    id: str
    status: str
    external_reference: str | None = None
    notification_id: str | None = None


VendorEvent = Annotated[
    Union[StripeWebhook, PayPalWebhook, MercadoPagoPayment],
    Field(discriminator="gateway"),
]

STRIPE_OUTCOMES = {
    "checkout.session.completed": PaymentOutcome.SUCCEEDED,
    "checkout.session.async_payment_succeeded": PaymentOutcome.SUCCEEDED,
    "checkout.session.expired": PaymentOutcome.DENIED,
    "checkout.session.async_payment_failed": PaymentOutcome.DENIED,
    "charge.refunded": PaymentOutcome.REFUNDED,
}

PAYPAL_OUTCOMES = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentOutcome.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": PaymentOutcome.DENIED,
    "PAYMENT.CAPTURE.DECLINED": PaymentOutcome.DENIED,
    "PAYMENT.CAPTURE.REFUNDED": PaymentOutcome.REFUNDED,
    "PAYMENT.CAPTURE.REVERSED": PaymentOutcome.REFUNDED,
}

MERCADOPAGO_OUTCOMES = {
    "approved": PaymentOutcome.SUCCEEDED,
    "rejected": PaymentOutcome.DENIED,
    "cancelled": PaymentOutcome.DENIED,
    "refunded": PaymentOutcome.REFUNDED,
    "charged_back": PaymentOutcome.REFUNDED,
}


def _normalize_stripe(event: StripeWebhook) -> PaymentEvent | None:
    outcome = STRIPE_OUTCOMES.get(event.type)
    if outcome is None:
        return None
    obj = event.object
    metadata = obj.get("metadata") or {}
    if event.type == "charge.refunded":
        return PaymentEvent(
            gateway=GatewayName.STRIPE,
            order_id=metadata.get("order_id"),
            outcome=outcome,
            payment_id=obj.get("payment_intent"),
            event_id=event.id,
            event_type=event.type,
        )
    # Delayed methods (boleto) complete with payment_status=unpaid and settle later
    if event.type == "checkout.session.completed" and obj.get("payment_status") not in ("paid", "no_payment_required"):
        return None
    return PaymentEvent(
        gateway=GatewayName.STRIPE,
        external_ref=obj.get("id"),
        order_id=metadata.get("order_id") or obj.get("client_reference_id"),
        outcome=outcome,
        payment_id=obj.get("payment_intent"),
        event_id=event.id,
        event_type=event.type,
    )


def _normalize_paypal(event: PayPalWebhook) -> PaymentEvent | None:
    outcome = PAYPAL_OUTCOMES.get(event.event_type)
    if outcome is None:
        return None
    resource = event.resource
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return PaymentEvent(
        gateway=GatewayName.PAYPAL,
        external_ref=related.get("order_id"),
        order_id=resource.get("custom_id"),
        outcome=outcome,
        payment_id=resource.get("id"),
        event_id=event.id,
        event_type=event.event_type,
    )


def _normalize_mercadopago(payment: MercadoPagoPayment) -> PaymentEvent | None:
    outcome = MERCADOPAGO_OUTCOMES.get(payment.status)
    if outcome is None:
        return None
    return PaymentEvent(
        gateway=GatewayName.MERCADOPAGO,
        order_id=payment.external_reference,
        outcome=outcome,
        payment_id=payment.id,
        event_id=payment.notification_id,
        event_type=f"payment.{payment.status}",
    )


def normalize(event: VendorEvent) -> PaymentEvent | None:
    """Map a vendor event to PaymentEvent; None for event types we do not act on."""
    if isinstance(event, StripeWebhook):
        return _normalize_stripe(event)
    if isinstance(event, PayPalWebhook):
        return _normalize_paypal(event)
    return _normalize_mercadopago(event)
