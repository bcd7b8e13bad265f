from abc import ABC, abstractmethod
from typing import Any, Mapping

from pydantic import BaseModel

from coursepay.gateways.events import PaymentEvent
from coursepay.schemas import GatewayName, OrderRecord


class CheckoutSession(BaseModel):
    external_ref: str
    checkout_url: str


class PaymentGateway(ABC):
    name: GatewayName

    @abstractmethod
    async def create_checkout(self, order: OrderRecord) -> CheckoutSession:
        """Register a remote payment for `order`, carrying order.id as the vendor-side reference."""
        ...

    @abstractmethod
    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str] | None = None) -> list[PaymentEvent]:
        """
        Authenticate an inbound notification and normalize it.

        Raises SignatureError when authenticity cannot be established and GatewayError when
        the vendor has to be called back and fails. An empty list means nothing to reconcile.
        """
        ...

    async def capture(self, external_ref: str) -> PaymentEvent | None:
        """Explicit capture after buyer approval, for vendors that need one."""
        raise NotImplementedError(f"{self.name.value} does not support explicit capture")

    @abstractmethod
    async def refund(self, order: OrderRecord, amount_cents: int | None = None) -> dict[str, Any]:
        ...


def get_gateway(name: GatewayName | str) -> PaymentGateway:
    name = GatewayName(name)
    if name == GatewayName.STRIPE:
        from coursepay.gateways.stripe_gateway import StripeGateway
        return StripeGateway()
    if name == GatewayName.PAYPAL:
        from coursepay.gateways.paypal import PayPalGateway
        return PayPalGateway()
    from coursepay.gateways.mercadopago import MercadoPagoGateway
    return MercadoPagoGateway()
