"""Stripe Checkout adapter (official SDK, run off the event loop)."""

import asyncio
import json
from typing import Any, Mapping

import stripe

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConfigurationError, GatewayError, SignatureError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.gateways.base import CheckoutSession, PaymentGateway
from coursepay.gateways.events import PaymentEvent, StripeWebhook, normalize
from coursepay.schemas import GatewayName, OrderRecord

log = get_logger(__name__)


class StripeGateway(PaymentGateway):
    name = GatewayName.STRIPE

    def __init__(self) -> None:
        self.settings = get_settings()

    def _api_key(self) -> str:
        if not self.settings.stripe_secret_key:
            raise ConfigurationError("Stripe not configured")
        return self.settings.stripe_secret_key

    async def _call(self, fn, **params: Any) -> Any:
        api_key = self._api_key()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=api_key, **params),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GatewayError("Stripe request timed out", gateway=self.name.value) from e
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            raise GatewayError(f"Stripe error: {message}", gateway=self.name.value) from e

    async def create_checkout(self, order: OrderRecord) -> CheckoutSession:
        app_url = self.settings.app_url.rstrip("/")
        line_items = [
            {
                "price_data": {
                    "currency": order.currency.lower(),
                    "product_data": {"name": item.title or item.course_id},
                    "unit_amount": item.net_amount_cents,
                },
                "quantity": 1,
            }
            for item in order.items
            if item.net_amount_cents > 0
        ]
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            line_items=line_items,
            success_url=f"{app_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{app_url}/checkout/cancel?order_id={order.id}",
            client_reference_id=order.id,
            metadata={"order_id": order.id, "user_id": order.user_id},
            payment_intent_data={"metadata": {"order_id": order.id}},
            idempotency_key=f"checkout_{order.id}",
        )
        log.info("stripe_session_created", order_id=order.id, session_id=session.id)
        return CheckoutSession(external_ref=session.id, checkout_url=session.url)

    async def verify_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str] | None = None
    ) -> list[PaymentEvent]:
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise ConfigurationError("Stripe webhook secret not configured")
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("stripe-signature")
        if not signature:
            raise SignatureError("Missing Stripe-Signature header", gateway=self.name.value)
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureError("Invalid Stripe signature", gateway=self.name.value) from e
        try:
            webhook = StripeWebhook.model_validate(json.loads(payload))
        except ValueError as e:
            raise ValidationError("Malformed Stripe event") from e
        event = normalize(webhook)
        if event is None:
            log.info("stripe_event_ignored", event_type=webhook.type, event_id=webhook.id)
            return []
        return [event]

    async def refund(self, order: OrderRecord, amount_cents: int | None = None) -> dict[str, Any]:
        payment_intent = order.gateway_payment_id
        if not payment_intent:
            if not order.gateway_ref:
                raise ValidationError("Order has no Stripe payment", details={"order_id": order.id})
            session = await self._call(stripe.checkout.Session.retrieve, id=order.gateway_ref)
            payment_intent = session.payment_intent
        params: dict[str, Any] = {"payment_intent": payment_intent}
        if amount_cents is not None:
            params["amount"] = amount_cents
        refund = await self._call(stripe.Refund.create, **params)
        return {"id": refund.id, "status": refund.status}
