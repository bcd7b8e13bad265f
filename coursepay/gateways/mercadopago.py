"""Mercado Pago Checkout Pro adapter over httpx."""

import json
from typing import Any, Mapping

import httpx
import orjson

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConfigurationError, GatewayError, SignatureError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.core.money import from_cents
from coursepay.core.security import verify_hmac_sha256
from coursepay.gateways.base import CheckoutSession, PaymentGateway
from coursepay.gateways.events import MercadoPagoPayment, PaymentEvent, normalize
from coursepay.schemas import GatewayName, OrderRecord

log = get_logger(__name__)

API_BASE = "https://api.mercadopago.com"


def json_amount(cents: int) -> orjson.Fragment:
    """80_00 -> raw JSON number 80.00, written from the Decimal without a float."""
    return orjson.Fragment(str(from_cents(cents)))


def parse_signature_header(value: str) -> tuple[str, str]:
    """'ts=1704908010,v1=618c8534...' -> (ts, v1)"""
    parts: dict[str, str] = {}
    for chunk in value.split(","):
        key, _, val = chunk.strip().partition("=")
        parts[key.strip()] = val.strip()
    return parts.get("ts", ""), parts.get("v1", "")


def signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"


class MercadoPagoGateway(PaymentGateway):
    name = GatewayName.MERCADOPAGO

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        if not self.settings.mercadopago_access_token:
            raise ConfigurationError("Mercado Pago not configured")
        headers = {
            "Authorization": f"Bearer {self.settings.mercadopago_access_token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        try:
            async with httpx.AsyncClient(
                base_url=API_BASE,
                timeout=self.settings.gateway_timeout_seconds,
                transport=self._transport,
            ) as client:
                content = orjson.dumps(body) if body is not None else None
                return await client.request(method, path, content=content, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"Mercado Pago request failed: {e.__class__.__name__}", gateway=self.name.value) from e

    def _fail(self, resp: httpx.Response, action: str) -> GatewayError:
        log.warning("mercadopago_error", action=action, status_code=resp.status_code, body=resp.text[:500])
        return GatewayError(f"Mercado Pago {action} failed ({resp.status_code})", gateway=self.name.value)

    async def create_checkout(self, order: OrderRecord) -> CheckoutSession:
        app_url = self.settings.app_url.rstrip("/")
        body = {
            "items": [
                {
                    "id": item.course_id,
                    "title": item.title or item.course_id,
                    "quantity": 1,
                    "unit_price": json_amount(item.net_amount_cents),
                    "currency_id": order.currency.upper(),
                }
                for item in order.items
                if item.net_amount_cents > 0
            ],
            "external_reference": order.id,
            "notification_url": f"{app_url}/v1/webhooks/mercadopago",
            "back_urls": {
                "success": f"{app_url}/checkout/success",
                "failure": f"{app_url}/checkout/failure",
                "pending": f"{app_url}/checkout/pending",
            },
            "auto_return": "approved",
        }
        resp = await self._request("POST", "/checkout/preferences", body, idempotency_key=f"checkout_{order.id}")
        if resp.status_code not in (200, 201):
            raise self._fail(resp, "create_preference")
        data = resp.json()
        url = data.get("sandbox_init_point") if self.settings.mercadopago_sandbox else data.get("init_point")
        url = url or data.get("init_point")
        if not url:
            raise GatewayError("Mercado Pago returned no checkout URL", gateway=self.name.value)
        log.info("mercadopago_preference_created", order_id=order.id, preference_id=data["id"])
        return CheckoutSession(external_ref=data["id"], checkout_url=url)

    def _check_signature(self, headers: Mapping[str, str], data_id: str) -> None:
        secret = self.settings.mercadopago_webhook_secret
        if not secret:
            raise ConfigurationError("Mercado Pago webhook secret not configured")
        lowered = {k.lower(): v for k, v in headers.items()}
        x_signature = lowered.get("x-signature")
        request_id = lowered.get("x-request-id")
        if not x_signature or not request_id:
            raise SignatureError("Missing x-signature or x-request-id header", gateway=self.name.value)
        ts, v1 = parse_signature_header(x_signature)
        if not ts or not v1:
            raise SignatureError("Malformed x-signature header", gateway=self.name.value)
        if not verify_hmac_sha256(secret, signature_manifest(data_id, request_id, ts), v1):
            raise SignatureError("Invalid Mercado Pago signature", gateway=self.name.value)

    async def verify_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str] | None = None
    ) -> list[PaymentEvent]:
        try:
            body = json.loads(raw_body) if raw_body else {}
        except ValueError as e:
            raise ValidationError("Malformed Mercado Pago notification") from e
        query = query or {}
        data_id = str(query.get("data.id") or (body.get("data") or {}).get("id") or "")
        if not data_id:
            raise ValidationError("Payment ID not found in notification")
        self._check_signature(headers, data_id)
        kind = body.get("type") or query.get("type")
        action = body.get("action") or ""
        if kind != "payment" and not action.startswith("payment."):
            log.info("mercadopago_notification_ignored", type=kind, action=action)
            return []
        payment = await self.fetch_payment(data_id, notification_id=str(body.get("id") or "") or None)
        event = normalize(payment)
        if event is None:
            log.info("mercadopago_payment_not_final", payment_id=payment.id, status=payment.status)
            return []
        return [event]

    async def fetch_payment(self, payment_id: str, notification_id: str | None = None) -> MercadoPagoPayment:
        resp = await self._request("GET", f"/v1/payments/{payment_id}")
        if resp.status_code != 200:
            raise self._fail(resp, "get_payment")
        data = resp.json()
        return MercadoPagoPayment(
            id=str(data["id"]),
            status=data.get("status", ""),
            external_reference=data.get("external_reference"),
            notification_id=notification_id,
        )

    async def refund(self, order: OrderRecord, amount_cents: int | None = None) -> dict[str, Any]:
        if not order.gateway_payment_id:
            raise ValidationError("Order has no Mercado Pago payment", details={"order_id": order.id})
        body: dict[str, Any] = {}
        if amount_cents is not None:
            body["amount"] = json_amount(amount_cents)
        resp = await self._request(
            "POST",
            f"/v1/payments/{order.gateway_payment_id}/refunds",
            body,
            idempotency_key=f"refund_{order.id}_{amount_cents or 'full'}",
        )
        if resp.status_code not in (200, 201):
            raise self._fail(resp, "refund")
        data = resp.json()
        return {"id": str(data.get("id")), "status": data.get("status")}
