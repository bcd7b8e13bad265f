"""PayPal Orders v2 adapter over httpx."""

import json
from typing import Any, Mapping

import httpx

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConfigurationError, GatewayError, SignatureError, ValidationError
from coursepay.core.logging import get_logger
from coursepay.core.money import format_amount
from coursepay.gateways.base import CheckoutSession, PaymentGateway
from coursepay.gateways.events import PaymentEvent, PaymentOutcome, PayPalWebhook, normalize
from coursepay.schemas import GatewayName, OrderRecord

log = get_logger(__name__)

TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)
DECLINE_ISSUES = {"INSTRUMENT_DECLINED", "PAYER_ACTION_REQUIRED", "TRANSACTION_REFUSED"}


class PayPalGateway(PaymentGateway):
    name = GatewayName.PAYPAL

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = get_settings()
        self._transport = transport
        self._token: str | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.paypal_api_base,
            timeout=self.settings.gateway_timeout_seconds,
            transport=self._transport,
        )

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token:
            return self._token
        if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
            raise ConfigurationError("PayPal not configured")
        resp = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
        )
        if resp.status_code != 200:
            raise GatewayError(f"PayPal auth failed ({resp.status_code})", gateway=self.name.value)
        self._token = resp.json()["access_token"]
        return self._token

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> httpx.Response:
        try:
            async with self._client() as client:
                token = await self._access_token(client)
                headers = {"Authorization": f"Bearer {token}", "Prefer": "return=representation"}
                if request_id:
                    headers["PayPal-Request-Id"] = request_id
                return await client.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"PayPal request failed: {e.__class__.__name__}", gateway=self.name.value) from e

    def _fail(self, resp: httpx.Response, action: str) -> GatewayError:
        log.warning("paypal_error", action=action, status_code=resp.status_code, body=resp.text[:500])
        return GatewayError(f"PayPal {action} failed ({resp.status_code})", gateway=self.name.value)

    async def create_checkout(self, order: OrderRecord) -> CheckoutSession:
        currency = order.currency.upper()
        app_url = self.settings.app_url.rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.id,
                    "custom_id": order.id,
                    "description": "Course purchase",
                    "amount": {
                        "currency_code": currency,
                        "value": format_amount(order.total_cents),
                        "breakdown": {
                            "item_total": {"currency_code": currency, "value": format_amount(order.total_cents)},
                        },
                    },
                    "items": [
                        {
                            "name": (item.title or item.course_id)[:127],
                            "quantity": "1",
                            "unit_amount": {"currency_code": currency, "value": format_amount(item.net_amount_cents)},
                        }
                        for item in order.items
                    ],
                }
            ],
            "application_context": {
                "user_action": "PAY_NOW",
                "return_url": f"{app_url}/checkout/paypal/return",
                "cancel_url": f"{app_url}/checkout/cancel?order_id={order.id}",
            },
        }
        resp = await self._request("POST", "/v2/checkout/orders", body, request_id=f"checkout_{order.id}")
        if resp.status_code not in (200, 201):
            raise self._fail(resp, "create_order")
        data = resp.json()
        approve = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve:
            raise GatewayError("PayPal returned no approval link", gateway=self.name.value)
        log.info("paypal_order_created", order_id=order.id, paypal_order_id=data["id"])
        return CheckoutSession(external_ref=data["id"], checkout_url=approve)

    async def verify_webhook(
        self, raw_body: bytes, headers: Mapping[str, str], query: Mapping[str, str] | None = None
    ) -> list[PaymentEvent]:
        if not self.settings.paypal_webhook_id:
            raise ConfigurationError("PayPal webhook id not configured")
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in TRANSMISSION_HEADERS if not lowered.get(h)]
        if missing:
            raise SignatureError(f"Missing PayPal headers: {', '.join(missing)}", gateway=self.name.value)
        try:
            body = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("Malformed PayPal event") from e
        resp = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            {
                "auth_algo": lowered["paypal-auth-algo"],
                "cert_url": lowered["paypal-cert-url"],
                "transmission_id": lowered["paypal-transmission-id"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "transmission_time": lowered["paypal-transmission-time"],
                "webhook_id": self.settings.paypal_webhook_id,
                "webhook_event": body,
            },
        )
        if resp.status_code != 200:
            raise self._fail(resp, "verify_webhook")
        if resp.json().get("verification_status") != "SUCCESS":
            raise SignatureError("Invalid PayPal signature", gateway=self.name.value)
        try:
            webhook = PayPalWebhook.model_validate(body)
        except ValueError as e:
            raise ValidationError("Malformed PayPal event") from e
        event = normalize(webhook)
        if event is None:
            log.info("paypal_event_ignored", event_type=webhook.event_type, event_id=webhook.id)
            return []
        return [event]

    async def capture(self, external_ref: str) -> PaymentEvent | None:
        resp = await self._request(
            "POST", f"/v2/checkout/orders/{external_ref}/capture", {}, request_id=f"capture_{external_ref}"
        )
        if resp.status_code == 422:
            issues = {d.get("issue") for d in resp.json().get("details", [])}
            if issues & DECLINE_ISSUES:
                return PaymentEvent(
                    gateway=self.name,
                    external_ref=external_ref,
                    outcome=PaymentOutcome.DENIED,
                    event_type="capture.declined",
                )
            if "ORDER_ALREADY_CAPTURED" in issues:
                resp = await self._request("GET", f"/v2/checkout/orders/{external_ref}")
        if resp.status_code not in (200, 201):
            raise self._fail(resp, "capture")
        return self._capture_event(external_ref, resp.json())

    def _capture_event(self, external_ref: str, data: dict[str, Any]) -> PaymentEvent | None:
        units = data.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else {}
        order_id = units[0].get("custom_id") or capture.get("custom_id")
        capture_status = capture.get("status")
        if data.get("status") == "COMPLETED" and capture_status in (None, "COMPLETED"):
            outcome = PaymentOutcome.SUCCEEDED
        elif capture_status in ("DECLINED", "FAILED"):
            outcome = PaymentOutcome.DENIED
        else:
            # PENDING captures settle later through PAYMENT.CAPTURE.* webhooks
            log.info("paypal_capture_pending", paypal_order_id=external_ref, status=data.get("status"))
            return None
        return PaymentEvent(
            gateway=self.name,
            external_ref=external_ref,
            order_id=order_id,
            outcome=outcome,
            payment_id=capture.get("id"),
            event_type=f"capture.{(capture_status or data.get('status', '')).lower()}",
        )

    async def refund(self, order: OrderRecord, amount_cents: int | None = None) -> dict[str, Any]:
        if not order.gateway_payment_id:
            raise ValidationError("Order has no PayPal capture", details={"order_id": order.id})
        body: dict[str, Any] = {}
        if amount_cents is not None:
            body["amount"] = {"currency_code": order.currency.upper(), "value": format_amount(amount_cents)}
        resp = await self._request(
            "POST",
            f"/v2/payments/captures/{order.gateway_payment_id}/refund",
            body,
            request_id=f"refund_{order.id}_{amount_cents or 'full'}",
        )
        if resp.status_code not in (200, 201):
            raise self._fail(resp, "refund")
        data = resp.json()
        return {"id": data.get("id"), "status": data.get("status")}
