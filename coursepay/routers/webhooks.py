from fastapi import APIRouter, Depends, Request

from coursepay.deps import get_gateway_factory, get_store
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import GatewayName
from coursepay.services import webhooks as webhooks_service

router = APIRouter()


async def _handle(name: GatewayName, request: Request, store: LedgerStore, gateway_factory) -> dict:
    body = await request.body()
    await webhooks_service.handle_webhook(
        store,
        gateway_factory(name),
        body,
        request.headers,
        request.query_params,
    )
    return {"status": "ok"}


@router.post("/stripe")
async def stripe_webhook(request: Request, store: LedgerStore = Depends(get_store), gateway_factory=Depends(get_gateway_factory)):
    """Stripe: checkout.session.* / payment_intent.* / charge.refunded, signed with Stripe-Signature."""
    return await _handle(GatewayName.STRIPE, request, store, gateway_factory)


@router.post("/paypal")
async def paypal_webhook(request: Request, store: LedgerStore = Depends(get_store), gateway_factory=Depends(get_gateway_factory)):
    """PayPal: PAYMENT.CAPTURE.*, verified through PayPal's verify-webhook-signature API."""
    return await _handle(GatewayName.PAYPAL, request, store, gateway_factory)


@router.post("/mercadopago")
async def mercadopago_webhook(request: Request, store: LedgerStore = Depends(get_store), gateway_factory=Depends(get_gateway_factory)):
    """Mercado Pago: payment notifications signed with x-signature; status is fetched from the API."""
    return await _handle(GatewayName.MERCADOPAGO, request, store, gateway_factory)
