from fastapi import APIRouter, Depends
from pydantic import BaseModel

from coursepay.deps import get_gateway_factory, get_store, require_admin
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import UserRecord
from coursepay.services import orders as orders_service

router = APIRouter()


class RefundRequest(BaseModel):
    amount_cents: int | None = None  # full refund when omitted


@router.post("/orders/{order_id}/refund")
async def admin_refund_order(
    order_id: str,
    body: RefundRequest | None = None,
    user: UserRecord = Depends(require_admin),
    store: LedgerStore = Depends(get_store),
    gateway_factory=Depends(get_gateway_factory),
):
    """Admin: refund through the gateway. Access and instructor balances are left untouched."""
    amount = body.amount_cents if body else None
    return await orders_service.refund_order(store, order_id, user.id, amount, gateway_factory=gateway_factory)
