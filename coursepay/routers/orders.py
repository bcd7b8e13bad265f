from fastapi import APIRouter, Depends, Query

from coursepay.core.pagination import paginate
from coursepay.deps import get_current_user, get_store
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import UserRecord
from coursepay.services import orders as orders_service

router = APIRouter()


@router.get("")
async def list_orders(
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return the current user's orders (newest first)."""
    limit, offset = paginate(limit, offset)
    orders = await store.find_orders_for_user(user.id, limit=limit, offset=offset)
    return {"orders": [orders_service.order_to_dict(o) for o in orders], "limit": limit, "offset": offset}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
):
    """Poll an order's status."""
    order = await orders_service.get_order_for_user(store, order_id, user)
    return orders_service.order_to_dict(order)
