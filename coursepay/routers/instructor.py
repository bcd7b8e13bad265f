from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from coursepay.core.money import format_amount
from coursepay.core.pagination import paginate
from coursepay.deps import get_store, require_instructor
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import DiscountType, UserRecord
from coursepay.services import instructors as instructors_service

router = APIRouter()


class CreateCouponRequest(BaseModel):
    code: str
    discount_type: DiscountType
    value: Decimal
    max_uses: int | None = None
    expires_at: datetime | None = None
    course_id: str | None = None


@router.get("/balance")
async def instructor_balance(user: UserRecord = Depends(require_instructor), store: LedgerStore = Depends(get_store)):
    """Return accumulated instructor earnings."""
    balance = await instructors_service.get_balance(store, user.id)
    return {"balance": format_amount(balance), "balance_cents": balance}


@router.get("/commissions")
async def instructor_commissions(
    user: UserRecord = Depends(require_instructor),
    store: LedgerStore = Depends(get_store),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return commission entries for the current instructor (newest first)."""
    limit, offset = paginate(limit, offset)
    entries = await instructors_service.commission_history(store, user.id, limit, offset)
    return {"entries": entries, "limit": limit, "offset": offset}


@router.get("/coupons")
async def list_coupons(user: UserRecord = Depends(require_instructor), store: LedgerStore = Depends(get_store)):
    coupons = await store.list_coupons(user.id)
    return {"coupons": [instructors_service.coupon_to_dict(c) for c in coupons]}


@router.post("/coupons", status_code=201)
async def create_coupon(
    body: CreateCouponRequest,
    user: UserRecord = Depends(require_instructor),
    store: LedgerStore = Depends(get_store),
):
    coupon = await instructors_service.create_coupon(
        store,
        user.id,
        body.code,
        body.discount_type,
        body.value,
        max_uses=body.max_uses,
        expires_at=body.expires_at,
        course_id=body.course_id,
    )
    return instructors_service.coupon_to_dict(coupon)
