from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from coursepay.deps import get_current_user, get_gateway_factory, get_store
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import UserRecord
from coursepay.services import checkout as checkout_service
from coursepay.services.orders import order_to_dict

router = APIRouter()


class CheckoutRequest(BaseModel):
    course_ids: list[str] = Field(..., min_length=1, max_length=checkout_service.MAX_COURSES_PER_ORDER)
    payment_method: str
    coupon_code: str | None = None


class PayPalCaptureRequest(BaseModel):
    paypal_order_id: str = Field(..., min_length=1)


@router.post("")
async def create_checkout(
    body: CheckoutRequest,
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    gateway_factory=Depends(get_gateway_factory),
):
    """Create a PENDING order and return where to send the buyer (or the immediate result for free orders)."""
    result = await checkout_service.checkout(
        store,
        user.id,
        body.course_ids,
        body.payment_method,
        body.coupon_code,
        gateway_factory=gateway_factory,
    )
    return result.model_dump(mode="json", exclude_none=True)


@router.post("/paypal/capture")
async def paypal_capture(
    body: PayPalCaptureRequest,
    user: UserRecord = Depends(get_current_user),
    store: LedgerStore = Depends(get_store),
    gateway_factory=Depends(get_gateway_factory),
):
    """Capture an approved PayPal order; the webhook for the same capture is then a no-op."""
    order = await checkout_service.capture_paypal(store, user.id, body.paypal_order_id, gateway_factory=gateway_factory)
    return order_to_dict(order)
