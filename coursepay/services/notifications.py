"""Purchase confirmation emails: enqueue (best effort) and send via Resend."""

from html import escape

import httpx
from arq import create_pool

from coursepay.core.config import get_settings
from coursepay.core.exceptions import ConfigurationError, GatewayError
from coursepay.core.logging import get_logger
from coursepay.core.money import format_amount
from coursepay.ledger.base import LedgerStore
from coursepay.schemas import OrderRecord

log = get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"


async def enqueue_purchase_email(user_id: str, course_titles: list[str], amount: str) -> None:
    """Enqueue send_purchase_email on the arq queue."""
    from coursepay.worker.tasks import get_redis_settings
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("send_purchase_email", user_id, course_titles, amount)
    finally:
        await redis.close()


async def notify_order_completed(store: LedgerStore, order: OrderRecord) -> None:
    """Fire-and-forget: a lost notification is logged, never raised."""
    titles = [item.title or item.course_id for item in order.items]
    try:
        await enqueue_purchase_email(order.user_id, titles, format_amount(order.total_cents))
        log.info("purchase_email_enqueued", order_id=order.id, user_id=order.user_id)
    except Exception as e:
        log.warning("purchase_email_enqueue_failed", order_id=order.id, reason=str(e)[:200])


def render_purchase_email(name: str, course_titles: list[str], amount: str, currency: str) -> str:
    items = "".join(f"<li>{escape(title)}</li>" for title in course_titles)
    return (
        f"<p>Hi {escape(name) if name else 'there'},</p>"
        f"<p>Your payment of {currency} {amount} was confirmed. You now have access to:</p>"
        f"<ul>{items}</ul>"
    )


async def send_purchase_email(
    store: LedgerStore,
    user_id: str,
    course_titles: list[str],
    amount: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    settings = get_settings()
    if not settings.resend_api_key:
        raise ConfigurationError("Email not configured")
    user = await store.find_user(user_id)
    if user is None:
        log.warning("purchase_email_user_missing", user_id=user_id)
        return
    payload = {
        "from": settings.email_from,
        "to": [user.email],
        "subject": "Purchase confirmed",
        "html": render_purchase_email(user.name, course_titles, amount, settings.currency),
    }
    try:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds, transport=transport) as client:
            resp = await client.post(
                RESEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {settings.resend_api_key}"},
            )
    except httpx.HTTPError as e:
        raise GatewayError(f"Email provider unreachable: {e.__class__.__name__}") from e
    if resp.status_code >= 300:
        raise GatewayError(f"Email provider rejected message ({resp.status_code})")
    log.info("purchase_email_sent", user_id=user_id, courses=len(course_titles))
