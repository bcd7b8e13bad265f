"""arq job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from coursepay.core.config import get_settings
from coursepay.core.logging import get_logger
from coursepay.ledger.base import get_ledger_store
from coursepay.schemas import FailedJobRecord
from coursepay.services.notifications import send_purchase_email as _send_purchase_email

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await get_ledger_store().record_failed_job(
            FailedJobRecord(
                job_name=job_name,
                job_id=fid,
                args=args,
                kwargs=kwargs,
                reason=str(e)[:2000],
            )
        )
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def send_purchase_email(ctx: dict[str, Any], user_id: str, course_titles: list[str], amount: str) -> None:
    """Send the purchase confirmation for a completed order."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> None:
        log.info("job_start", job="send_purchase_email", user_id=user_id)
        await _send_purchase_email(get_ledger_store(), user_id, course_titles, amount)
        log.info("job_done", job="send_purchase_email", user_id=user_id)

    await _run_with_dlq("send_purchase_email", job_id, [user_id, course_titles, amount], {}, _run())


async def startup(ctx: dict) -> None:
    from coursepay.core.logging import configure_logging
    settings = get_settings()
    configure_logging(debug=settings.debug, env=settings.env)
    await get_ledger_store().connect()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
