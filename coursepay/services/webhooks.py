"""Inbound gateway notifications: authenticate, normalize, reconcile."""

from typing import Mapping

from coursepay.core.exceptions import SignatureError
from coursepay.core.logging import get_logger
from coursepay.gateways.base import PaymentGateway
from coursepay.ledger.base import LedgerStore
from coursepay.services.reconciliation import Notifier, ReconcileResult, reconcile_event

log = get_logger(__name__)


async def handle_webhook(
    store: LedgerStore,
    gateway: PaymentGateway,
    raw_body: bytes,
    headers: Mapping[str, str],
    query: Mapping[str, str] | None = None,
    notifier: Notifier | None = None,
) -> list[ReconcileResult]:
    """
    Verify the notification against the raw request bytes and reconcile every event it carries.

    Nothing is read from the body before the signature checks out. SignatureError propagates so
    the vendor sees a 4xx; reconciliation errors propagate so the vendor retries.
    """
    try:
        events = await gateway.verify_webhook(raw_body, headers, query)
    except SignatureError:
        log.warning("webhook_signature_invalid", gateway=gateway.name.value)
        raise
    if not events:
        log.info("webhook_ignored", gateway=gateway.name.value)
        return []
    results = []
    for event in events:
        result = await reconcile_event(store, event, notifier=notifier)
        log.info(
            "webhook_processed",
            gateway=gateway.name.value,
            event_id=event.event_id,
            event_type=event.event_type,
            order_id=event.order_id,
            outcome=event.outcome.value,
            result=result.value,
        )
        results.append(result)
    return results
