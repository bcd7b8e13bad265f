"""Audit log for money-relevant actions."""

from typing import Any

from coursepay.ledger.base import LedgerStore
from coursepay.schemas import AuditLogRecord


async def log_event(
    store: LedgerStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    session: Any = None,
) -> None:
    """Append to audit_logs."""
    await store.record_audit(
        AuditLogRecord(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        ),
        session=session,
    )
