"""Audit log for critical actions and unreconciled ledger state."""

from typing import Any

from badminton_signup.models.audit_log import AuditLog
from badminton_signup.models.common import to_document
from badminton_signup.storage.base import DocumentStore


async def log_event(
    store: DocumentStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """Append to audit_logs collection."""
    entry = AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    await store.insert(AuditLog.collection, to_document(entry))
    return entry


async def list_events(store: DocumentStore, event_type: str | None = None) -> list[AuditLog]:
    filters = {"event_type": event_type} if event_type else {}
    docs = await store.find(AuditLog.collection, **filters)
    entries = [AuditLog.model_validate(d) for d in docs]
    return sorted(entries, key=lambda e: e.created_at, reverse=True)


async def record_unreconciled(
    store: DocumentStore,
    *,
    operation: str,
    user_id: str | None,
    amount: int,
    op_id: str | None = None,
    session_id: str | None = None,
    error: BaseException | None = None,
) -> None:
    """Log a ledger/roster discrepancy for manual repair. Never raises."""
    from badminton_signup.core.logging import get_logger

    log = get_logger(__name__)
    details = {
        "operation": operation,
        "amount": amount,
        "op_id": op_id,
        "session_id": session_id,
        "error": repr(error) if error else None,
    }
    log.error("unreconciled", user_id=user_id, **details)
    try:
        await log_event(store, user_id, "unreconciled", "ledger", op_id, details)
    except Exception:
        # Audit store is down as well; the error log line above is the record.
        log.exception("unreconciled_audit_write_failed", user_id=user_id, op_id=op_id)
