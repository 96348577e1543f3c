"""
Audit event publisher — fire-and-forget.

Lifecycle operations emit typed audit events (app.schemas.audit_events)
to an AuditSink. A failing sink is logged and never fails the operation
that emitted the event.
"""
from __future__ import annotations

from typing import Optional, Protocol

import structlog

from app.schemas.audit_events import AuditEvent
from app.storage.base import VerificationStore

logger = structlog.get_logger()


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class StoreAuditSink:
    """Persists events next to the records they describe."""

    def __init__(self, store: VerificationStore):
        self._store = store

    def emit(self, event: AuditEvent) -> None:
        self._store.add_audit_event(event)


class LoggingAuditSink:
    """Writes events to the structured log only (no persistence)."""

    def emit(self, event: AuditEvent) -> None:
        logger.info("audit_event", **event.model_dump(mode="json"))


def publish_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    if sink is None:
        return

    try:
        sink.emit(event)
        logger.debug("audit_event_published", event_type=event.event_type, event_id=event.event_id)
    except Exception as e:
        # Fire-and-forget: log but don't fail the operation
        logger.warning(
            "audit_publish_failed",
            event_type=event.event_type,
            session_id=event.session_id,
            error=str(e),
        )
