"""In-memory storage for batches, sessions, results and audit events.

Records are pydantic values; the store keeps the latest copy per id and
bumps `version` on every successful write. One lock guards everything, so
each call (commit_session_change included) is atomic. Data is lost on
restart; used for tests and local development.
"""
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from app.core.exceptions import (
    ConcurrentModification,
    DuplicateBatch,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from app.schemas.audit_events import AuditEvent
from app.schemas.verification import (
    BatchStatus,
    BatchTransaction,
    PaymentBatch,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)
from app.storage.base import SessionChange, check_result_append
from app.verification.batch import OPEN_BATCH_STATUSES


class MemoryStore:
    """Thread-safe in-memory verification store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._batches: Dict[str, PaymentBatch] = {}
        # Transactions per batch, in upload order
        self._transactions: Dict[str, List[BatchTransaction]] = {}
        self._sessions: Dict[str, VerificationSession] = {}
        # Append-only results per session
        self._results: Dict[str, List[VerificationResult]] = {}
        self._audit_log: List[AuditEvent] = []

    # ── Batches ──

    def add_batch(self, batch: PaymentBatch) -> PaymentBatch:
        with self._lock:
            for existing in self._batches.values():
                if (
                    existing.business_id == batch.business_id
                    and existing.week_number == batch.week_number
                    and existing.year == batch.year
                    and existing.status in OPEN_BATCH_STATUSES
                ):
                    raise DuplicateBatch(batch_id=existing.id)
            self._batches[batch.id] = batch
            return batch

    def get_batch(self, batch_id: str) -> PaymentBatch:
        with self._lock:
            batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFound(f"Batch {batch_id} not found", batch_id=batch_id)
        return batch

    def list_batches(
        self,
        business_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> List[PaymentBatch]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            batches = list(self._batches.values())
        return [
            b for b in batches
            if (business_id is None or b.business_id == business_id)
            and (wanted is None or b.status in wanted)
        ]

    def update_batch(self, batch: PaymentBatch) -> PaymentBatch:
        with self._lock:
            stored = self.get_batch(batch.id)
            if stored.version != batch.version:
                raise ConcurrentModification(batch_id=batch.id)
            written = batch.model_copy(update={"version": batch.version + 1})
            self._batches[batch.id] = written
            return written

    # ── Batch transactions ──

    def add_transactions(self, batch_id: str, transactions: List[BatchTransaction]) -> None:
        with self._lock:
            self.get_batch(batch_id)
            if self._transactions.get(batch_id):
                raise ValidationError("Transactions already attached to this batch", batch_id=batch_id)
            self._transactions[batch_id] = list(transactions)

    def list_transactions(self, batch_id: str) -> List[BatchTransaction]:
        with self._lock:
            return list(self._transactions.get(batch_id, []))

    def get_transaction(self, batch_id: str, transaction_id: str) -> BatchTransaction:
        for tx in self.list_transactions(batch_id):
            if tx.transaction_id == transaction_id:
                return tx
        raise NotFound(
            f"Transaction {transaction_id} not found in batch {batch_id}",
            transaction_id=transaction_id,
        )

    # ── Sessions ──

    def add_session(self, session: VerificationSession) -> VerificationSession:
        with self._lock:
            for existing in self._sessions.values():
                if existing.payment_batch_id == session.payment_batch_id and existing.is_active:
                    raise InvalidTransition(
                        f"Active verification session already exists for batch {session.payment_batch_id}",
                        session_id=existing.id,
                    )
            self._sessions[session.id] = session
            self._results[session.id] = []
            return session

    def get_session(self, session_id: str) -> VerificationSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found", session_id=session_id)
        return session

    def list_sessions(
        self,
        statuses: Optional[Iterable[SessionStatus]] = None,
        batch_id: Optional[str] = None,
    ) -> List[VerificationSession]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            s for s in sessions
            if (wanted is None or s.status in wanted)
            and (batch_id is None or s.payment_batch_id == batch_id)
        ]

    def commit_session_change(self, change: SessionChange) -> VerificationSession:
        session = change.session
        with self._lock:
            stored = self.get_session(session.id)
            if stored.version != session.version or stored.status not in change.expected_statuses:
                raise ConcurrentModification(session_id=session.id)

            if change.batch is not None:
                stored_batch = self.get_batch(change.batch.id)
                if stored_batch.version != change.batch.version:
                    raise ConcurrentModification(batch_id=change.batch.id)

            results = self._results.setdefault(session.id, [])
            check_result_append(results, change.new_results)

            # All checks passed; nothing below can fail
            results.extend(change.new_results)
            if change.batch is not None:
                self._batches[change.batch.id] = change.batch.model_copy(
                    update={"version": change.batch.version + 1}
                )
            written = session.model_copy(update={"version": session.version + 1})
            self._sessions[session.id] = written
            return written

    # ── Results ──

    def list_results(self, session_id: str) -> List[VerificationResult]:
        with self._lock:
            return list(self._results.get(session_id, []))

    # ── Audit ──

    def add_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit_log.append(event)

    def list_audit_events(
        self,
        session_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        with self._lock:
            events = list(self._audit_log)
        return [
            e for e in events
            if (session_id is None or e.session_id == session_id)
            and (batch_id is None or e.batch_id == batch_id)
        ]
