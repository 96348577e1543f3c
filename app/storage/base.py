"""
Storage interface for the verification lifecycle.

Implementations: MemoryStore (default for tests / local) and SqlStore
(SQLAlchemy). Every write of a session goes through commit_session_change,
a single unit of work guarded by an optimistic version check.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from app.core.exceptions import ConcurrentModification, TransactionAlreadyVerified
from app.schemas.audit_events import AuditEvent
from app.schemas.verification import (
    BatchStatus,
    BatchTransaction,
    PaymentBatch,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)


@dataclass
class SessionChange:
    """
    One atomic write: the new session copy, any results appended with it, and
    the batch copy it cascades to.

    `session.version` and `batch.version` are the versions that were *read*;
    the store rejects the change with ConcurrentModification when the stored
    version moved on or the stored status is not in `expected_statuses`.
    """
    session: VerificationSession
    expected_statuses: frozenset[SessionStatus]
    new_results: list[VerificationResult] = field(default_factory=list)
    batch: Optional[PaymentBatch] = None


def check_result_append(existing: list[VerificationResult], new_results: list[VerificationResult]) -> None:
    """
    At most one effective result per transaction: a first decision needs no
    effective result yet, a correction must supersede the current one.
    """
    superseded = {r.supersedes for r in existing if r.supersedes}
    effective = {r.transaction_id: r for r in existing if r.id not in superseded}

    for result in new_results:
        current = effective.get(result.transaction_id)
        if result.supersedes is None:
            if current is not None:
                raise TransactionAlreadyVerified(
                    f"Transaction {result.transaction_id} has already been verified",
                    transaction_id=result.transaction_id,
                )
        elif current is None or current.id != result.supersedes:
            raise ConcurrentModification(
                f"Result {result.supersedes} is no longer the effective decision",
                transaction_id=result.transaction_id,
            )
        effective[result.transaction_id] = result


class VerificationStore(Protocol):
    # ── Batches ──
    def add_batch(self, batch: PaymentBatch) -> PaymentBatch: ...

    def get_batch(self, batch_id: str) -> PaymentBatch: ...

    def list_batches(
        self,
        business_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> list[PaymentBatch]: ...

    def update_batch(self, batch: PaymentBatch) -> PaymentBatch: ...

    # ── Batch transactions ──
    def add_transactions(self, batch_id: str, transactions: list[BatchTransaction]) -> None: ...

    def list_transactions(self, batch_id: str) -> list[BatchTransaction]: ...

    def get_transaction(self, batch_id: str, transaction_id: str) -> BatchTransaction: ...

    # ── Sessions ──
    def add_session(self, session: VerificationSession) -> VerificationSession: ...

    def get_session(self, session_id: str) -> VerificationSession: ...

    def list_sessions(
        self,
        statuses: Optional[Iterable[SessionStatus]] = None,
        batch_id: Optional[str] = None,
    ) -> list[VerificationSession]: ...

    def commit_session_change(self, change: SessionChange) -> VerificationSession: ...

    # ── Results ──
    def list_results(self, session_id: str) -> list[VerificationResult]: ...

    # ── Audit ──
    def add_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(
        self,
        session_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[AuditEvent]: ...
