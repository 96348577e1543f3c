"""
SQLAlchemy-backed verification store.

Each public call runs in its own transaction. commit_session_change is a
conditional UPDATE ... WHERE id = :id AND version = :read_version AND
status IN (:expected); zero affected rows means another writer got there
first and the whole unit of work is rolled back.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.exceptions import (
    ConcurrentModification,
    DuplicateBatch,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from app.models.verification import (
    AuditEventRow,
    BatchTransactionRow,
    PaymentBatchRow,
    VerificationResultRow,
    VerificationSessionRow,
)
from app.schemas.audit_events import AUDIT_EVENT_ADAPTER, AuditEvent
from app.schemas.verification import (
    BatchStatus,
    BatchTransaction,
    PaymentBatch,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)
from app.storage.base import SessionChange, check_result_append

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


# ── Row ⇄ record mapping ──

def _aware(value):
    # SQLite drops tzinfo; everything stored is UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_values(record: BaseModel, exclude: Iterable[str] = ()) -> dict:
    values = record.model_dump(exclude=set(exclude))
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in values.items()}


def _load(model: Type[M], row) -> M:
    return model.model_validate({name: _aware(getattr(row, name)) for name in model.model_fields})


class SqlStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ── Batches ──

    def add_batch(self, batch: PaymentBatch) -> PaymentBatch:
        try:
            with self._session_factory.begin() as db:
                db.add(PaymentBatchRow(**_column_values(batch)))
                db.flush()
        except IntegrityError as e:
            logger.info("duplicate_batch_rejected", business_id=batch.business_id, week=batch.week_number)
            raise DuplicateBatch(business_id=batch.business_id) from e
        return batch

    def get_batch(self, batch_id: str) -> PaymentBatch:
        with self._session_factory() as db:
            return _load(PaymentBatch, self._batch_row(db, batch_id))

    def list_batches(
        self,
        business_id: Optional[str] = None,
        statuses: Optional[Iterable[BatchStatus]] = None,
    ) -> list[PaymentBatch]:
        stmt = select(PaymentBatchRow).order_by(PaymentBatchRow.created_at)
        if business_id is not None:
            stmt = stmt.where(PaymentBatchRow.business_id == business_id)
        if statuses is not None:
            stmt = stmt.where(PaymentBatchRow.status.in_([s.value for s in statuses]))
        with self._session_factory() as db:
            return [_load(PaymentBatch, row) for row in db.scalars(stmt)]

    def update_batch(self, batch: PaymentBatch) -> PaymentBatch:
        with self._session_factory.begin() as db:
            self._write_batch(db, batch)
        return batch.model_copy(update={"version": batch.version + 1})

    # ── Batch transactions ──

    def add_transactions(self, batch_id: str, transactions: list[BatchTransaction]) -> None:
        with self._session_factory.begin() as db:
            self._batch_row(db, batch_id)
            already = db.scalar(
                select(BatchTransactionRow.id).where(BatchTransactionRow.batch_id == batch_id).limit(1)
            )
            if already is not None:
                raise ValidationError("Transactions already attached to this batch", batch_id=batch_id)
            db.add_all(BatchTransactionRow(**_column_values(tx)) for tx in transactions)

    def list_transactions(self, batch_id: str) -> list[BatchTransaction]:
        stmt = (
            select(BatchTransactionRow)
            .where(BatchTransactionRow.batch_id == batch_id)
            .order_by(BatchTransactionRow.id)
        )
        with self._session_factory() as db:
            return [_load(BatchTransaction, row) for row in db.scalars(stmt)]

    def get_transaction(self, batch_id: str, transaction_id: str) -> BatchTransaction:
        stmt = select(BatchTransactionRow).where(
            BatchTransactionRow.batch_id == batch_id,
            BatchTransactionRow.transaction_id == transaction_id,
        )
        with self._session_factory() as db:
            row = db.scalar(stmt)
            if row is None:
                raise NotFound(
                    f"Transaction {transaction_id} not found in batch {batch_id}",
                    transaction_id=transaction_id,
                )
            return _load(BatchTransaction, row)

    # ── Sessions ──

    def add_session(self, session: VerificationSession) -> VerificationSession:
        try:
            with self._session_factory.begin() as db:
                db.add(VerificationSessionRow(**_column_values(session)))
                db.flush()
        except IntegrityError as e:
            raise InvalidTransition(
                f"Active verification session already exists for batch {session.payment_batch_id}",
                batch_id=session.payment_batch_id,
            ) from e
        return session

    def get_session(self, session_id: str) -> VerificationSession:
        with self._session_factory() as db:
            row = db.get(VerificationSessionRow, session_id)
            if row is None:
                raise NotFound(f"Session {session_id} not found", session_id=session_id)
            return _load(VerificationSession, row)

    def list_sessions(
        self,
        statuses: Optional[Iterable[SessionStatus]] = None,
        batch_id: Optional[str] = None,
    ) -> list[VerificationSession]:
        stmt = select(VerificationSessionRow).order_by(VerificationSessionRow.created_at)
        if statuses is not None:
            stmt = stmt.where(VerificationSessionRow.status.in_([s.value for s in statuses]))
        if batch_id is not None:
            stmt = stmt.where(VerificationSessionRow.payment_batch_id == batch_id)
        with self._session_factory() as db:
            return [_load(VerificationSession, row) for row in db.scalars(stmt)]

    def commit_session_change(self, change: SessionChange) -> VerificationSession:
        session = change.session
        try:
            with self._session_factory.begin() as db:
                values = _column_values(session, exclude={"id"})
                values["version"] = session.version + 1
                outcome = db.execute(
                    update(VerificationSessionRow)
                    .where(
                        VerificationSessionRow.id == session.id,
                        VerificationSessionRow.version == session.version,
                        VerificationSessionRow.status.in_([s.value for s in change.expected_statuses]),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount != 1:
                    if db.get(VerificationSessionRow, session.id) is None:
                        raise NotFound(f"Session {session.id} not found", session_id=session.id)
                    raise ConcurrentModification(session_id=session.id)

                if change.batch is not None:
                    self._write_batch(db, change.batch)

                if change.new_results:
                    existing = db.scalars(
                        select(VerificationResultRow)
                        .where(VerificationResultRow.verification_session_id == session.id)
                    )
                    check_result_append([_load(VerificationResult, r) for r in existing], change.new_results)
                    db.add_all(VerificationResultRow(**_column_values(r)) for r in change.new_results)
                    db.flush()
        except IntegrityError as e:
            raise ConcurrentModification(session_id=session.id) from e

        return session.model_copy(update={"version": session.version + 1})

    # ── Results ──

    def list_results(self, session_id: str) -> list[VerificationResult]:
        stmt = (
            select(VerificationResultRow)
            .where(VerificationResultRow.verification_session_id == session_id)
            .order_by(VerificationResultRow.created_at)
        )
        with self._session_factory() as db:
            return [_load(VerificationResult, row) for row in db.scalars(stmt)]

    # ── Audit ──

    def add_audit_event(self, event: AuditEvent) -> None:
        with self._session_factory.begin() as db:
            db.add(AuditEventRow(
                event_id=event.event_id,
                event_type=event.event_type,
                actor_id=event.actor_id,
                business_id=event.business_id,
                session_id=event.session_id,
                batch_id=event.batch_id,
                severity=event.severity.value,
                description=event.description,
                payload=event.model_dump(mode="json"),
                occurred_at=event.occurred_at,
            ))

    def list_audit_events(
        self,
        session_id: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[AuditEvent]:
        stmt = select(AuditEventRow).order_by(AuditEventRow.occurred_at)
        if session_id is not None:
            stmt = stmt.where(AuditEventRow.session_id == session_id)
        if batch_id is not None:
            stmt = stmt.where(AuditEventRow.batch_id == batch_id)
        with self._session_factory() as db:
            return [AUDIT_EVENT_ADAPTER.validate_python(row.payload) for row in db.scalars(stmt)]

    # ── helpers ──

    @staticmethod
    def _batch_row(db: Session, batch_id: str) -> PaymentBatchRow:
        row = db.get(PaymentBatchRow, batch_id)
        if row is None:
            raise NotFound(f"Batch {batch_id} not found", batch_id=batch_id)
        return row

    def _write_batch(self, db: Session, batch: PaymentBatch) -> None:
        values = _column_values(batch, exclude={"id"})
        values["version"] = batch.version + 1
        outcome = db.execute(
            update(PaymentBatchRow)
            .where(PaymentBatchRow.id == batch.id, PaymentBatchRow.version == batch.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            self._batch_row(db, batch.id)
            raise ConcurrentModification(batch_id=batch.id)
