"""
Persistent verification lifecycle tables.

  payment_batches ─┬─< batch_transactions
                   └─< verification_sessions ─< verification_results
  audit_events (append-only)

Partial unique indexes back the "one open batch per (business, week, year)"
and "one active session per batch" rules at the database level.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


OPEN_BATCH_CONDITION = text("status IN ('draft', 'pending_verification', 'in_progress')")
ACTIVE_SESSION_CONDITION = text("status IN ('not_started', 'in_progress', 'paused')")


class PaymentBatchRow(Base):
    __tablename__ = "payment_batches"
    __table_args__ = (
        Index(
            "uq_payment_batches_open_week",
            "business_id", "week_number", "year",
            unique=True,
            postgresql_where=OPEN_BATCH_CONDITION,
            sqlite_where=OPEN_BATCH_CONDITION,
        ),
    )

    id = Column(String(36), primary_key=True)
    business_id = Column(String(100), nullable=False, index=True)
    week_number = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    total_transactions = Column(Integer, nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=False)
    status = Column(String(30), nullable=False, index=True)
    deadline = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    created_by = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<PaymentBatch {self.id} {self.year}-W{self.week_number} status={self.status}>"


class BatchTransactionRow(Base):
    __tablename__ = "batch_transactions"
    __table_args__ = (UniqueConstraint("batch_id", "transaction_id", name="uq_batch_transactions_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(36), ForeignKey("payment_batches.id"), nullable=False, index=True)
    transaction_id = Column(String(50), nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    amount_sek = Column(Numeric(12, 2), nullable=False)
    store_code = Column(String(50), nullable=False, default="")
    quality_score = Column(Integer, nullable=False)
    reward_percentage = Column(Numeric(5, 2), nullable=False)
    reward_amount_sek = Column(Numeric(12, 2), nullable=False)
    phone_last4 = Column(String(4), nullable=False)


class VerificationSessionRow(Base):
    __tablename__ = "verification_sessions"
    __table_args__ = (
        Index(
            "uq_verification_sessions_active_batch",
            "payment_batch_id",
            unique=True,
            postgresql_where=ACTIVE_SESSION_CONDITION,
            sqlite_where=ACTIVE_SESSION_CONDITION,
        ),
    )

    id = Column(String(36), primary_key=True)
    payment_batch_id = Column(String(36), ForeignKey("payment_batches.id"), nullable=False, index=True)
    business_id = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    resolution = Column(String(20), nullable=True)

    # ── Progress ──
    total_transactions = Column(Integer, nullable=False)
    verified_transactions = Column(Integer, nullable=False, default=0)
    approved_count = Column(Integer, nullable=False, default=0)
    rejected_count = Column(Integer, nullable=False, default=0)
    current_transaction_index = Column(Integer, nullable=False, default=0)

    # ── Deadline / auto-approval ──
    deadline = Column(DateTime(timezone=True), nullable=False, index=True)
    auto_approval_threshold = Column(Float, nullable=False, default=30.0)
    average_risk_score = Column(Float, nullable=True)

    # ── Timestamps ──
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    pause_count = Column(Integer, nullable=False, default=0)
    pause_reason = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<VerificationSession {self.id} status={self.status} v{self.version}>"


class VerificationResultRow(Base):
    __tablename__ = "verification_results"

    id = Column(String(36), primary_key=True)
    verification_session_id = Column(
        String(36), ForeignKey("verification_sessions.id"), nullable=False, index=True,
    )
    transaction_id = Column(String(50), nullable=False, index=True)
    decision = Column(String(20), nullable=False)
    verified = Column(Boolean, nullable=False)
    rejection_reason = Column(String(40), nullable=True)
    reviewer_id = Column(String(100), nullable=True)
    notes = Column(String(1000), nullable=True)
    verification_time_seconds = Column(Integer, nullable=True)
    risk_score = Column(Integer, nullable=True)

    # ── Snapshot at decision time ──
    amount_sek = Column(Numeric(12, 2), nullable=False)
    quality_score = Column(Integer, nullable=True)
    reward_amount_sek = Column(Numeric(12, 2), nullable=False)

    # A record can be superseded at most once
    supersedes = Column(String(36), ForeignKey("verification_results.id"), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id = Column(String(36), primary_key=True)
    event_type = Column(String(50), nullable=False, index=True)
    actor_id = Column(String(100), nullable=False)
    business_id = Column(String(100), nullable=False, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    batch_id = Column(String(36), nullable=True, index=True)
    severity = Column(String(10), nullable=False)
    description = Column(Text, nullable=False)

    # Full event (details included) for replay into the typed variant
    payload = Column(JSON, nullable=False)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<AuditEvent {self.event_id} {self.event_type}>"
