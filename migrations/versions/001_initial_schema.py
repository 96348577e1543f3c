"""
001 — Initial schema: batches, batch transactions, sessions, results, audit events

Revision ID: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

OPEN_BATCH = sa.text("status IN ('draft', 'pending_verification', 'in_progress')")
ACTIVE_SESSION = sa.text("status IN ('not_started', 'in_progress', 'paused')")


def upgrade() -> None:
    op.create_table(
        "payment_batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_id", sa.String(100), nullable=False),
        sa.Column("week_number", sa.Integer, nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("total_transactions", sa.Integer, nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_payment_batches_business_id", "payment_batches", ["business_id"])
    op.create_index("ix_payment_batches_status", "payment_batches", ["status"])
    op.create_index(
        "uq_payment_batches_open_week", "payment_batches", ["business_id", "week_number", "year"],
        unique=True, postgresql_where=OPEN_BATCH, sqlite_where=OPEN_BATCH,
    )

    op.create_table(
        "batch_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("payment_batches.id"), nullable=False),
        sa.Column("transaction_id", sa.String(50), nullable=False),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount_sek", sa.Numeric(12, 2), nullable=False),
        sa.Column("store_code", sa.String(50), nullable=False, server_default=""),
        sa.Column("quality_score", sa.Integer, nullable=False),
        sa.Column("reward_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("reward_amount_sek", sa.Numeric(12, 2), nullable=False),
        sa.Column("phone_last4", sa.String(4), nullable=False),
        sa.UniqueConstraint("batch_id", "transaction_id", name="uq_batch_transactions_id"),
    )
    op.create_index("ix_batch_transactions_batch_id", "batch_transactions", ["batch_id"])

    op.create_table(
        "verification_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("payment_batch_id", sa.String(36), sa.ForeignKey("payment_batches.id"), nullable=False),
        sa.Column("business_id", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("resolution", sa.String(20), nullable=True),

        sa.Column("total_transactions", sa.Integer, nullable=False),
        sa.Column("verified_transactions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("approved_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rejected_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_transaction_index", sa.Integer, nullable=False, server_default="0"),

        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_approval_threshold", sa.Float, nullable=False, server_default="30"),
        sa.Column("average_risk_score", sa.Float, nullable=True),

        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("pause_reason", sa.String(500), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),

        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.CheckConstraint("verified_transactions <= total_transactions", name="ck_sessions_verified_le_total"),
        sa.CheckConstraint(
            "approved_count + rejected_count = verified_transactions", name="ck_sessions_counts_consistent",
        ),
    )
    op.create_index("ix_verification_sessions_payment_batch_id", "verification_sessions", ["payment_batch_id"])
    op.create_index("ix_verification_sessions_business_id", "verification_sessions", ["business_id"])
    op.create_index("ix_verification_sessions_status", "verification_sessions", ["status"])
    op.create_index("ix_verification_sessions_deadline", "verification_sessions", ["deadline"])
    op.create_index(
        "uq_verification_sessions_active_batch", "verification_sessions", ["payment_batch_id"],
        unique=True, postgresql_where=ACTIVE_SESSION, sqlite_where=ACTIVE_SESSION,
    )

    op.create_table(
        "verification_results",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "verification_session_id", sa.String(36), sa.ForeignKey("verification_sessions.id"), nullable=False,
        ),
        sa.Column("transaction_id", sa.String(50), nullable=False),
        sa.Column("decision", sa.String(20), nullable=False),
        sa.Column("verified", sa.Boolean, nullable=False),
        sa.Column("rejection_reason", sa.String(40), nullable=True),
        sa.Column("reviewer_id", sa.String(100), nullable=True),
        sa.Column("notes", sa.String(1000), nullable=True),
        sa.Column("verification_time_seconds", sa.Integer, nullable=True),
        sa.Column("risk_score", sa.Integer, nullable=True),

        sa.Column("amount_sek", sa.Numeric(12, 2), nullable=False),
        sa.Column("quality_score", sa.Integer, nullable=True),
        sa.Column("reward_amount_sek", sa.Numeric(12, 2), nullable=False),

        sa.Column("supersedes", sa.String(36), sa.ForeignKey("verification_results.id"), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "decision <> 'rejected' OR rejection_reason IS NOT NULL", name="ck_results_rejection_reason",
        ),
    )
    op.create_index(
        "ix_verification_results_verification_session_id", "verification_results", ["verification_session_id"],
    )
    op.create_index("ix_verification_results_transaction_id", "verification_results", ["transaction_id"])

    op.create_table(
        "audit_events",
        sa.Column("event_id", sa.String(36), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.String(100), nullable=False),
        sa.Column("business_id", sa.String(100), nullable=False),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("batch_id", sa.String(36), nullable=True),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_business_id", "audit_events", ["business_id"])
    op.create_index("ix_audit_events_session_id", "audit_events", ["session_id"])
    op.create_index("ix_audit_events_batch_id", "audit_events", ["batch_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("verification_results")
    op.drop_table("verification_sessions")
    op.drop_table("batch_transactions")
    op.drop_table("payment_batches")
