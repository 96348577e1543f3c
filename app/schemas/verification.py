"""
Verification lifecycle records: payment batches, their transactions,
verification sessions and per-transaction results.

Records are treated as values: state changes produce a new copy
(model_copy(update=...)) that is written back through the store with an
optimistic version check.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ──

class BatchStatus(str, Enum):
    DRAFT = "draft"
    PENDING_VERIFICATION = "pending_verification"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    AUTO_APPROVED = "auto_approved"
    EXPIRED = "expired"


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_SESSION_STATUSES = frozenset({
    SessionStatus.NOT_STARTED,
    SessionStatus.IN_PROGRESS,
    SessionStatus.PAUSED,
})

TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.EXPIRED,
    SessionStatus.CANCELLED,
})


class SessionResolution(str, Enum):
    """How a session reached its terminal state."""
    ALL_VERIFIED = "all_verified"
    MANUAL = "manual"
    AUTO_APPROVED = "auto_approved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


class RejectionReason(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    CUSTOMER_DISPUTE = "customer_dispute"
    INVALID_TRANSACTION = "invalid_transaction"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    MISSING_DOCUMENTATION = "missing_documentation"
    QUALITY_THRESHOLD_NOT_MET = "quality_threshold_not_met"
    FRAUD_SUSPECTED = "fraud_suspected"
    TECHNICAL_ERROR = "technical_error"
    POLICY_VIOLATION = "policy_violation"
    OTHER = "other"


# ── Records ──

class PaymentBatch(BaseModel):
    """One business's transactions for one ISO week."""
    id: str = Field(default_factory=new_id)
    business_id: str
    week_number: int = Field(ge=1, le=53)
    year: int
    total_transactions: int = Field(ge=0)
    total_amount: Decimal = Field(ge=0, decimal_places=2)
    status: BatchStatus = BatchStatus.DRAFT
    deadline: datetime
    created_at: datetime
    created_by: Optional[str] = None
    version: int = 0


class BatchTransaction(BaseModel):
    """A parsed transaction row, as delivered by the upload collaborator."""
    transaction_id: str = Field(min_length=1, max_length=50)
    batch_id: str
    transaction_date: datetime
    amount_sek: Decimal = Field(ge=0, decimal_places=2)
    store_code: str = ""
    quality_score: int = Field(ge=0, le=100)
    reward_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=15)
    reward_amount_sek: Decimal = Field(default=Decimal("0"), ge=0)
    phone_last4: str = Field(default="**00", pattern=r"^\*\*\d{2}$")


class VerificationSession(BaseModel):
    id: str = Field(default_factory=new_id)
    payment_batch_id: str
    business_id: str
    status: SessionStatus = SessionStatus.NOT_STARTED
    resolution: Optional[SessionResolution] = None

    total_transactions: int = Field(ge=0)
    verified_transactions: int = Field(default=0, ge=0)
    approved_count: int = Field(default=0, ge=0)
    rejected_count: int = Field(default=0, ge=0)
    current_transaction_index: int = Field(default=0, ge=0)

    deadline: datetime
    auto_approval_threshold: float = Field(default=30.0, ge=0, le=100)
    average_risk_score: Optional[float] = Field(default=None, ge=0, le=100)

    created_at: datetime
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    pause_count: int = 0
    pause_reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)
    version: int = 0

    @property
    def completion_percentage(self) -> int:
        return completion_percentage(self.verified_transactions, self.total_transactions)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SESSION_STATUSES


class VerificationResult(BaseModel):
    """
    One decision for one transaction. Never mutated: a correction is a new
    record whose `supersedes` points at the record it replaces.
    """
    id: str = Field(default_factory=new_id)
    verification_session_id: str
    transaction_id: str
    decision: Decision
    verified: bool
    rejection_reason: Optional[RejectionReason] = None
    reviewer_id: Optional[str] = None  # None → automated decision
    notes: Optional[str] = Field(default=None, max_length=1000)
    verification_time_seconds: Optional[int] = Field(default=None, ge=0)
    risk_score: Optional[int] = Field(default=None, ge=0, le=100)

    # Snapshot of the transaction at decision time (payment impact / analytics)
    amount_sek: Decimal = Decimal("0")
    quality_score: Optional[int] = None
    reward_amount_sek: Decimal = Decimal("0")

    supersedes: Optional[str] = None
    created_at: datetime

    @property
    def automated(self) -> bool:
        return self.reviewer_id is None


# ── Derived views ──

class ProgressSnapshot(BaseModel):
    """What a real-time layer would broadcast after each mutation."""
    session_id: str
    batch_id: str
    business_id: str
    verified: int
    total: int
    approved: int
    rejected: int
    completion_percentage: int
    status: SessionStatus

    @classmethod
    def of(cls, session: VerificationSession) -> "ProgressSnapshot":
        return cls(
            session_id=session.id,
            batch_id=session.payment_batch_id,
            business_id=session.business_id,
            verified=session.verified_transactions,
            total=session.total_transactions,
            approved=session.approved_count,
            rejected=session.rejected_count,
            completion_percentage=session.completion_percentage,
            status=session.status,
        )


class PaymentImpact(BaseModel):
    reward_payable: bool
    reward_amount: Decimal
    commission_applicable: bool
    commission_amount: Decimal
    net_business_cost: Decimal


class RejectionReasonCount(BaseModel):
    reason: RejectionReason
    count: int


class SessionAnalytics(BaseModel):
    total_results: int
    verified_transactions: int
    approval_rate: float
    rejection_rate: float
    average_quality_score: float
    average_verification_time_seconds: Optional[float] = None
    average_risk_score: Optional[float] = None
    total_reward_amount: Decimal
    total_commission_amount: Decimal
    common_rejection_reasons: list[RejectionReasonCount] = []
    automated_decisions: int = 0


class TimelineEntry(BaseModel):
    transaction_id: str
    decision_timestamp: datetime
    decision: Decision
    reviewer_id: Optional[str] = None
    automated: bool
    supersedes: Optional[str] = None


class BatchTotals(BaseModel):
    """Totals declared when a batch is created."""
    total_transactions: int = Field(ge=0)
    total_amount: Decimal = Field(ge=0)

    @field_validator("total_amount")
    @classmethod
    def two_decimals(cls, v: Decimal) -> Decimal:
        if v != v.quantize(Decimal("0.01")):
            raise ValueError("Amount must have at most 2 decimal places")
        return v


def completion_percentage(verified: int, total: int) -> int:
    """round(verified / total * 100), half-up; 0 for empty sessions."""
    if total <= 0:
        return 0
    return (verified * 200 + total) // (total * 2)


# ── Workflow inputs / outputs ──

class VerificationItem(BaseModel):
    """One reviewer decision, as submitted singly or in a batch."""
    transaction_id: str
    decision: Decision
    rejection_reason: Optional[RejectionReason] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    verification_time_seconds: Optional[int] = Field(default=None, ge=0)


class ItemError(BaseModel):
    transaction_id: str
    error: str
    message: str


class BatchVerifyOutcome(BaseModel):
    recorded: list[VerificationResult] = []
    errors: list[ItemError] = []
    manual_review: list[str] = Field(default=[], description="Transactions left for a human reviewer")
    progress: ProgressSnapshot


class SessionReport(BaseModel):
    progress: ProgressSnapshot
    analytics: SessionAnalytics
    payment_summary: dict
    metrics: dict
    timeline: list[TimelineEntry]
