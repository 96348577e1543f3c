"""
HTTP request / response bodies for the verification and admin routers.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.fraud import FraudAssessment
from app.schemas.verification import (
    BatchTotals,
    BatchTransaction,
    Decision,
    ProgressSnapshot,
    RejectionReason,
    VerificationItem,
    VerificationResult,
)


# ── Batches (admin) ──

class CreateBatchRequest(BaseModel):
    business_id: str = Field(..., min_length=1, max_length=100)
    week_number: int = Field(..., ge=1, le=53)
    year: int
    totals: BatchTotals


class TransactionRow(BaseModel):
    """One parsed CSV row; the batch comes from the URL."""
    transaction_id: str = Field(..., min_length=1, max_length=50)
    transaction_date: datetime
    amount_sek: Decimal = Field(..., ge=0, decimal_places=2)
    store_code: str = ""
    quality_score: int = Field(..., ge=0, le=100)
    reward_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=15)
    reward_amount_sek: Decimal = Field(default=Decimal("0"), ge=0)
    phone_last4: str = Field(default="**00", pattern=r"^\*\*\d{2}$")

    def for_batch(self, batch_id: str) -> BatchTransaction:
        return BatchTransaction(batch_id=batch_id, **self.model_dump())


class AttachTransactionsRequest(BaseModel):
    transactions: list[TransactionRow] = Field(..., min_length=1)


class BatchSummary(BaseModel):
    id: str
    business_id: str
    batch_ref: str
    status: str
    total_transactions: int
    total_amount: Decimal
    deadline: datetime
    urgency_level: str
    urgency_score: int
    version: int


# ── Sessions ──

class PauseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CompleteRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class BatchVerifyRequest(BaseModel):
    items: list[VerificationItem] = Field(..., min_length=1, max_length=500)


class CorrectionRequest(BaseModel):
    transaction_id: str
    decision: Decision
    rejection_reason: Optional[RejectionReason] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class VerificationResponse(BaseModel):
    result: VerificationResult
    progress: ProgressSnapshot
    assessment: Optional[FraudAssessment] = None


class ExtendDeadlineRequest(BaseModel):
    additional_hours: float = Field(..., gt=0, le=168)
    reason: str = Field(..., min_length=1, max_length=500)
