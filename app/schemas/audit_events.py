"""
Structured audit events.

Each event kind is its own model with a typed `details` payload; AuditEvent
is the discriminated union over `event_type`, so a stored event can be read
back into the right variant with AUDIT_EVENT_ADAPTER.validate_python(...).
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

SYSTEM_ACTOR = "system"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class _AuditEventBase(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    actor_id: str = SYSTEM_ACTOR
    business_id: str
    session_id: Optional[str] = None
    batch_id: Optional[str] = None
    severity: Severity = Severity.INFO
    description: str
    occurred_at: datetime


# ── Payloads ──

class BatchCreatedDetails(BaseModel):
    week_number: int
    year: int
    total_transactions: int
    total_amount: str
    deadline: datetime


class StatusChangeDetails(BaseModel):
    previous_status: str
    new_status: str
    reason: Optional[str] = None


class SessionProgressDetails(BaseModel):
    verified_transactions: int
    total_transactions: int
    completion_percentage: int
    notes: Optional[str] = None


class AutoResolutionDetails(BaseModel):
    completion_percentage: int
    auto_approval_threshold: float
    average_risk_score: Optional[float] = None
    hours_overdue: int


class TransactionDecisionDetails(BaseModel):
    transaction_id: str
    result_id: str
    decision: str
    rejection_reason: Optional[str] = None
    risk_score: Optional[int] = None
    verification_time_seconds: Optional[int] = None
    automated: bool = False
    supersedes: Optional[str] = None


class AssessmentDetails(BaseModel):
    transaction_id: str
    risk_score: int
    risk_level: str
    recommendation: str
    source: str
    error: Optional[str] = None


class PatternDetails(BaseModel):
    pattern_types: list[str]
    affected_transactions: list[str]


class DeadlineExtendedDetails(BaseModel):
    previous_deadline: datetime
    new_deadline: datetime
    additional_hours: float
    reason: str


# ── Variants ──

class BatchCreated(_AuditEventBase):
    event_type: Literal["batch_created"] = "batch_created"
    details: BatchCreatedDetails


class BatchStatusChanged(_AuditEventBase):
    event_type: Literal["batch_status_changed"] = "batch_status_changed"
    details: StatusChangeDetails


class SessionStatusChanged(_AuditEventBase):
    """start / pause / resume / manual complete / cancel."""
    event_type: Literal["session_status_changed"] = "session_status_changed"
    details: StatusChangeDetails


class SessionCompleted(_AuditEventBase):
    event_type: Literal["session_completed"] = "session_completed"
    details: SessionProgressDetails


class SessionAutoApproved(_AuditEventBase):
    event_type: Literal["session_auto_approved"] = "session_auto_approved"
    details: AutoResolutionDetails


class SessionExpired(_AuditEventBase):
    event_type: Literal["session_expired"] = "session_expired"
    severity: Severity = Severity.WARNING
    details: AutoResolutionDetails


class TransactionVerified(_AuditEventBase):
    event_type: Literal["transaction_verified"] = "transaction_verified"
    details: TransactionDecisionDetails


class VerificationDecisionChanged(_AuditEventBase):
    event_type: Literal["verification_decision_changed"] = "verification_decision_changed"
    severity: Severity = Severity.WARNING
    details: TransactionDecisionDetails


class FraudAssessmentCompleted(_AuditEventBase):
    event_type: Literal["fraud_assessment_completed"] = "fraud_assessment_completed"
    details: AssessmentDetails


class FraudPatternDetected(_AuditEventBase):
    event_type: Literal["fraud_pattern_detected"] = "fraud_pattern_detected"
    severity: Severity = Severity.WARNING
    details: PatternDetails


class DeadlineExtended(_AuditEventBase):
    event_type: Literal["deadline_extended"] = "deadline_extended"
    details: DeadlineExtendedDetails


AuditEvent = Annotated[
    Union[
        BatchCreated,
        BatchStatusChanged,
        SessionStatusChanged,
        SessionCompleted,
        SessionAutoApproved,
        SessionExpired,
        TransactionVerified,
        VerificationDecisionChanged,
        FraudAssessmentCompleted,
        FraudPatternDetected,
        DeadlineExtended,
    ],
    Field(discriminator="event_type"),
]

AUDIT_EVENT_ADAPTER: TypeAdapter[AuditEvent] = TypeAdapter(AuditEvent)
