"""
Deadline countdown and auto-resolution payloads.
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

UrgencyLevel = Literal["low", "medium", "high", "critical"]


class DeadlineStatus(BaseModel):
    deadline: datetime
    hours_remaining: int
    minutes_remaining: int
    is_overdue: bool
    is_critical: bool = Field(description="< 24 hours remaining")
    is_urgent: bool = Field(description="< 6 hours remaining")
    urgency_level: UrgencyLevel
    formatted_time_remaining: str


class Countdown(BaseModel):
    session_id: str
    batch_id: str
    business_id: str
    deadline: datetime
    status: DeadlineStatus
    completion_percentage: int
    auto_approval_eligible: bool
    requires_immediate_attention: bool
    polling_interval_seconds: int
    should_poll: bool


class UrgencyStatistics(BaseModel):
    total_active: int = 0
    critical: int = 0
    urgent: int = 0
    overdue: int = 0
    auto_approval_eligible: int = 0


class SessionError(BaseModel):
    session_id: Optional[str] = None
    batch_id: Optional[str] = None
    error: str


class AutoProcessingResult(BaseModel):
    processed_sessions: int = 0
    auto_approved_sessions: list[str] = []
    expired_sessions: list[str] = []
    skipped_sessions: list[str] = Field(default=[], description="Lost an optimistic-lock race; next pass re-evaluates")
    expired_batches: list[str] = Field(default=[], description="Open batches past deadline with no active session")
    errors: list[SessionError] = []
    elapsed_seconds: float = 0.0
