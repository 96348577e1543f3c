"""
Verification Session state machine.

  not_started → in_progress ⇄ paused
        │             │         │
        └─────────────┴─────────┴──→ completed | expired | cancelled   (terminal)

Functions are pure: each takes a session (plus `now`) and returns the next
session copy or raises. Counters and status always change together so that
`approved + rejected == verified <= total` holds for every returned copy.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.core.exceptions import (
    DeadlinePassed,
    InvalidTransition,
    TooCloseToDeadline,
    ValidationError,
)
from app.schemas.verification import (
    ACTIVE_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    BatchStatus,
    Decision,
    PaymentBatch,
    SessionResolution,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)
from app.verification.batch import deadline_from

ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.NOT_STARTED: {SessionStatus.IN_PROGRESS, SessionStatus.EXPIRED, SessionStatus.CANCELLED},
    SessionStatus.IN_PROGRESS: {
        SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.CANCELLED,
    },
    SessionStatus.PAUSED: {
        SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.CANCELLED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.EXPIRED: set(),
    SessionStatus.CANCELLED: set(),
}

# in_progress is only reachable with no active session after a cancellation
SESSION_READY_BATCH_STATUSES = frozenset({BatchStatus.PENDING_VERIFICATION, BatchStatus.IN_PROGRESS})


@dataclass(frozen=True)
class AutoApprovalPolicy:
    enabled: bool = True
    threshold_percentage: float = 30.0
    risk_threshold: float = 70.0
    grace_period_hours: float = 2.0


def _move(session: VerificationSession, new_status: SessionStatus, **update) -> VerificationSession:
    if new_status not in ALLOWED_TRANSITIONS[session.status]:
        raise InvalidTransition(
            f"Invalid status transition from {session.status.value} to {new_status.value}",
            session_id=session.id,
        )
    return session.model_copy(update={"status": new_status, **update})


def _require(session: VerificationSession, status: SessionStatus, operation: str) -> None:
    if session.status != status:
        raise InvalidTransition(
            f"Operation '{operation}' not allowed in status '{session.status.value}'",
            session_id=session.id,
        )


# ── Creation ──

def create_session(
    batch: PaymentBatch,
    now: datetime,
    existing_sessions: Iterable[VerificationSession] = (),
    auto_approval_threshold: float = 30.0,
    window_days: int = 7,
) -> VerificationSession:
    if batch.status not in SESSION_READY_BATCH_STATUSES:
        raise InvalidTransition(
            f"Batch is not ready for verification (status: {batch.status.value})",
            batch_id=batch.id,
        )
    if batch.total_transactions <= 0:
        raise ValidationError("Total transactions must be greater than 0", batch_id=batch.id)

    for existing in existing_sessions:
        if existing.payment_batch_id == batch.id and existing.status in ACTIVE_SESSION_STATUSES:
            raise InvalidTransition(
                f"Active verification session already exists for batch {batch.id}",
                session_id=existing.id,
            )

    return VerificationSession(
        payment_batch_id=batch.id,
        business_id=batch.business_id,
        total_transactions=batch.total_transactions,
        deadline=deadline_from(now, window_days),
        auto_approval_threshold=auto_approval_threshold,
        created_at=now,
    )


# ── Reviewer-driven transitions ──

def start(session: VerificationSession, now: datetime) -> VerificationSession:
    _require(session, SessionStatus.NOT_STARTED, "start")
    return _move(session, SessionStatus.IN_PROGRESS, started_at=now)


def pause(
    session: VerificationSession,
    reason: str,
    now: datetime,
    cutoff_hours: float = 6.0,
) -> VerificationSession:
    _require(session, SessionStatus.IN_PROGRESS, "pause")
    if session.deadline - now < timedelta(hours=cutoff_hours):
        raise TooCloseToDeadline(
            f"Cannot pause session within {cutoff_hours:g} hours of deadline",
            session_id=session.id,
        )
    return _move(
        session,
        SessionStatus.PAUSED,
        paused_at=now,
        pause_reason=reason,
        pause_count=session.pause_count + 1,
    )


def resume(session: VerificationSession, now: datetime) -> VerificationSession:
    _require(session, SessionStatus.PAUSED, "resume")
    if now > session.deadline:
        raise DeadlinePassed("Cannot resume session after deadline has passed", session_id=session.id)
    return _move(session, SessionStatus.IN_PROGRESS, paused_at=None, pause_reason=None)


def complete(session: VerificationSession, now: datetime, notes: Optional[str] = None) -> VerificationSession:
    _require(session, SessionStatus.IN_PROGRESS, "complete")
    return _move(
        session,
        SessionStatus.COMPLETED,
        resolution=SessionResolution.MANUAL,
        completed_at=now,
        notes=notes if notes is not None else session.notes,
    )


def cancel(session: VerificationSession, now: datetime, reason: Optional[str] = None) -> VerificationSession:
    if session.status in TERMINAL_SESSION_STATUSES:
        raise InvalidTransition(
            f"Cannot cancel session in terminal status '{session.status.value}'",
            session_id=session.id,
        )
    return _move(
        session,
        SessionStatus.CANCELLED,
        resolution=SessionResolution.CANCELLED,
        completed_at=now,
        notes=reason if reason is not None else session.notes,
    )


# ── Progress ──

def _average_risk(results: Iterable[VerificationResult]) -> Optional[float]:
    scores = [r.risk_score for r in results if r.risk_score is not None]
    if not scores:
        return None
    return round(sum(scores) / len(scores), 2)


def record_result(
    session: VerificationSession,
    result: VerificationResult,
    effective_results: list[VerificationResult],
    now: datetime,
) -> VerificationSession:
    """
    Session after appending a first decision for a transaction.

    `effective_results` is the full current result set *including* `result`;
    the average risk score is recomputed from it rather than rolled forward.
    """
    _require(session, SessionStatus.IN_PROGRESS, "verify")
    if result.decision == Decision.PENDING:
        raise ValidationError("Pending is not a final decision", transaction_id=result.transaction_id)
    if session.verified_transactions >= session.total_transactions:
        raise ValidationError("All transactions in this session are already verified", session_id=session.id)

    verified = session.verified_transactions + 1
    approved = session.approved_count + (1 if result.decision == Decision.APPROVED else 0)
    rejected = session.rejected_count + (1 if result.decision == Decision.REJECTED else 0)

    update = {
        "verified_transactions": verified,
        "approved_count": approved,
        "rejected_count": rejected,
        "current_transaction_index": verified,
        "average_risk_score": _average_risk(effective_results),
    }
    if verified == session.total_transactions:
        return _move(
            session,
            SessionStatus.COMPLETED,
            resolution=SessionResolution.ALL_VERIFIED,
            completed_at=now,
            **update,
        )
    return session.model_copy(update=update)


def record_correction(
    session: VerificationSession,
    previous: VerificationResult,
    correction: VerificationResult,
    effective_results: list[VerificationResult],
) -> VerificationSession:
    """Counters after `correction` supersedes `previous`; verified count unchanged."""
    if session.status not in (SessionStatus.IN_PROGRESS, SessionStatus.PAUSED):
        raise InvalidTransition(
            f"Operation 'correct' not allowed in status '{session.status.value}'",
            session_id=session.id,
        )
    approved = session.approved_count
    rejected = session.rejected_count
    if previous.decision == Decision.APPROVED:
        approved -= 1
    else:
        rejected -= 1
    if correction.decision == Decision.APPROVED:
        approved += 1
    else:
        rejected += 1

    return session.model_copy(update={
        "approved_count": approved,
        "rejected_count": rejected,
        "average_risk_score": _average_risk(effective_results),
    })


# ── Deadline resolution (scheduler only) ──

def grace_deadline(session: VerificationSession, grace_period_hours: float) -> datetime:
    return session.deadline + timedelta(hours=grace_period_hours)


def is_auto_approval_eligible(session: VerificationSession, policy: AutoApprovalPolicy) -> bool:
    if not policy.enabled:
        return False
    threshold = max(session.auto_approval_threshold, policy.threshold_percentage)
    meets_threshold = session.completion_percentage >= threshold
    low_risk = (session.average_risk_score or 0) <= policy.risk_threshold
    return meets_threshold and low_risk


def resolve_overdue(
    session: VerificationSession,
    now: datetime,
    policy: AutoApprovalPolicy,
) -> VerificationSession:
    """
    Terminal copy of an overdue active session: completed with an
    auto-approved resolution when eligible, expired otherwise.
    """
    if session.status not in ACTIVE_SESSION_STATUSES:
        raise InvalidTransition(
            f"Session already resolved (status: {session.status.value})",
            session_id=session.id,
        )
    if now <= grace_deadline(session, policy.grace_period_hours):
        raise ValidationError("Session is still within its deadline grace period", session_id=session.id)

    if is_auto_approval_eligible(session, policy):
        return _move(
            session,
            SessionStatus.COMPLETED,
            resolution=SessionResolution.AUTO_APPROVED,
            completed_at=now,
        )
    return _move(session, SessionStatus.EXPIRED, resolution=SessionResolution.EXPIRED, completed_at=now)


def extend_deadline(session: VerificationSession, additional_hours: float) -> VerificationSession:
    if session.status not in ACTIVE_SESSION_STATUSES:
        raise InvalidTransition(
            f"Cannot extend deadline for session in status: {session.status.value}",
            session_id=session.id,
        )
    if additional_hours <= 0:
        raise ValidationError("additional_hours must be positive")
    return session.model_copy(update={"deadline": session.deadline + timedelta(hours=additional_hours)})


# ── Metrics ──

def format_time_remaining(deadline: datetime, now: datetime) -> str:
    seconds = int((deadline - now).total_seconds())
    if seconds < 0:
        return f"{-seconds // 3600}h overdue"

    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def session_metrics(session: VerificationSession, now: datetime) -> dict:
    start_time = session.started_at or session.created_at
    end_time = session.completed_at or now
    verified = session.verified_transactions

    return {
        "session_duration_minutes": round((end_time - start_time).total_seconds() / 60),
        "approval_rate_percentage": round(session.approved_count / verified * 100) if verified else 0,
        "rejection_rate_percentage": round(session.rejected_count / verified * 100) if verified else 0,
        "pause_count": session.pause_count,
        "pending_transactions": session.total_transactions - verified,
    }
