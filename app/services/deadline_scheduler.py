"""
deadline_scheduler.py
─────────────────────
Deadline-driven auto-resolution of verification sessions.

Every pass looks at the active sessions (not_started / in_progress / paused)
whose deadline + grace period has passed and resolves each one:

  completion% >= max(session threshold, configured threshold)
  AND average risk <= risk threshold        → session completed (auto_approved),
                                              batch auto_approved
  otherwise                                 → session expired, batch expired

Each resolution is one conditional write (status still active, version
unchanged). Losing that race means someone else resolved or touched the
session first: the pass skips it and the next pass re-evaluates. Running
passes concurrently or twice in a row is therefore harmless, and only the
winning writer emits the single audit event for a resolution.

Open batches left without an active session (never opened, or the session
was cancelled) are expired once their own deadline + grace has passed.

Usage:
  python -m app.services.deadline_scheduler            # loop every SCHEDULER_INTERVAL_SECONDS
  python -m app.services.deadline_scheduler --once     # one pass, then exit
  OR via: POST /v1/admin/process-deadlines
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from threading import Event
from typing import Optional

import structlog

from app.core.config import Settings
from app.core.exceptions import ConcurrentModification, VerificationError
from app.core.metrics import CONCURRENT_CONFLICTS, SCHEDULER_PASS_SECONDS, SESSION_RESOLUTIONS
from app.schemas.audit_events import (
    SYSTEM_ACTOR,
    AutoResolutionDetails,
    BatchStatusChanged,
    DeadlineExtended,
    DeadlineExtendedDetails,
    SessionAutoApproved,
    SessionExpired,
    StatusChangeDetails,
)
from app.schemas.deadline import (
    AutoProcessingResult,
    Countdown,
    DeadlineStatus,
    SessionError,
    UrgencyStatistics,
)
from app.schemas.verification import (
    ACTIVE_SESSION_STATUSES,
    BatchStatus,
    SessionResolution,
    VerificationSession,
)
from app.services.audit_publisher import AuditSink, publish_audit
from app.storage.base import SessionChange, VerificationStore
from app.verification import batch as batch_rules
from app.verification import session as session_rules
from app.verification.session import AutoApprovalPolicy

logger = structlog.get_logger(__name__)

# Sessions below this completion close to (or past) the deadline need a human
ATTENTION_COMPLETION_PERCENTAGE = 30

# Batches a session would have moved on; with no active session they are swept
ORPHAN_CANDIDATE_STATUSES = (BatchStatus.PENDING_VERIFICATION, BatchStatus.IN_PROGRESS)


def policy_from_settings(settings: Settings) -> AutoApprovalPolicy:
    return AutoApprovalPolicy(
        enabled=settings.auto_approval_enabled,
        threshold_percentage=settings.auto_approval_threshold_percentage,
        risk_threshold=settings.auto_approval_risk_threshold,
        grace_period_hours=settings.grace_period_hours,
    )


# ─── Reconciliation ───────────────────────────────────────────────

def reconcile(
    store: VerificationStore,
    now: datetime,
    policy: AutoApprovalPolicy = AutoApprovalPolicy(),
    audit: Optional[AuditSink] = None,
) -> AutoProcessingResult:
    """
    One reconciliation pass. Stateless: everything it needs is in the store
    and `now`. Per-session failures are collected, never raised.
    """
    started = time.perf_counter()
    result = AutoProcessingResult()

    for session in store.list_sessions(statuses=ACTIVE_SESSION_STATUSES):
        if now <= session_rules.grace_deadline(session, policy.grace_period_hours):
            continue
        result.processed_sessions += 1

        try:
            resolved = session_rules.resolve_overdue(session, now, policy)
            batch = store.get_batch(session.payment_batch_id)
            store.commit_session_change(SessionChange(
                session=resolved,
                expected_statuses=ACTIVE_SESSION_STATUSES,
                batch=batch_rules.mirror_session(batch, resolved),
            ))
        except ConcurrentModification:
            CONCURRENT_CONFLICTS.labels(component="scheduler").inc()
            logger.info("deadline_resolution_skipped", session_id=session.id, reason="concurrent_modification")
            result.skipped_sessions.append(session.id)
            continue
        except VerificationError as e:
            logger.warning("deadline_resolution_failed", session_id=session.id, error=e.message)
            result.errors.append(SessionError(session_id=session.id, error=e.message))
            continue
        except Exception as e:
            logger.error("deadline_resolution_failed", session_id=session.id, error=str(e))
            result.errors.append(SessionError(session_id=session.id, error=str(e)))
            continue

        _record_resolution(resolved, session, now, policy, audit, result)

    _expire_orphaned_batches(store, now, policy, audit, result)

    result.elapsed_seconds = round(time.perf_counter() - started, 4)
    SCHEDULER_PASS_SECONDS.observe(result.elapsed_seconds)
    logger.info(
        "deadline_pass_complete",
        processed=result.processed_sessions,
        auto_approved=len(result.auto_approved_sessions),
        expired=len(result.expired_sessions),
        expired_batches=len(result.expired_batches),
        skipped=len(result.skipped_sessions),
        errors=len(result.errors),
    )
    return result


def _record_resolution(
    resolved: VerificationSession,
    before: VerificationSession,
    now: datetime,
    policy: AutoApprovalPolicy,
    audit: Optional[AuditSink],
    result: AutoProcessingResult,
) -> None:
    details = AutoResolutionDetails(
        completion_percentage=before.completion_percentage,
        auto_approval_threshold=max(before.auto_approval_threshold, policy.threshold_percentage),
        average_risk_score=before.average_risk_score,
        hours_overdue=int((now - before.deadline).total_seconds() // 3600),
    )
    scope = {
        "actor_id": SYSTEM_ACTOR,
        "business_id": before.business_id,
        "session_id": before.id,
        "batch_id": before.payment_batch_id,
        "occurred_at": now,
        "details": details,
    }

    if resolved.resolution == SessionResolution.AUTO_APPROVED:
        result.auto_approved_sessions.append(before.id)
        SESSION_RESOLUTIONS.labels(outcome="auto_approved").inc()
        logger.info("session_auto_approved", session_id=before.id, completion=details.completion_percentage)
        publish_audit(audit, SessionAutoApproved(
            description=(
                f"Session auto-approved after deadline at {details.completion_percentage}% completion"
            ),
            **scope,
        ))
    else:
        result.expired_sessions.append(before.id)
        SESSION_RESOLUTIONS.labels(outcome="expired").inc()
        logger.info("session_expired", session_id=before.id, completion=details.completion_percentage)
        publish_audit(audit, SessionExpired(
            description=f"Session expired at {details.completion_percentage}% completion",
            **scope,
        ))


def _expire_orphaned_batches(
    store: VerificationStore,
    now: datetime,
    policy: AutoApprovalPolicy,
    audit: Optional[AuditSink],
    result: AutoProcessingResult,
) -> None:
    """
    Open batches nobody is reviewing: never given a session, or whose
    session was cancelled. Past deadline + grace they expire like an
    unfinished session would.
    """
    grace = timedelta(hours=policy.grace_period_hours)
    for batch in store.list_batches(statuses=ORPHAN_CANDIDATE_STATUSES):
        if now <= batch.deadline + grace:
            continue
        if any(s.is_active for s in store.list_sessions(batch_id=batch.id)):
            continue

        try:
            expired = store.update_batch(batch_rules.transition(batch, BatchStatus.EXPIRED))
        except ConcurrentModification:
            CONCURRENT_CONFLICTS.labels(component="scheduler").inc()
            logger.info("batch_expiry_skipped", batch_id=batch.id, reason="concurrent_modification")
            continue
        except VerificationError as e:
            logger.warning("batch_expiry_failed", batch_id=batch.id, error=e.message)
            result.errors.append(SessionError(batch_id=batch.id, error=e.message))
            continue

        result.expired_batches.append(batch.id)
        SESSION_RESOLUTIONS.labels(outcome="batch_expired").inc()
        logger.info("orphaned_batch_expired", batch_id=batch.id, previous_status=batch.status.value)
        publish_audit(audit, BatchStatusChanged(
            actor_id=SYSTEM_ACTOR,
            business_id=batch.business_id,
            batch_id=batch.id,
            description=f"Batch {batch.status.value} → {expired.status.value}: no active session at deadline",
            occurred_at=now,
            details=StatusChangeDetails(
                previous_status=batch.status.value,
                new_status=expired.status.value,
                reason="no_active_session",
            ),
        ))


# ─── Countdown / urgency ──────────────────────────────────────────

def deadline_status(deadline: datetime, now: datetime) -> DeadlineStatus:
    remaining = deadline - now
    seconds = remaining.total_seconds()
    hours = seconds / 3600
    overdue = seconds < 0

    if overdue or hours < 6:
        level = "critical"
    elif hours < 24:
        level = "high"
    elif hours < 72:
        level = "medium"
    else:
        level = "low"

    return DeadlineStatus(
        deadline=deadline,
        hours_remaining=max(0, int(seconds // 3600)),
        minutes_remaining=max(0, int((seconds % 3600) // 60)) if not overdue else 0,
        is_overdue=overdue,
        is_critical=hours < 24,
        is_urgent=hours < 6,
        urgency_level=level,
        formatted_time_remaining=session_rules.format_time_remaining(deadline, now),
    )


def polling_interval_seconds(deadline: datetime, now: datetime) -> int:
    hours = (deadline - now).total_seconds() / 3600
    if hours < 1:
        return 10
    if hours < 6:
        return 30
    if hours < 24:
        return 60
    return 300


def countdown(session: VerificationSession, now: datetime, policy: AutoApprovalPolicy = AutoApprovalPolicy()) -> Countdown:
    status = deadline_status(session.deadline, now)
    low_completion = session.completion_percentage < ATTENTION_COMPLETION_PERCENTAGE
    return Countdown(
        session_id=session.id,
        batch_id=session.payment_batch_id,
        business_id=session.business_id,
        deadline=session.deadline,
        status=status,
        completion_percentage=session.completion_percentage,
        auto_approval_eligible=session_rules.is_auto_approval_eligible(session, policy),
        requires_immediate_attention=(status.is_urgent or status.is_overdue) and low_completion,
        polling_interval_seconds=polling_interval_seconds(session.deadline, now),
        should_poll=not status.is_overdue,
    )


def countdowns(
    store: VerificationStore,
    now: datetime,
    policy: AutoApprovalPolicy = AutoApprovalPolicy(),
    business_id: Optional[str] = None,
) -> list[Countdown]:
    """Countdowns for every active session, most urgent deadline first."""
    sessions = [
        s for s in store.list_sessions(statuses=ACTIVE_SESSION_STATUSES)
        if business_id is None or s.business_id == business_id
    ]
    sessions.sort(key=lambda s: s.deadline)
    return [countdown(s, now, policy) for s in sessions]


def urgency_statistics(
    store: VerificationStore,
    now: datetime,
    policy: AutoApprovalPolicy = AutoApprovalPolicy(),
    business_id: Optional[str] = None,
) -> UrgencyStatistics:
    items = countdowns(store, now, policy, business_id)
    return UrgencyStatistics(
        total_active=len(items),
        critical=sum(1 for c in items if c.status.urgency_level == "critical" and not c.status.is_overdue),
        urgent=sum(1 for c in items if c.status.is_urgent and not c.status.is_overdue),
        overdue=sum(1 for c in items if c.status.is_overdue),
        auto_approval_eligible=sum(1 for c in items if c.auto_approval_eligible),
    )


# ─── Admin: deadline extension ────────────────────────────────────

def extend_deadline(
    store: VerificationStore,
    session_id: str,
    additional_hours: float,
    reason: str,
    actor_id: str,
    now: datetime,
    audit: Optional[AuditSink] = None,
    max_retries: int = 3,
) -> VerificationSession:
    for attempt in range(1, max_retries + 1):
        session = store.get_session(session_id)
        extended = session_rules.extend_deadline(session, additional_hours)
        try:
            written = store.commit_session_change(SessionChange(
                session=extended,
                expected_statuses=ACTIVE_SESSION_STATUSES,
            ))
        except ConcurrentModification:
            CONCURRENT_CONFLICTS.labels(component="admin").inc()
            logger.info("deadline_extension_conflict", session_id=session_id, attempt=attempt)
            continue

        logger.info(
            "deadline_extended",
            session_id=session_id,
            previous_deadline=session.deadline.isoformat(),
            new_deadline=written.deadline.isoformat(),
            actor_id=actor_id,
        )
        publish_audit(audit, DeadlineExtended(
            actor_id=actor_id,
            business_id=session.business_id,
            session_id=session.id,
            batch_id=session.payment_batch_id,
            description=f"Deadline extended by {additional_hours:g}h: {reason}",
            occurred_at=now,
            details=DeadlineExtendedDetails(
                previous_deadline=session.deadline,
                new_deadline=written.deadline,
                additional_hours=additional_hours,
                reason=reason,
            ),
        ))
        return written

    raise ConcurrentModification(
        f"Session {session_id} kept changing; gave up after {max_retries} attempts",
        session_id=session_id,
    )


# ─── Main entry point ─────────────────────────────────────────────

def run_forever(
    store: VerificationStore,
    settings: Settings,
    audit: Optional[AuditSink] = None,
    stop: Optional[Event] = None,
) -> None:
    """Reconcile every `scheduler_interval_seconds` until `stop` is set."""
    stop = stop or Event()
    policy = policy_from_settings(settings)
    interval = timedelta(seconds=settings.scheduler_interval_seconds)
    logger.info("deadline_scheduler_started", interval_seconds=settings.scheduler_interval_seconds)

    while not stop.is_set():
        try:
            reconcile(store, datetime.now(timezone.utc), policy, audit)
        except Exception as e:
            # A failed pass (store unreachable) is retried on the next tick
            logger.error("deadline_pass_failed", error=str(e))
        stop.wait(interval.total_seconds())

    logger.info("deadline_scheduler_stopped")


if __name__ == "__main__":
    import argparse
    import sys

    from app.core.config import get_settings
    from app.core.logging import configure_logging
    from app.services.audit_publisher import StoreAuditSink
    from app.storage.factory import get_store

    parser = argparse.ArgumentParser(description="Resolve verification sessions past their deadline")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    store = get_store()
    audit = StoreAuditSink(store)

    if not args.once:
        try:
            run_forever(store, settings, audit)
        except KeyboardInterrupt:
            pass
        sys.exit(0)

    try:
        outcome = reconcile(store, datetime.now(timezone.utc), policy_from_settings(settings), audit)
        print(f"✓ Deadline pass: {outcome.processed_sessions} overdue, "
              f"{len(outcome.auto_approved_sessions)} auto-approved, "
              f"{len(outcome.expired_sessions)} expired, {len(outcome.errors)} errors "
              f"({outcome.elapsed_seconds}s)")
    except Exception as e:
        print(f"✗ Deadline pass failed: {e}", file=sys.stderr)
        sys.exit(1)
