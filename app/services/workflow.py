"""
Verification Workflow Orchestrator

Validates and executes every reviewer-driven lifecycle operation:
  1. Authorize the actor for the business
  2. Apply the pure state-machine rule (app.verification.*)
  3. Write session + results + batch cascade as one conditional unit of work,
     re-reading and retrying on optimistic-lock conflicts
  4. Emit audit events, metrics and a progress snapshot

Risk assessment is advisory and time-bounded; it never blocks a decision.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from app.core.config import Settings
from app.core.exceptions import (
    AccessDenied,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    TransactionAlreadyVerified,
    ValidationError,
    VerificationError,
)
from app.core.metrics import CONCURRENT_CONFLICTS, VERIFICATIONS_RECORDED
from app.schemas.audit_events import (
    AssessmentDetails,
    BatchCreated,
    BatchCreatedDetails,
    BatchStatusChanged,
    FraudAssessmentCompleted,
    FraudPatternDetected,
    PatternDetails,
    SessionCompleted,
    SessionProgressDetails,
    SessionStatusChanged,
    StatusChangeDetails,
    TransactionDecisionDetails,
    TransactionVerified,
    VerificationDecisionChanged,
)
from app.schemas.fraud import (
    BusinessContext,
    CustomerHistory,
    FraudAssessment,
    PatternDetection,
    TransactionContext,
)
from app.schemas.verification import (
    BatchStatus,
    BatchTotals,
    BatchTransaction,
    BatchVerifyOutcome,
    Decision,
    ItemError,
    PaymentBatch,
    ProgressSnapshot,
    RejectionReason,
    SessionReport,
    SessionStatus,
    VerificationItem,
    VerificationResult,
    VerificationSession,
)
from app.scoring.patterns import detect_patterns
from app.services.audit_publisher import AuditSink, publish_audit
from app.services.risk_provider import BoundedAssessor
from app.storage.base import SessionChange, VerificationStore
from app.verification import batch as batch_rules
from app.verification import result as result_rules
from app.verification import session as session_rules
from app.verification.result import AutoDecision, DecisionThresholds

logger = structlog.get_logger()

Authorizer = Callable[[str, str], bool]
ProgressListener = Callable[[ProgressSnapshot], None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def allow_all(actor_id: str, business_id: str) -> bool:
    return True


@dataclass(frozen=True)
class WorkflowConfig:
    max_retries: int = 3
    window_days: int = 7
    pause_cutoff_hours: float = 6.0
    auto_approval_threshold: float = 30.0
    high_value_amount_sek: float = 500.0
    commission_rate: float = 0.03
    min_year: int = 2024
    max_year: int = 2030
    thresholds: DecisionThresholds = field(default_factory=DecisionThresholds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkflowConfig":
        return cls(
            max_retries=settings.max_retries,
            window_days=settings.verification_window_days,
            pause_cutoff_hours=settings.pause_cutoff_hours,
            auto_approval_threshold=settings.auto_approval_threshold_percentage,
            high_value_amount_sek=settings.high_value_amount_sek,
            commission_rate=settings.commission_rate,
            min_year=settings.batch_min_year,
            max_year=settings.batch_max_year,
            thresholds=DecisionThresholds(
                auto_approve_min_quality=settings.auto_approve_min_quality,
                auto_reject_max_quality=settings.auto_reject_max_quality,
                reject_risk_threshold=settings.reject_risk_threshold,
            ),
        )


@dataclass
class VerificationOutcome:
    result: VerificationResult
    progress: ProgressSnapshot
    assessment: Optional[FraudAssessment] = None


@dataclass
class _Committed:
    before: VerificationSession
    session: VerificationSession
    batch_before: PaymentBatch
    batch: Optional[PaymentBatch]


def _cascade(batch: PaymentBatch, before: VerificationSession, after: VerificationSession) -> Optional[PaymentBatch]:
    """Batch copy the session change drags along, or None."""
    if (
        before.status == SessionStatus.NOT_STARTED
        and after.status == SessionStatus.IN_PROGRESS
        and batch.status == BatchStatus.PENDING_VERIFICATION
    ):
        return batch_rules.transition(batch, BatchStatus.IN_PROGRESS)
    if before.is_active and not after.is_active:
        return batch_rules.mirror_session(batch, after)
    return None


def transaction_context(tx: BatchTransaction, batch: PaymentBatch, batch_transactions: list[BatchTransaction]) -> TransactionContext:
    """
    Risk-engine context for one row. Customer history is the same phone
    suffix earlier in the batch; the business baseline is the batch average.
    """
    earlier = [
        t for t in batch_transactions
        if t.phone_last4 == tx.phone_last4 and t.transaction_date < tx.transaction_date
    ]
    history = CustomerHistory(
        total_transactions=len(earlier),
        average_amount=float(sum(t.amount_sek for t in earlier) / len(earlier)) if earlier else 0.0,
    )
    business = None
    if batch.total_transactions > 0 and batch.total_amount > 0:
        business = BusinessContext(average_transaction_amount=float(batch.total_amount / batch.total_transactions))

    return TransactionContext(
        transaction_id=tx.transaction_id,
        amount_sek=float(tx.amount_sek),
        transaction_date=tx.transaction_date,
        store_code=tx.store_code,
        quality_score=tx.quality_score,
        reward_percentage=float(tx.reward_percentage),
        reward_amount_sek=float(tx.reward_amount_sek),
        phone_last4=tx.phone_last4,
        customer_history=history,
        business_context=business,
    )


class VerificationWorkflow:
    def __init__(
        self,
        store: VerificationStore,
        assessor: BoundedAssessor,
        authorize: Authorizer = allow_all,
        audit: Optional[AuditSink] = None,
        listener: Optional[ProgressListener] = None,
        config: WorkflowConfig = WorkflowConfig(),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.assessor = assessor
        self.authorize = authorize
        self.audit = audit
        self.listener = listener
        self.config = config
        self.clock = clock

    # ═══════════════════════════════════════════════════════════════
    # Batches
    # ═══════════════════════════════════════════════════════════════

    def create_batch(
        self,
        actor_id: str,
        business_id: str,
        week_number: int,
        year: int,
        totals: BatchTotals,
    ) -> PaymentBatch:
        self._authorize(actor_id, business_id)
        now = self.clock()
        batch = batch_rules.create_batch(
            business_id,
            week_number,
            year,
            totals,
            now,
            existing=self.store.list_batches(business_id=business_id),
            created_by=actor_id,
            min_year=self.config.min_year,
            max_year=self.config.max_year,
            window_days=self.config.window_days,
        )
        batch = self.store.add_batch(batch)

        logger.info("batch_created", batch_id=batch.id, business_id=business_id, week=week_number, year=year)
        publish_audit(self.audit, BatchCreated(
            actor_id=actor_id,
            business_id=business_id,
            batch_id=batch.id,
            description=f"Payment batch {batch_rules.format_batch_id(batch)} created",
            occurred_at=now,
            details=BatchCreatedDetails(
                week_number=week_number,
                year=year,
                total_transactions=batch.total_transactions,
                total_amount=str(batch.total_amount),
                deadline=batch.deadline,
            ),
        ))
        return batch

    def attach_transactions(self, actor_id: str, batch_id: str, transactions: list[BatchTransaction]) -> PaymentBatch:
        """Attach the parsed rows of a draft batch after reconciling them with its totals."""
        batch = self.store.get_batch(batch_id)
        self._authorize(actor_id, batch.business_id)
        if batch.status != BatchStatus.DRAFT:
            raise InvalidTransition(
                f"Transactions can only be attached to draft batches (status: {batch.status.value})",
                batch_id=batch_id,
            )

        batch_rules.reconcile_transactions(batch, transactions)
        problems = [msg for tx in transactions for msg in result_rules.validate_transaction_data(tx)]
        if problems:
            raise ValidationError("; ".join(problems[:10]), batch_id=batch_id, problems=len(problems))

        self.store.add_transactions(batch_id, transactions)
        logger.info("batch_transactions_attached", batch_id=batch_id, count=len(transactions))
        return batch

    def release_batch(self, actor_id: str, batch_id: str) -> PaymentBatch:
        batch = self.store.get_batch(batch_id)
        self._authorize(actor_id, batch.business_id)
        released = batch_rules.release(batch, len(self.store.list_transactions(batch_id)))
        released = self.store.update_batch(released)

        logger.info("batch_released", batch_id=batch_id)
        self._batch_changed(actor_id, batch, released, reason="released for verification")
        return released

    # ═══════════════════════════════════════════════════════════════
    # Session lifecycle
    # ═══════════════════════════════════════════════════════════════

    def create_session(self, actor_id: str, batch_id: str) -> VerificationSession:
        batch = self.store.get_batch(batch_id)
        self._authorize(actor_id, batch.business_id)
        session = session_rules.create_session(
            batch,
            self.clock(),
            existing_sessions=self.store.list_sessions(batch_id=batch_id),
            auto_approval_threshold=self.config.auto_approval_threshold,
            window_days=self.config.window_days,
        )
        session = self.store.add_session(session)
        logger.info("session_created", session_id=session.id, batch_id=batch_id, total=session.total_transactions)
        return session

    def start_session(self, actor_id: str, session_id: str) -> ProgressSnapshot:
        self._authorize_session(actor_id, session_id)
        done = self._commit(
            session_id,
            lambda s, b, now: session_rules.start(s, now),
            expected={SessionStatus.NOT_STARTED},
        )
        logger.info("session_started", session_id=session_id)
        self._session_changed(actor_id, done)
        return self._notify(done.session)

    def pause(self, actor_id: str, session_id: str, reason: str) -> ProgressSnapshot:
        self._authorize_session(actor_id, session_id)
        done = self._commit(
            session_id,
            lambda s, b, now: session_rules.pause(s, reason, now, self.config.pause_cutoff_hours),
            expected={SessionStatus.IN_PROGRESS},
        )
        logger.info("session_paused", session_id=session_id, pause_count=done.session.pause_count)
        self._session_changed(actor_id, done, reason=reason)
        return self._notify(done.session)

    def resume(self, actor_id: str, session_id: str) -> ProgressSnapshot:
        self._authorize_session(actor_id, session_id)
        done = self._commit(
            session_id,
            lambda s, b, now: session_rules.resume(s, now),
            expected={SessionStatus.PAUSED},
        )
        logger.info("session_resumed", session_id=session_id)
        self._session_changed(actor_id, done)
        return self._notify(done.session)

    def complete(self, actor_id: str, session_id: str, notes: Optional[str] = None) -> ProgressSnapshot:
        self._authorize_session(actor_id, session_id)
        done = self._commit(
            session_id,
            lambda s, b, now: session_rules.complete(s, now, notes),
            expected={SessionStatus.IN_PROGRESS},
        )
        logger.info(
            "session_completed_manually",
            session_id=session_id,
            verified=done.session.verified_transactions,
            total=done.session.total_transactions,
        )
        self._session_completed(actor_id, done, notes)
        return self._notify(done.session)

    def cancel(self, actor_id: str, session_id: str, reason: Optional[str] = None) -> ProgressSnapshot:
        self._authorize_session(actor_id, session_id)
        done = self._commit(
            session_id,
            lambda s, b, now: session_rules.cancel(s, now, reason),
            expected={SessionStatus.NOT_STARTED, SessionStatus.IN_PROGRESS, SessionStatus.PAUSED},
        )
        logger.info("session_cancelled", session_id=session_id, reason=reason)
        self._session_changed(actor_id, done, reason=reason)
        return self._notify(done.session)

    # ═══════════════════════════════════════════════════════════════
    # Verification
    # ═══════════════════════════════════════════════════════════════

    def verify(
        self,
        actor_id: str,
        session_id: str,
        transaction_id: str,
        decision: Decision,
        rejection_reason: Optional[RejectionReason] = None,
        verification_time_seconds: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> VerificationOutcome:
        session = self._authorize_session(actor_id, session_id)
        return self._verify_one(
            session,
            VerificationItem(
                transaction_id=transaction_id,
                decision=decision,
                rejection_reason=rejection_reason,
                notes=notes,
                verification_time_seconds=verification_time_seconds,
            ),
            reviewer_id=actor_id,
        )

    def batch_verify(self, actor_id: str, session_id: str, items: list[VerificationItem]) -> BatchVerifyOutcome:
        """Apply many decisions; each item succeeds or fails on its own."""
        session = self._authorize_session(actor_id, session_id)
        recorded, errors = [], []

        for item in items:
            try:
                outcome = self._verify_one(session, item, reviewer_id=actor_id)
                recorded.append(outcome.result)
            except VerificationError as e:
                errors.append(ItemError(transaction_id=item.transaction_id, error=type(e).__name__, message=e.message))

        logger.info("batch_verify_complete", session_id=session_id, recorded=len(recorded), errors=len(errors))
        return BatchVerifyOutcome(
            recorded=recorded,
            errors=errors,
            progress=ProgressSnapshot.of(self.store.get_session(session_id)),
        )

    def auto_verify_pending(self, actor_id: str, session_id: str) -> BatchVerifyOutcome:
        """
        Catch-up pass: decide every still-unverified transaction the automatic
        policy is sure about; the rest stay for manual review.
        """
        session = self._authorize_session(actor_id, session_id)
        if session.status != SessionStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Operation 'auto_verify' not allowed in status '{session.status.value}'",
                session_id=session_id,
            )

        batch = self.store.get_batch(session.payment_batch_id)
        transactions = self.store.list_transactions(batch.id)
        decided = {
            r.transaction_id for r in result_rules.effective_results(self.store.list_results(session_id))
        }

        recorded, errors, manual = [], [], []
        for tx in transactions:
            if tx.transaction_id in decided:
                continue
            assessment = self.assessor.assess(transaction_context(tx, batch, transactions))
            verdict = result_rules.auto_decision(tx.quality_score, assessment.risk_score, self.config.thresholds)
            if verdict == AutoDecision.MANUAL_REVIEW:
                manual.append(tx.transaction_id)
                continue

            decision = Decision.APPROVED if verdict == AutoDecision.APPROVE else Decision.REJECTED
            reason = None
            if decision == Decision.REJECTED:
                reason = result_rules.auto_rejection_reason(
                    tx.quality_score, assessment.risk_score, self.config.thresholds,
                )
            try:
                outcome = self._record(
                    session_id, tx, decision, reason,
                    reviewer_id=None, notes=f"Automatic decision ({verdict.value})",
                    verification_time_seconds=None, assessment=assessment,
                )
                recorded.append(outcome.result)
            except VerificationError as e:
                errors.append(ItemError(transaction_id=tx.transaction_id, error=type(e).__name__, message=e.message))
                if isinstance(e, InvalidTransition):
                    break

        logger.info(
            "auto_verify_complete",
            session_id=session_id,
            recorded=len(recorded),
            manual_review=len(manual),
            errors=len(errors),
        )
        return BatchVerifyOutcome(
            recorded=recorded,
            errors=errors,
            manual_review=manual,
            progress=ProgressSnapshot.of(self.store.get_session(session_id)),
        )

    def correct(
        self,
        actor_id: str,
        session_id: str,
        transaction_id: str,
        decision: Decision,
        rejection_reason: Optional[RejectionReason] = None,
        notes: Optional[str] = None,
    ) -> VerificationOutcome:
        """Replace the effective decision for a transaction by appending a superseding result."""
        session = self._authorize_session(actor_id, session_id)
        result_rules.validate_decision_consistency(decision, True, rejection_reason)
        tx = self._transaction(session, transaction_id)
        holder: dict = {}

        def build(s: VerificationSession, b: PaymentBatch, now: datetime) -> SessionChange:
            results = self.store.list_results(s.id)
            previous = result_rules.effective_result_for(results, transaction_id)
            if previous is None:
                raise ValidationError(
                    f"Transaction {transaction_id} has no decision to correct",
                    transaction_id=transaction_id,
                )
            if previous.decision == decision and previous.rejection_reason == rejection_reason:
                raise ValidationError("Correction does not change the decision", transaction_id=transaction_id)

            correction = result_rules.build_result(
                s.id, tx, decision, now,
                rejection_reason=rejection_reason,
                reviewer_id=actor_id,
                notes=notes,
                risk_score=previous.risk_score,
                supersedes=previous.id,
            )
            effective = result_rules.effective_results(results + [correction])
            holder.update(previous=previous, correction=correction)
            return SessionChange(
                session=session_rules.record_correction(s, previous, correction, effective),
                expected_statuses=frozenset({SessionStatus.IN_PROGRESS, SessionStatus.PAUSED}),
                new_results=[correction],
            )

        done = self._commit_change(session_id, build)
        previous, correction = holder["previous"], holder["correction"]

        logger.info(
            "verification_corrected",
            session_id=session_id,
            transaction_id=transaction_id,
            previous=previous.decision.value,
            new=decision.value,
        )
        publish_audit(self.audit, VerificationDecisionChanged(
            actor_id=actor_id,
            **self._event_scope(done.session),
            description=(
                f"Decision for {transaction_id} changed from {previous.decision.value} to {decision.value}"
            ),
            occurred_at=correction.created_at,
            details=self._decision_details(correction),
        ))
        return VerificationOutcome(result=correction, progress=self._notify(done.session))

    # ═══════════════════════════════════════════════════════════════
    # Read-only views
    # ═══════════════════════════════════════════════════════════════

    def progress(self, actor_id: str, session_id: str) -> ProgressSnapshot:
        return ProgressSnapshot.of(self._authorize_session(actor_id, session_id))

    def report(self, actor_id: str, session_id: str) -> SessionReport:
        session = self._authorize_session(actor_id, session_id)
        results = self.store.list_results(session_id)
        return SessionReport(
            progress=ProgressSnapshot.of(session),
            analytics=result_rules.session_analytics(results, self.config.commission_rate),
            payment_summary=result_rules.payment_summary(results, self.config.commission_rate),
            metrics=session_rules.session_metrics(session, self.clock()),
            timeline=result_rules.decision_timeline(results),
        )

    def detect_patterns(self, actor_id: str, session_id: str) -> list[PatternDetection]:
        session = self._authorize_session(actor_id, session_id)
        patterns = detect_patterns(self.store.list_transactions(session.payment_batch_id))
        if patterns:
            affected = sorted({tx for p in patterns for tx in p.affected_transactions})
            publish_audit(self.audit, FraudPatternDetected(
                actor_id=actor_id,
                **self._event_scope(session),
                description=f"{len(patterns)} fraud pattern(s) detected in batch",
                occurred_at=self.clock(),
                details=PatternDetails(
                    pattern_types=[p.pattern_type for p in patterns],
                    affected_transactions=affected,
                ),
            ))
        return patterns

    # ═══════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════

    def _authorize(self, actor_id: str, business_id: str) -> None:
        if not self.authorize(actor_id, business_id):
            logger.warning("access_denied", actor_id=actor_id, business_id=business_id)
            raise AccessDenied(actor_id=actor_id, business_id=business_id)

    def _authorize_session(self, actor_id: str, session_id: str) -> VerificationSession:
        session = self.store.get_session(session_id)
        self._authorize(actor_id, session.business_id)
        return session

    def _transaction(self, session: VerificationSession, transaction_id: str) -> BatchTransaction:
        try:
            return self.store.get_transaction(session.payment_batch_id, transaction_id)
        except NotFound as e:
            raise ValidationError(
                f"Transaction {transaction_id} does not belong to this session's batch",
                transaction_id=transaction_id,
            ) from e

    def _verify_one(self, session: VerificationSession, item: VerificationItem, reviewer_id: str) -> VerificationOutcome:
        if item.decision == Decision.PENDING:
            raise ValidationError("Pending is not a final decision", transaction_id=item.transaction_id)
        result_rules.validate_decision_consistency(item.decision, True, item.rejection_reason)
        tx = self._transaction(session, item.transaction_id)

        # Cheap rejection before the advisory lookup
        current = self.store.get_session(session.id)
        if current.status != SessionStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Operation 'verify' not allowed in status '{current.status.value}'",
                session_id=session.id,
            )
        if result_rules.effective_result_for(self.store.list_results(session.id), tx.transaction_id):
            raise TransactionAlreadyVerified(transaction_id=tx.transaction_id)

        assessment = None
        if float(tx.amount_sek) >= self.config.high_value_amount_sek or item.decision == Decision.REJECTED:
            batch = self.store.get_batch(session.payment_batch_id)
            context = transaction_context(tx, batch, self.store.list_transactions(batch.id))
            assessment = self.assessor.assess(context)

        return self._record(
            session.id, tx, item.decision, item.rejection_reason,
            reviewer_id=reviewer_id,
            notes=item.notes,
            verification_time_seconds=item.verification_time_seconds,
            assessment=assessment,
        )

    def _record(
        self,
        session_id: str,
        tx: BatchTransaction,
        decision: Decision,
        rejection_reason: Optional[RejectionReason],
        reviewer_id: Optional[str],
        notes: Optional[str],
        verification_time_seconds: Optional[int],
        assessment: Optional[FraudAssessment],
    ) -> VerificationOutcome:
        holder: dict = {}

        def build(s: VerificationSession, b: PaymentBatch, now: datetime) -> SessionChange:
            result = result_rules.build_result(
                s.id, tx, decision, now,
                rejection_reason=rejection_reason,
                reviewer_id=reviewer_id,
                notes=notes,
                verification_time_seconds=verification_time_seconds,
                risk_score=assessment.risk_score if assessment else None,
            )
            results = self.store.list_results(s.id)
            if result_rules.effective_result_for(results, tx.transaction_id):
                raise TransactionAlreadyVerified(transaction_id=tx.transaction_id)
            effective = result_rules.effective_results(results + [result])
            updated = session_rules.record_result(s, result, effective, now)
            holder["result"] = result
            return SessionChange(
                session=updated,
                expected_statuses=frozenset({SessionStatus.IN_PROGRESS}),
                new_results=[result],
                batch=_cascade(b, s, updated),
            )

        done = self._commit_change(session_id, build)
        result = holder["result"]
        origin = "automatic" if result.automated else "manual"
        VERIFICATIONS_RECORDED.labels(decision=decision.value, origin=origin).inc()

        logger.info(
            "transaction_verified",
            session_id=session_id,
            transaction_id=tx.transaction_id,
            decision=decision.value,
            origin=origin,
            risk_score=result.risk_score,
            completion=done.session.completion_percentage,
        )

        actor = reviewer_id or "system"
        publish_audit(self.audit, TransactionVerified(
            actor_id=actor,
            **self._event_scope(done.session),
            description=f"Transaction {tx.transaction_id} {decision.value}",
            occurred_at=result.created_at,
            details=self._decision_details(result),
        ))
        if assessment is not None:
            publish_audit(self.audit, FraudAssessmentCompleted(
                actor_id=actor,
                **self._event_scope(done.session),
                description=f"Risk assessed for {tx.transaction_id}: {assessment.risk_level.value}",
                occurred_at=result.created_at,
                details=AssessmentDetails(
                    transaction_id=tx.transaction_id,
                    risk_score=assessment.risk_score,
                    risk_level=assessment.risk_level.value,
                    recommendation=assessment.recommendation.value,
                    source=assessment.source.value,
                ),
            ))
        if not done.session.is_active:
            logger.info("session_completed", session_id=session_id, resolution=done.session.resolution.value)
            self._session_completed(actor, done, None)

        return VerificationOutcome(result=result, progress=self._notify(done.session), assessment=assessment)

    def _commit(self, session_id: str, rule, expected: set[SessionStatus]) -> _Committed:
        """Retry loop for transitions that append no results."""
        def build(s: VerificationSession, b: PaymentBatch, now: datetime) -> SessionChange:
            updated = rule(s, b, now)
            return SessionChange(
                session=updated,
                expected_statuses=frozenset(expected),
                batch=_cascade(b, s, updated),
            )
        return self._commit_change(session_id, build)

    def _commit_change(self, session_id: str, build) -> _Committed:
        """
        Read → build → conditional write. Domain errors from `build` propagate
        at once; a lost race re-reads and rebuilds, up to max_retries times.
        """
        for attempt in range(1, self.config.max_retries + 1):
            before = self.store.get_session(session_id)
            batch = self.store.get_batch(before.payment_batch_id)
            change = build(before, batch, self.clock())
            try:
                written = self.store.commit_session_change(change)
            except ConcurrentModification:
                CONCURRENT_CONFLICTS.labels(component="workflow").inc()
                logger.info("session_write_conflict", session_id=session_id, attempt=attempt)
                continue
            return _Committed(before=before, session=written, batch_before=batch, batch=change.batch)

        raise ConcurrentModification(
            f"Session {session_id} kept changing; gave up after {self.config.max_retries} attempts",
            session_id=session_id,
        )

    def _notify(self, session: VerificationSession) -> ProgressSnapshot:
        snapshot = ProgressSnapshot.of(session)
        if self.listener is not None:
            try:
                self.listener(snapshot)
            except Exception as e:
                logger.warning("progress_listener_failed", session_id=session.id, error=str(e))
        return snapshot

    @staticmethod
    def _event_scope(session: VerificationSession) -> dict:
        return {
            "business_id": session.business_id,
            "session_id": session.id,
            "batch_id": session.payment_batch_id,
        }

    @staticmethod
    def _decision_details(result: VerificationResult) -> TransactionDecisionDetails:
        return TransactionDecisionDetails(
            transaction_id=result.transaction_id,
            result_id=result.id,
            decision=result.decision.value,
            rejection_reason=result.rejection_reason.value if result.rejection_reason else None,
            risk_score=result.risk_score,
            verification_time_seconds=result.verification_time_seconds,
            automated=result.automated,
            supersedes=result.supersedes,
        )

    def _session_changed(self, actor_id: str, done: _Committed, reason: Optional[str] = None) -> None:
        publish_audit(self.audit, SessionStatusChanged(
            actor_id=actor_id,
            **self._event_scope(done.session),
            description=f"Session {done.before.status.value} → {done.session.status.value}",
            occurred_at=self.clock(),
            details=StatusChangeDetails(
                previous_status=done.before.status.value,
                new_status=done.session.status.value,
                reason=reason,
            ),
        ))
        if done.batch is not None:
            self._batch_changed(actor_id, done.batch_before, done.batch)

    def _session_completed(self, actor_id: str, done: _Committed, notes: Optional[str]) -> None:
        s = done.session
        publish_audit(self.audit, SessionCompleted(
            actor_id=actor_id,
            **self._event_scope(s),
            description=f"Session completed ({s.resolution.value}): {s.verified_transactions}/{s.total_transactions}",
            occurred_at=s.completed_at or self.clock(),
            details=SessionProgressDetails(
                verified_transactions=s.verified_transactions,
                total_transactions=s.total_transactions,
                completion_percentage=s.completion_percentage,
                notes=notes,
            ),
        ))
        if done.batch is not None:
            self._batch_changed(actor_id, done.batch_before, done.batch)

    def _batch_changed(
        self,
        actor_id: str,
        before: PaymentBatch,
        after: PaymentBatch,
        reason: Optional[str] = None,
    ) -> None:
        publish_audit(self.audit, BatchStatusChanged(
            actor_id=actor_id,
            business_id=after.business_id,
            batch_id=after.id,
            description=f"Batch {before.status.value} → {after.status.value}",
            occurred_at=self.clock(),
            details=StatusChangeDetails(
                previous_status=before.status.value,
                new_status=after.status.value,
                reason=reason,
            ),
        ))
