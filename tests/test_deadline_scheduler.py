"""
Tests for deadline reconciliation, countdowns and deadline extension.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Event

import pytest

from app.core.config import Settings
from app.core.exceptions import ConcurrentModification, InvalidTransition
from app.schemas.verification import (
    BatchStatus,
    PaymentBatch,
    SessionResolution,
    SessionStatus,
    VerificationSession,
)
from app.services import deadline_scheduler as scheduler
from app.services.audit_publisher import StoreAuditSink
from app.storage.memory import MemoryStore
from app.verification.session import AutoApprovalPolicy

NOW = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)


class _RacingStore(MemoryStore):
    """Another writer touches the session between the pass's read and write."""

    def commit_session_change(self, change):
        raise ConcurrentModification(session_id=change.session.id)


def _seed(store, hours_past_deadline: float = 3, status=SessionStatus.IN_PROGRESS, **session_overrides):
    batch_status = BatchStatus.PENDING_VERIFICATION if status == SessionStatus.NOT_STARTED else BatchStatus.IN_PROGRESS
    deadline = NOW - timedelta(hours=hours_past_deadline)
    batch = store.add_batch(PaymentBatch(
        business_id=session_overrides.pop("business_id", "biz-1"),
        week_number=session_overrides.pop("week_number", 10),
        year=2026,
        total_transactions=10,
        total_amount=Decimal("2000.00"),
        status=batch_status,
        deadline=deadline,
        created_at=deadline - timedelta(days=7),
    ))
    kwargs = {
        "payment_batch_id": batch.id,
        "business_id": batch.business_id,
        "status": status,
        "total_transactions": 10,
        "deadline": deadline,
        "created_at": deadline - timedelta(days=7),
    }
    kwargs.update(session_overrides)
    session = store.add_session(VerificationSession(**kwargs))
    return batch, session


class TestReconcile:

    def test_eligible_session_auto_approved(self):
        store = MemoryStore()
        batch, session = _seed(store, verified_transactions=4, approved_count=4, average_risk_score=20)

        outcome = scheduler.reconcile(store, NOW, AutoApprovalPolicy(), StoreAuditSink(store))

        resolved = store.get_session(session.id)
        assert outcome.processed_sessions == 1
        assert outcome.auto_approved_sessions == [session.id]
        assert resolved.status == SessionStatus.COMPLETED
        assert resolved.resolution == SessionResolution.AUTO_APPROVED
        assert store.get_batch(batch.id).status == BatchStatus.AUTO_APPROVED

    def test_high_risk_session_expires(self):
        store = MemoryStore()
        batch, session = _seed(store, verified_transactions=4, approved_count=4, average_risk_score=85)

        outcome = scheduler.reconcile(store, NOW)

        assert outcome.expired_sessions == [session.id]
        assert store.get_session(session.id).status == SessionStatus.EXPIRED
        assert store.get_batch(batch.id).status == BatchStatus.EXPIRED

    def test_unstarted_session_expires_with_pending_batch(self):
        store = MemoryStore()
        batch, session = _seed(store, status=SessionStatus.NOT_STARTED)

        scheduler.reconcile(store, NOW)
        assert store.get_session(session.id).status == SessionStatus.EXPIRED
        assert store.get_batch(batch.id).status == BatchStatus.EXPIRED

    def test_paused_session_resolved(self):
        store = MemoryStore()
        _, session = _seed(store, status=SessionStatus.PAUSED, verified_transactions=5, approved_count=5)

        outcome = scheduler.reconcile(store, NOW)
        assert outcome.auto_approved_sessions == [session.id]

    def test_grace_period_respected(self):
        store = MemoryStore()
        _, session = _seed(store, hours_past_deadline=1)

        outcome = scheduler.reconcile(store, NOW)
        assert outcome.processed_sessions == 0
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS

    def test_second_pass_is_a_no_op(self):
        store = MemoryStore()
        sink = StoreAuditSink(store)
        _, session = _seed(store, verified_transactions=4, approved_count=4)

        scheduler.reconcile(store, NOW, audit=sink)
        again = scheduler.reconcile(store, NOW + timedelta(minutes=2), audit=sink)

        assert again.processed_sessions == 0
        events = store.list_audit_events(session_id=session.id)
        assert [e.event_type for e in events] == ["session_auto_approved"]
        assert events[0].actor_id == "system"
        assert events[0].details.completion_percentage == 40
        assert events[0].details.hours_overdue == 3

    def test_conflict_skipped_without_event(self):
        store = _RacingStore()
        _, session = _seed(store, verified_transactions=4, approved_count=4)

        outcome = scheduler.reconcile(store, NOW, audit=StoreAuditSink(store))

        assert outcome.skipped_sessions == [session.id]
        assert outcome.auto_approved_sessions == []
        assert store.list_audit_events() == []
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS

    def test_bad_batch_state_collected_not_raised(self):
        store = MemoryStore()
        batch, session = _seed(store, verified_transactions=4, approved_count=4)
        store.update_batch(batch.model_copy(update={"status": BatchStatus.COMPLETED}))
        _, healthy = _seed(store, week_number=11, average_risk_score=90)

        outcome = scheduler.reconcile(store, NOW)

        assert [e.session_id for e in outcome.errors] == [session.id]
        assert outcome.expired_sessions == [healthy.id]
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS

    def test_disabled_auto_approval_expires_everything(self):
        store = MemoryStore()
        _, session = _seed(store, verified_transactions=9, approved_count=9)

        outcome = scheduler.reconcile(store, NOW, AutoApprovalPolicy(enabled=False))
        assert outcome.expired_sessions == [session.id]

    def test_policy_from_settings(self):
        policy = scheduler.policy_from_settings(Settings(grace_period_hours=4, auto_approval_threshold_percentage=50))
        assert policy.grace_period_hours == 4
        assert policy.threshold_percentage == 50
        assert policy.risk_threshold == 70


class TestOrphanedBatches:

    def test_batch_of_cancelled_session_expires(self):
        store = MemoryStore()
        sink = StoreAuditSink(store)
        batch, _ = _seed(store, status=SessionStatus.CANCELLED, verified_transactions=2, approved_count=2)

        outcome = scheduler.reconcile(store, NOW, audit=sink)

        assert outcome.processed_sessions == 0
        assert outcome.expired_batches == [batch.id]
        assert store.get_batch(batch.id).status == BatchStatus.EXPIRED
        event = store.list_audit_events(batch_id=batch.id)[0]
        assert event.event_type == "batch_status_changed"
        assert event.details.previous_status == "in_progress"
        assert event.details.reason == "no_active_session"

        again = scheduler.reconcile(store, NOW + timedelta(minutes=2), audit=sink)
        assert again.expired_batches == []
        assert len(store.list_audit_events(batch_id=batch.id)) == 1

    def test_batch_never_given_a_session_expires(self):
        store = MemoryStore()
        batch = store.add_batch(PaymentBatch(
            business_id="biz-1",
            week_number=10,
            year=2026,
            total_transactions=10,
            total_amount=Decimal("2000.00"),
            status=BatchStatus.PENDING_VERIFICATION,
            deadline=NOW - timedelta(hours=3),
            created_at=NOW - timedelta(days=7),
        ))

        assert scheduler.reconcile(store, NOW).expired_batches == [batch.id]

    def test_grace_period_respected(self):
        store = MemoryStore()
        batch, _ = _seed(store, hours_past_deadline=1, status=SessionStatus.CANCELLED)

        assert scheduler.reconcile(store, NOW).expired_batches == []
        assert store.get_batch(batch.id).status == BatchStatus.IN_PROGRESS

    def test_batch_with_active_session_left_to_session_pass(self):
        store = MemoryStore()
        batch, session = _seed(store, hours_past_deadline=-24)
        store.update_batch(store.get_batch(batch.id).model_copy(update={"deadline": NOW - timedelta(hours=5)}))

        assert scheduler.reconcile(store, NOW).expired_batches == []
        assert store.get_batch(batch.id).status == BatchStatus.IN_PROGRESS


class TestCountdown:

    def test_status_levels(self):
        assert scheduler.deadline_status(NOW + timedelta(hours=100), NOW).urgency_level == "low"
        assert scheduler.deadline_status(NOW + timedelta(hours=30), NOW).urgency_level == "medium"
        assert scheduler.deadline_status(NOW + timedelta(hours=10), NOW).urgency_level == "high"
        urgent = scheduler.deadline_status(NOW + timedelta(hours=2, minutes=15), NOW)
        assert urgent.urgency_level == "critical"
        assert urgent.is_urgent and urgent.is_critical
        assert urgent.hours_remaining == 2
        assert urgent.minutes_remaining == 15
        assert urgent.formatted_time_remaining == "2h 15m"

    def test_overdue(self):
        status = scheduler.deadline_status(NOW - timedelta(hours=4), NOW)
        assert status.is_overdue
        assert status.hours_remaining == 0
        assert status.minutes_remaining == 0
        assert status.formatted_time_remaining == "4h overdue"

    def test_polling_interval(self):
        assert scheduler.polling_interval_seconds(NOW + timedelta(minutes=30), NOW) == 10
        assert scheduler.polling_interval_seconds(NOW + timedelta(hours=3), NOW) == 30
        assert scheduler.polling_interval_seconds(NOW + timedelta(hours=12), NOW) == 60
        assert scheduler.polling_interval_seconds(NOW + timedelta(days=3), NOW) == 300

    def test_countdowns_sorted_and_flagged(self):
        store = MemoryStore()
        _, later = _seed(store, hours_past_deadline=-48, week_number=9, verified_transactions=5, approved_count=5)
        _, sooner = _seed(store, hours_past_deadline=-2, week_number=10, verified_transactions=1, approved_count=1)

        items = scheduler.countdowns(store, NOW)

        assert [c.session_id for c in items] == [sooner.id, later.id]
        assert items[0].requires_immediate_attention
        assert not items[1].requires_immediate_attention
        assert items[1].auto_approval_eligible
        assert items[0].should_poll

    def test_urgency_statistics(self):
        store = MemoryStore()
        _seed(store, hours_past_deadline=-2, week_number=8)
        _seed(store, hours_past_deadline=-100, week_number=9, verified_transactions=5, approved_count=5)
        _seed(store, hours_past_deadline=1, week_number=10)
        _seed(store, hours_past_deadline=-2, week_number=10, business_id="biz-2")

        stats = scheduler.urgency_statistics(store, NOW, business_id="biz-1")
        assert stats.total_active == 3
        assert stats.urgent == 1
        assert stats.critical == 1
        assert stats.overdue == 1
        assert stats.auto_approval_eligible == 1


class TestExtendDeadline:

    def test_extension_written_and_audited(self):
        store = MemoryStore()
        _, session = _seed(store, hours_past_deadline=-5)

        extended = scheduler.extend_deadline(
            store, session.id, 24, "supplier outage", actor_id="admin", now=NOW, audit=StoreAuditSink(store),
        )

        assert extended.deadline == session.deadline + timedelta(hours=24)
        assert store.get_session(session.id).deadline == extended.deadline
        event = store.list_audit_events(session_id=session.id)[0]
        assert event.event_type == "deadline_extended"
        assert event.details.reason == "supplier outage"

    def test_extension_keeps_session_out_of_reconcile(self):
        store = MemoryStore()
        _, session = _seed(store, hours_past_deadline=3)
        scheduler.extend_deadline(store, session.id, 12, "late upload", actor_id="admin", now=NOW)

        assert scheduler.reconcile(store, NOW).processed_sessions == 0

    def test_terminal_session_cannot_be_extended(self):
        store = MemoryStore()
        _, session = _seed(store, status=SessionStatus.CANCELLED)
        with pytest.raises(InvalidTransition):
            scheduler.extend_deadline(store, session.id, 12, "too late", actor_id="admin", now=NOW)

    def test_gives_up_on_constant_conflicts(self):
        store = _RacingStore()
        _, session = _seed(store, hours_past_deadline=-5)
        with pytest.raises(ConcurrentModification):
            scheduler.extend_deadline(store, session.id, 12, "x", actor_id="admin", now=NOW, max_retries=2)


class TestRunForever:

    def test_stops_when_signalled(self):
        store = MemoryStore()
        _, session = _seed(store, verified_transactions=4, approved_count=4)
        stop = Event()
        stop.set()

        scheduler.run_forever(store, Settings(scheduler_interval_seconds=1), stop=stop)
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS
