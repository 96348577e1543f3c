"""
Unit tests for payment batch lifecycle rules.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import (
    DuplicateBatch,
    FutureBatch,
    InvalidTransition,
    InvalidWeek,
    ValidationError,
)
from app.schemas.verification import (
    BatchStatus,
    BatchTotals,
    BatchTransaction,
    PaymentBatch,
    SessionResolution,
    SessionStatus,
    VerificationSession,
)
from app.verification.batch import (
    create_batch,
    deadline_from,
    format_batch_id,
    max_week_for_year,
    mirror_session,
    reconcile_transactions,
    release,
    transition,
    urgency_level,
    urgency_score,
)

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)  # ISO week 11


def _totals(count: int = 3, amount: str = "600.00") -> BatchTotals:
    return BatchTotals(total_transactions=count, total_amount=Decimal(amount))


def _make_batch(**overrides) -> PaymentBatch:
    kwargs = {
        "business_id": "biz-1",
        "week_number": 10,
        "year": 2026,
        "total_transactions": 3,
        "total_amount": Decimal("600.00"),
        "status": BatchStatus.DRAFT,
        "deadline": NOW + timedelta(days=7),
        "created_at": NOW,
    }
    kwargs.update(overrides)
    return PaymentBatch(**kwargs)


def _make_tx(batch: PaymentBatch, tx_id: str, amount: str = "200.00") -> BatchTransaction:
    return BatchTransaction(
        transaction_id=tx_id,
        batch_id=batch.id,
        transaction_date=NOW - timedelta(days=3),
        amount_sek=Decimal(amount),
        quality_score=80,
    )


def _make_session(batch: PaymentBatch, status: SessionStatus, resolution=None) -> VerificationSession:
    return VerificationSession(
        payment_batch_id=batch.id,
        business_id=batch.business_id,
        total_transactions=batch.total_transactions,
        status=status,
        resolution=resolution,
        deadline=batch.deadline,
        created_at=NOW,
    )


class TestCreateBatch:

    def test_new_batch_is_draft(self):
        batch = create_batch("biz-1", 10, 2026, _totals(), NOW, created_by="alice")
        assert batch.status == BatchStatus.DRAFT
        assert batch.total_transactions == 3
        assert batch.created_by == "alice"
        assert batch.version == 0

    def test_deadline_is_end_of_day_seven_days_out(self):
        batch = create_batch("biz-1", 10, 2026, _totals(), NOW)
        assert batch.deadline == datetime(2026, 3, 18, 23, 59, 59, 999999, tzinfo=timezone.utc)
        assert batch.deadline == deadline_from(NOW)

    def test_week_out_of_range(self):
        with pytest.raises(ValidationError):
            create_batch("biz-1", 54, 2026, _totals(), NOW)

    def test_year_out_of_range(self):
        with pytest.raises(ValidationError):
            create_batch("biz-1", 10, 2031, _totals(), NOW)

    def test_week_53_only_in_long_years(self):
        assert max_week_for_year(2026) == 53
        assert max_week_for_year(2025) == 52
        with pytest.raises(InvalidWeek):
            create_batch("biz-1", 53, 2025, _totals(), NOW)

    def test_next_week_allowed(self):
        batch = create_batch("biz-1", 12, 2026, _totals(), NOW)
        assert batch.week_number == 12

    def test_more_than_one_week_ahead_rejected(self):
        with pytest.raises(FutureBatch):
            create_batch("biz-1", 13, 2026, _totals(), NOW)

    def test_duplicate_open_batch(self):
        existing = _make_batch(status=BatchStatus.PENDING_VERIFICATION)
        with pytest.raises(DuplicateBatch):
            create_batch("biz-1", 10, 2026, _totals(), NOW, existing=[existing])

    def test_closed_batch_does_not_block(self):
        existing = _make_batch(status=BatchStatus.EXPIRED)
        batch = create_batch("biz-1", 10, 2026, _totals(), NOW, existing=[existing])
        assert batch.id != existing.id

    def test_other_business_does_not_block(self):
        existing = _make_batch(business_id="biz-2")
        create_batch("biz-1", 10, 2026, _totals(), NOW, existing=[existing])

    def test_amount_precision(self):
        with pytest.raises(ValueError):
            BatchTotals(total_transactions=1, total_amount=Decimal("10.001"))


class TestTransitions:

    @pytest.mark.parametrize("current,new", [
        (BatchStatus.DRAFT, BatchStatus.PENDING_VERIFICATION),
        (BatchStatus.PENDING_VERIFICATION, BatchStatus.IN_PROGRESS),
        (BatchStatus.PENDING_VERIFICATION, BatchStatus.EXPIRED),
        (BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED),
        (BatchStatus.IN_PROGRESS, BatchStatus.EXPIRED),
        (BatchStatus.EXPIRED, BatchStatus.AUTO_APPROVED),
    ])
    def test_allowed(self, current, new):
        assert transition(_make_batch(status=current), new).status == new

    @pytest.mark.parametrize("current,new", [
        (BatchStatus.DRAFT, BatchStatus.IN_PROGRESS),
        (BatchStatus.COMPLETED, BatchStatus.IN_PROGRESS),
        (BatchStatus.AUTO_APPROVED, BatchStatus.EXPIRED),
        (BatchStatus.IN_PROGRESS, BatchStatus.AUTO_APPROVED),
        (BatchStatus.PENDING_VERIFICATION, BatchStatus.DRAFT),
    ])
    def test_rejected(self, current, new):
        with pytest.raises(InvalidTransition):
            transition(_make_batch(status=current), new)

    def test_transition_returns_copy(self):
        batch = _make_batch()
        moved = transition(batch, BatchStatus.PENDING_VERIFICATION)
        assert batch.status == BatchStatus.DRAFT
        assert moved.id == batch.id


class TestMirrorSession:

    def test_completed_session(self):
        batch = _make_batch(status=BatchStatus.IN_PROGRESS)
        session = _make_session(batch, SessionStatus.COMPLETED, SessionResolution.ALL_VERIFIED)
        assert mirror_session(batch, session).status == BatchStatus.COMPLETED

    def test_auto_approved_passes_through_expired(self):
        batch = _make_batch(status=BatchStatus.IN_PROGRESS)
        session = _make_session(batch, SessionStatus.COMPLETED, SessionResolution.AUTO_APPROVED)
        assert mirror_session(batch, session).status == BatchStatus.AUTO_APPROVED

    def test_expired_session_from_pending_batch(self):
        batch = _make_batch(status=BatchStatus.PENDING_VERIFICATION)
        session = _make_session(batch, SessionStatus.EXPIRED, SessionResolution.EXPIRED)
        assert mirror_session(batch, session).status == BatchStatus.EXPIRED

    def test_cancelled_session_leaves_batch(self):
        batch = _make_batch(status=BatchStatus.IN_PROGRESS)
        session = _make_session(batch, SessionStatus.CANCELLED, SessionResolution.CANCELLED)
        assert mirror_session(batch, session) is None


class TestReconcileAndRelease:

    def test_matching_rows(self):
        batch = _make_batch()
        reconcile_transactions(batch, [_make_tx(batch, f"TX-{i}") for i in range(3)])

    def test_count_mismatch(self):
        batch = _make_batch()
        with pytest.raises(ValidationError, match="count mismatch"):
            reconcile_transactions(batch, [_make_tx(batch, "TX-1"), _make_tx(batch, "TX-2")])

    def test_amount_within_tolerance(self):
        batch = _make_batch(total_amount=Decimal("600.01"))
        reconcile_transactions(batch, [_make_tx(batch, f"TX-{i}") for i in range(3)])

    def test_amount_mismatch(self):
        batch = _make_batch(total_amount=Decimal("650.00"))
        with pytest.raises(ValidationError, match="Amount mismatch"):
            reconcile_transactions(batch, [_make_tx(batch, f"TX-{i}") for i in range(3)])

    def test_duplicate_ids(self):
        batch = _make_batch()
        with pytest.raises(ValidationError, match="Duplicate"):
            reconcile_transactions(batch, [_make_tx(batch, "TX-1") for _ in range(3)])

    def test_release(self):
        released = release(_make_batch(), attached_transactions=3)
        assert released.status == BatchStatus.PENDING_VERIFICATION

    def test_release_requires_rows(self):
        with pytest.raises(ValidationError):
            release(_make_batch(), attached_transactions=0)

    def test_release_only_from_draft(self):
        with pytest.raises(InvalidTransition):
            release(_make_batch(status=BatchStatus.PENDING_VERIFICATION), attached_transactions=3)


class TestUrgency:

    def test_levels(self):
        assert urgency_level(NOW + timedelta(hours=10), NOW) == "critical"
        assert urgency_level(NOW - timedelta(hours=1), NOW) == "critical"
        assert urgency_level(NOW + timedelta(hours=30), NOW) == "high"
        assert urgency_level(NOW + timedelta(hours=60), NOW) == "medium"
        assert urgency_level(NOW + timedelta(hours=100), NOW) == "low"

    def test_overdue_scores_highest(self):
        overdue = _make_batch(deadline=NOW - timedelta(hours=1))
        later = _make_batch(deadline=NOW + timedelta(days=5))
        assert urgency_score(overdue, NOW) == 100
        assert urgency_score(later, NOW) < urgency_score(overdue, NOW)

    def test_score_bounded(self):
        big = _make_batch(
            deadline=NOW + timedelta(hours=10),
            total_transactions=5_000,
            total_amount=Decimal("900000.00"),
        )
        assert urgency_score(big, NOW) == 100

    def test_batch_ref(self):
        batch = _make_batch(business_id="business-abcdef", week_number=3)
        assert format_batch_id(batch) == "2026-W03-business"
