"""
Store contract tests, run against both backends:
MemoryStore and SqlStore on in-memory SQLite.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import (
    ConcurrentModification,
    DuplicateBatch,
    InvalidTransition,
    NotFound,
    TransactionAlreadyVerified,
    ValidationError,
)
from app.models.database import make_engine, make_session_factory
from app.models.verification import Base
from app.schemas.audit_events import AutoResolutionDetails, BatchCreated, BatchCreatedDetails, SessionExpired
from app.schemas.verification import (
    ACTIVE_SESSION_STATUSES,
    BatchStatus,
    BatchTransaction,
    Decision,
    PaymentBatch,
    SessionStatus,
    VerificationResult,
    VerificationSession,
)
from app.storage.base import SessionChange, check_result_append
from app.storage.memory import MemoryStore
from app.storage.sql import SqlStore

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        return MemoryStore()
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    request.addfinalizer(engine.dispose)
    return SqlStore(make_session_factory(engine))


def _make_batch(**overrides) -> PaymentBatch:
    kwargs = {
        "business_id": "biz-1",
        "week_number": 10,
        "year": 2026,
        "total_transactions": 2,
        "total_amount": Decimal("300.00"),
        "status": BatchStatus.PENDING_VERIFICATION,
        "deadline": NOW + timedelta(days=7),
        "created_at": NOW,
    }
    kwargs.update(overrides)
    return PaymentBatch(**kwargs)


def _make_txs(batch: PaymentBatch) -> list[BatchTransaction]:
    return [
        BatchTransaction(
            transaction_id=f"TX-{i}",
            batch_id=batch.id,
            transaction_date=NOW - timedelta(days=2, hours=i),
            amount_sek=Decimal("150.00"),
            quality_score=80,
            reward_percentage=Decimal("5"),
            reward_amount_sek=Decimal("7.50"),
            phone_last4="**12",
        )
        for i in range(2)
    ]


def _make_session(batch: PaymentBatch, **overrides) -> VerificationSession:
    kwargs = {
        "payment_batch_id": batch.id,
        "business_id": batch.business_id,
        "total_transactions": batch.total_transactions,
        "deadline": batch.deadline,
        "created_at": NOW,
    }
    kwargs.update(overrides)
    return VerificationSession(**kwargs)


def _make_result(session: VerificationSession, tx_id: str, supersedes=None, decision=Decision.APPROVED):
    return VerificationResult(
        verification_session_id=session.id,
        transaction_id=tx_id,
        decision=decision,
        verified=True,
        rejection_reason="other" if decision == Decision.REJECTED else None,
        reviewer_id="alice",
        amount_sek=Decimal("150.00"),
        quality_score=80,
        reward_amount_sek=Decimal("7.50"),
        supersedes=supersedes,
        created_at=NOW,
    )


def _seeded(store):
    batch = store.add_batch(_make_batch())
    store.add_transactions(batch.id, _make_txs(batch))
    session = store.add_session(_make_session(batch))
    return batch, session


class TestBatches:

    def test_round_trip(self, store):
        batch = store.add_batch(_make_batch())
        loaded = store.get_batch(batch.id)
        assert loaded.model_dump() == batch.model_dump()
        assert loaded.deadline.tzinfo is not None

    def test_missing_batch(self, store):
        with pytest.raises(NotFound):
            store.get_batch("nope")

    def test_one_open_batch_per_week(self, store):
        store.add_batch(_make_batch())
        with pytest.raises(DuplicateBatch):
            store.add_batch(_make_batch())

    def test_closed_batch_frees_the_week(self, store):
        store.add_batch(_make_batch(status=BatchStatus.EXPIRED))
        store.add_batch(_make_batch())
        assert len(store.list_batches(business_id="biz-1")) == 2

    def test_list_filters(self, store):
        store.add_batch(_make_batch())
        store.add_batch(_make_batch(business_id="biz-2", status=BatchStatus.DRAFT))
        assert len(store.list_batches(business_id="biz-2")) == 1
        assert len(store.list_batches(statuses=[BatchStatus.DRAFT])) == 1
        assert len(store.list_batches()) == 2

    def test_update_checks_version(self, store):
        batch = store.add_batch(_make_batch(status=BatchStatus.DRAFT))
        moved = store.update_batch(batch.model_copy(update={"status": BatchStatus.PENDING_VERIFICATION}))
        assert moved.version == 1
        assert store.get_batch(batch.id).status == BatchStatus.PENDING_VERIFICATION

        with pytest.raises(ConcurrentModification):
            store.update_batch(batch.model_copy(update={"status": BatchStatus.EXPIRED}))


class TestTransactions:

    def test_attach_and_read(self, store):
        batch = store.add_batch(_make_batch())
        store.add_transactions(batch.id, _make_txs(batch))

        txs = store.list_transactions(batch.id)
        assert [t.transaction_id for t in txs] == ["TX-0", "TX-1"]
        assert store.get_transaction(batch.id, "TX-1").reward_amount_sek == Decimal("7.50")

    def test_attach_once(self, store):
        batch = store.add_batch(_make_batch())
        store.add_transactions(batch.id, _make_txs(batch))
        with pytest.raises(ValidationError):
            store.add_transactions(batch.id, _make_txs(batch))

    def test_unknown_transaction(self, store):
        batch = store.add_batch(_make_batch())
        with pytest.raises(NotFound):
            store.get_transaction(batch.id, "TX-9")


class TestSessions:

    def test_one_active_session_per_batch(self, store):
        batch, _ = _seeded(store)
        with pytest.raises(InvalidTransition):
            store.add_session(_make_session(batch))

    def test_list_by_status(self, store):
        batch, session = _seeded(store)
        assert [s.id for s in store.list_sessions(statuses=ACTIVE_SESSION_STATUSES)] == [session.id]
        assert store.list_sessions(statuses=[SessionStatus.EXPIRED]) == []
        assert len(store.list_sessions(batch_id=batch.id)) == 1

    def test_commit_bumps_version(self, store):
        _, session = _seeded(store)
        started = session.model_copy(update={"status": SessionStatus.IN_PROGRESS, "started_at": NOW})
        written = store.commit_session_change(SessionChange(
            session=started, expected_statuses=frozenset({SessionStatus.NOT_STARTED}),
        ))
        assert written.version == 1
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS

    def test_stale_version_rejected(self, store):
        _, session = _seeded(store)
        started = session.model_copy(update={"status": SessionStatus.IN_PROGRESS})
        store.commit_session_change(SessionChange(session=started, expected_statuses=frozenset({SessionStatus.NOT_STARTED})))

        with pytest.raises(ConcurrentModification):
            store.commit_session_change(SessionChange(
                session=session.model_copy(update={"status": SessionStatus.CANCELLED}),
                expected_statuses=frozenset({SessionStatus.NOT_STARTED}),
            ))

    def test_unexpected_status_rejected(self, store):
        _, session = _seeded(store)
        with pytest.raises(ConcurrentModification):
            store.commit_session_change(SessionChange(
                session=session.model_copy(update={"status": SessionStatus.PAUSED}),
                expected_statuses=frozenset({SessionStatus.IN_PROGRESS}),
            ))

    def test_session_batch_and_results_commit_together(self, store):
        batch, session = _seeded(store)
        result = _make_result(session, "TX-0")
        change = SessionChange(
            session=session.model_copy(update={
                "status": SessionStatus.IN_PROGRESS, "verified_transactions": 1, "approved_count": 1,
            }),
            expected_statuses=frozenset({SessionStatus.NOT_STARTED}),
            new_results=[result],
            batch=batch.model_copy(update={"status": BatchStatus.IN_PROGRESS}),
        )
        store.commit_session_change(change)

        assert store.get_batch(batch.id).status == BatchStatus.IN_PROGRESS
        assert store.get_batch(batch.id).version == 1
        assert [r.id for r in store.list_results(session.id)] == [result.id]

    def test_failed_commit_writes_nothing(self, store):
        batch, session = _seeded(store)
        # Batch copy read at a stale version
        store.update_batch(batch.model_copy(update={"status": BatchStatus.IN_PROGRESS}))
        change = SessionChange(
            session=session.model_copy(update={"status": SessionStatus.IN_PROGRESS}),
            expected_statuses=frozenset({SessionStatus.NOT_STARTED}),
            new_results=[_make_result(session, "TX-0")],
            batch=batch.model_copy(update={"status": BatchStatus.IN_PROGRESS}),
        )
        with pytest.raises(ConcurrentModification):
            store.commit_session_change(change)

        assert store.get_session(session.id).status == SessionStatus.NOT_STARTED
        assert store.get_session(session.id).version == 0
        assert store.list_results(session.id) == []


class TestResults:

    def test_duplicate_first_decision(self, store):
        _, session = _seeded(store)
        session = store.commit_session_change(SessionChange(
            session=session, expected_statuses=ACTIVE_SESSION_STATUSES,
            new_results=[_make_result(session, "TX-0")],
        ))
        with pytest.raises(TransactionAlreadyVerified):
            store.commit_session_change(SessionChange(
                session=session, expected_statuses=ACTIVE_SESSION_STATUSES,
                new_results=[_make_result(session, "TX-0")],
            ))

    def test_correction_must_supersede_effective(self, store):
        _, session = _seeded(store)
        first = _make_result(session, "TX-0")
        session = store.commit_session_change(SessionChange(
            session=session, expected_statuses=ACTIVE_SESSION_STATUSES, new_results=[first],
        ))
        fix = _make_result(session, "TX-0", supersedes=first.id, decision=Decision.REJECTED)
        session = store.commit_session_change(SessionChange(
            session=session, expected_statuses=ACTIVE_SESSION_STATUSES, new_results=[fix],
        ))

        stale = _make_result(session, "TX-0", supersedes=first.id)
        with pytest.raises(ConcurrentModification):
            store.commit_session_change(SessionChange(
                session=session, expected_statuses=ACTIVE_SESSION_STATUSES, new_results=[stale],
            ))
        assert len(store.list_results(session.id)) == 2


class TestAudit:

    def test_events_read_back_as_variants(self, store):
        batch, session = _seeded(store)
        store.add_audit_event(BatchCreated(
            business_id="biz-1", batch_id=batch.id, description="created", occurred_at=NOW,
            details=BatchCreatedDetails(
                week_number=10, year=2026, total_transactions=2, total_amount="300.00", deadline=batch.deadline,
            ),
        ))
        store.add_audit_event(SessionExpired(
            business_id="biz-1", batch_id=batch.id, session_id=session.id, description="expired",
            occurred_at=NOW + timedelta(minutes=1),
            details=AutoResolutionDetails(completion_percentage=0, auto_approval_threshold=30, hours_overdue=3),
        ))

        events = store.list_audit_events(batch_id=batch.id)
        assert [type(e) for e in events] == [BatchCreated, SessionExpired]
        assert store.list_audit_events(session_id=session.id)[0].details.hours_overdue == 3


class TestResultAppendRule:

    def test_two_first_decisions_in_one_change(self):
        session = _make_session(_make_batch())
        with pytest.raises(TransactionAlreadyVerified):
            check_result_append([], [_make_result(session, "TX-0"), _make_result(session, "TX-0")])

    def test_correction_without_original(self):
        session = _make_session(_make_batch())
        with pytest.raises(ConcurrentModification):
            check_result_append([], [_make_result(session, "TX-0", supersedes="missing")])
