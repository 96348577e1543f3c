"""
Payment Batch lifecycle rules.

  draft → pending_verification → in_progress → completed
                        ↘              ↘
                         expired ←──────  expired → auto_approved

All functions are pure: they validate and return a new PaymentBatch copy.
Writing the copy back (with its version precondition) is the store's job.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Optional

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

ALLOWED_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.DRAFT: {BatchStatus.PENDING_VERIFICATION},
    BatchStatus.PENDING_VERIFICATION: {BatchStatus.IN_PROGRESS, BatchStatus.EXPIRED},
    BatchStatus.IN_PROGRESS: {BatchStatus.COMPLETED, BatchStatus.EXPIRED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.AUTO_APPROVED: set(),
    # late resolution
    BatchStatus.EXPIRED: {BatchStatus.AUTO_APPROVED},
}

OPEN_BATCH_STATUSES = frozenset({
    BatchStatus.DRAFT,
    BatchStatus.PENDING_VERIFICATION,
    BatchStatus.IN_PROGRESS,
})

AMOUNT_TOLERANCE = Decimal("0.01")


# ── ISO week helpers ──

def max_week_for_year(year: int) -> int:
    # Dec 28th always falls in the last ISO week of its year
    return date(year, 12, 28).isocalendar()[1]


def week_start(year: int, week: int) -> date:
    return date.fromisocalendar(year, week, 1)


def end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time(23, 59, 59, 999999), tzinfo=moment.tzinfo)


def deadline_from(created_at: datetime, days: int = 7) -> datetime:
    """Verification deadline: `days` after creation, at end of day."""
    return end_of_day(created_at + timedelta(days=days))


# ── Creation ──

def create_batch(
    business_id: str,
    week_number: int,
    year: int,
    totals: BatchTotals,
    now: datetime,
    existing: Iterable[PaymentBatch] = (),
    created_by: Optional[str] = None,
    min_year: int = 2024,
    max_year: int = 2030,
    window_days: int = 7,
) -> PaymentBatch:
    if not business_id:
        raise ValidationError("business_id is required")
    if not 1 <= week_number <= 53:
        raise ValidationError("Week number must be between 1 and 53", week_number=week_number)
    if not min_year <= year <= max_year:
        raise ValidationError(f"Year must be between {min_year} and {max_year}", year=year)

    if week_number > max_week_for_year(year):
        raise InvalidWeek(f"Week {week_number} does not exist in year {year}", week_number=week_number, year=year)

    current_week_start = week_start(*now.date().isocalendar()[:2])
    if week_start(year, week_number) > current_week_start + timedelta(weeks=1):
        raise FutureBatch(week_number=week_number, year=year)

    for batch in existing:
        if (
            batch.business_id == business_id
            and batch.week_number == week_number
            and batch.year == year
            and batch.status in OPEN_BATCH_STATUSES
        ):
            raise DuplicateBatch(
                f"Batch already exists for business {business_id}, week {week_number}, year {year}",
                batch_id=batch.id,
            )

    return PaymentBatch(
        business_id=business_id,
        week_number=week_number,
        year=year,
        total_transactions=totals.total_transactions,
        total_amount=totals.total_amount,
        status=BatchStatus.DRAFT,
        deadline=deadline_from(now, window_days),
        created_at=now,
        created_by=created_by,
    )


# ── Transitions ──

def can_transition(current: BatchStatus, new: BatchStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def transition(batch: PaymentBatch, new_status: BatchStatus) -> PaymentBatch:
    if not can_transition(batch.status, new_status):
        raise InvalidTransition(
            f"Invalid status transition from {batch.status.value} to {new_status.value}",
            batch_id=batch.id,
        )
    return batch.model_copy(update={"status": new_status})


def mirror_session(batch: PaymentBatch, session: VerificationSession) -> Optional[PaymentBatch]:
    """
    Batch status after its session reached a terminal state, or None when
    the session outcome does not move the batch (cancellation).

    An auto-approved outcome on a batch that is not yet expired passes
    through `expired` first: the late-resolution edge is the only way into
    `auto_approved`.
    """
    if session.status == SessionStatus.COMPLETED and session.resolution == SessionResolution.AUTO_APPROVED:
        moved = batch
        if moved.status != BatchStatus.EXPIRED:
            moved = transition(moved, BatchStatus.EXPIRED)
        return transition(moved, BatchStatus.AUTO_APPROVED)

    if session.status == SessionStatus.COMPLETED:
        return transition(batch, BatchStatus.COMPLETED)

    if session.status == SessionStatus.EXPIRED:
        return transition(batch, BatchStatus.EXPIRED)

    return None


# ── Transactions ──

def reconcile_transactions(batch: PaymentBatch, transactions: list[BatchTransaction]) -> None:
    """Parsed rows must match the totals the batch was created with."""
    errors = []
    if len(transactions) != batch.total_transactions:
        errors.append(
            f"Transaction count mismatch: expected {batch.total_transactions}, got {len(transactions)}"
        )
    csv_total = sum((tx.amount_sek for tx in transactions), Decimal("0"))
    if abs(csv_total - batch.total_amount) > AMOUNT_TOLERANCE:
        errors.append(f"Amount mismatch: expected {batch.total_amount}, got {csv_total}")

    ids = [tx.transaction_id for tx in transactions]
    if len(set(ids)) != len(ids):
        errors.append("Duplicate transaction ids in batch")
    if any(tx.batch_id != batch.id for tx in transactions):
        errors.append("Transaction rows belong to a different batch")

    if errors:
        raise ValidationError("; ".join(errors), batch_id=batch.id)


def release(batch: PaymentBatch, attached_transactions: int) -> PaymentBatch:
    """draft → pending_verification, once the rows are attached."""
    if batch.status != BatchStatus.DRAFT:
        raise InvalidTransition(
            f"Batch status must be 'draft' to release (current: {batch.status.value})",
            batch_id=batch.id,
        )
    if batch.total_transactions <= 0 or attached_transactions != batch.total_transactions:
        raise ValidationError(
            "Batch must have all of its transactions attached to release",
            batch_id=batch.id,
            attached=attached_transactions,
        )
    return transition(batch, BatchStatus.PENDING_VERIFICATION)


# ── Urgency (sorting only) ──

def hours_until(deadline: datetime, now: datetime) -> float:
    return (deadline - now).total_seconds() / 3600


def urgency_level(deadline: datetime, now: datetime) -> str:
    hours = hours_until(deadline, now)
    if hours < 24:  # includes overdue
        return "critical"
    if hours < 48:
        return "high"
    if hours < 72:
        return "medium"
    return "low"


def urgency_score(batch: PaymentBatch, now: datetime) -> int:
    """0-100 priority used for sorting batch lists; never gates anything."""
    hours = hours_until(batch.deadline, now)

    if hours < 0:
        score = 100.0
    elif hours < 24:
        score = 90.0
    elif hours < 48:
        score = 70.0
    elif hours < 72:
        score = 50.0
    else:
        score = max(0.0, 40 - (hours / 24) * 2)

    score *= min(1.2, 1 + batch.total_transactions / 1000)
    score *= min(1.15, 1 + float(batch.total_amount) / 100_000)

    return min(100, int(score + 0.5))


def format_batch_id(batch: PaymentBatch) -> str:
    return f"{batch.year}-W{batch.week_number:02d}-{batch.business_id[:8]}"
