"""
Verification Result decision rules and read-only analytics.

Results are append-only. A correction is a new record whose `supersedes`
points at the replaced one; every view here works on the *effective* set
(records nobody supersedes).
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional

from app.core.exceptions import ValidationError
from app.schemas.verification import (
    BatchTransaction,
    Decision,
    PaymentImpact,
    RejectionReason,
    RejectionReasonCount,
    SessionAnalytics,
    TimelineEntry,
    VerificationResult,
    new_id,
)

CENT = Decimal("0.01")
REWARD_TOLERANCE = Decimal("0.01")


class AutoDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class DecisionThresholds:
    auto_approve_min_quality: int = 90
    auto_reject_max_quality: int = 30
    reject_risk_threshold: float = 70.0


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ── Consistency ──

def validate_decision_consistency(
    decision: Decision,
    verified: bool,
    rejection_reason: Optional[RejectionReason],
) -> None:
    if decision == Decision.PENDING:
        raise ValidationError("Pending decisions are never recorded")
    if not verified:
        raise ValidationError(f"A {decision.value} decision must be marked verified")
    if decision == Decision.REJECTED and rejection_reason is None:
        raise ValidationError("Rejection reason is required for rejected transactions")
    if decision == Decision.APPROVED and rejection_reason is not None:
        raise ValidationError("Approved transactions cannot carry a rejection reason")


def validate_transaction_data(tx: BatchTransaction) -> list[str]:
    """Reward amount must match amount × reward percentage within a cent."""
    expected = tx.amount_sek * tx.reward_percentage / 100
    if abs(tx.reward_amount_sek - expected) > REWARD_TOLERANCE:
        return [
            f"Transaction {tx.transaction_id}: reward amount {tx.reward_amount_sek} "
            f"doesn't match calculated amount {_money(expected)}"
        ]
    return []


def build_result(
    session_id: str,
    tx: BatchTransaction,
    decision: Decision,
    now: datetime,
    rejection_reason: Optional[RejectionReason] = None,
    reviewer_id: Optional[str] = None,
    notes: Optional[str] = None,
    verification_time_seconds: Optional[int] = None,
    risk_score: Optional[int] = None,
    supersedes: Optional[str] = None,
) -> VerificationResult:
    validate_decision_consistency(decision, True, rejection_reason)
    return VerificationResult(
        id=new_id(),
        verification_session_id=session_id,
        transaction_id=tx.transaction_id,
        decision=decision,
        verified=True,
        rejection_reason=rejection_reason,
        reviewer_id=reviewer_id,
        notes=notes,
        verification_time_seconds=verification_time_seconds,
        risk_score=risk_score,
        amount_sek=tx.amount_sek,
        quality_score=tx.quality_score,
        reward_amount_sek=tx.reward_amount_sek,
        supersedes=supersedes,
        created_at=now,
    )


# ── Automatic decisions ──

def auto_decision(
    quality_score: int,
    risk_score: Optional[float],
    thresholds: DecisionThresholds = DecisionThresholds(),
) -> AutoDecision:
    """
    approve  iff risk <= reject threshold AND quality >= auto-approve minimum
    reject   iff risk >  reject threshold OR  quality <= auto-reject maximum
    otherwise a human has to look at it.

    An unknown risk score counts as zero risk.
    """
    risk = risk_score or 0
    if risk > thresholds.reject_risk_threshold or quality_score <= thresholds.auto_reject_max_quality:
        return AutoDecision.REJECT
    if quality_score >= thresholds.auto_approve_min_quality:
        return AutoDecision.APPROVE
    return AutoDecision.MANUAL_REVIEW


def auto_rejection_reason(
    quality_score: int,
    risk_score: Optional[float],
    thresholds: DecisionThresholds = DecisionThresholds(),
) -> RejectionReason:
    if (risk_score or 0) > thresholds.reject_risk_threshold:
        return RejectionReason.FRAUD_SUSPECTED
    return RejectionReason.QUALITY_THRESHOLD_NOT_MET


# ── Views ──

def effective_results(results: Iterable[VerificationResult]) -> list[VerificationResult]:
    results = list(results)
    superseded = {r.supersedes for r in results if r.supersedes}
    return [r for r in results if r.id not in superseded]


def effective_result_for(results: Iterable[VerificationResult], transaction_id: str) -> Optional[VerificationResult]:
    for result in effective_results(results):
        if result.transaction_id == transaction_id:
            return result
    return None


def payment_impact(result: VerificationResult, commission_rate: float = 0.03) -> PaymentImpact:
    payable = result.decision == Decision.APPROVED
    reward = result.reward_amount_sek if payable else Decimal("0")
    commission = _money(result.amount_sek * Decimal(str(commission_rate))) if payable else Decimal("0")
    return PaymentImpact(
        reward_payable=payable,
        reward_amount=reward,
        commission_applicable=payable,
        commission_amount=commission,
        net_business_cost=reward + commission,
    )


def payment_summary(results: Iterable[VerificationResult], commission_rate: float = 0.03) -> dict:
    """Totals a payout run would use for one session."""
    effective = effective_results(results)
    impacts = [payment_impact(r, commission_rate) for r in effective]
    payable = [i for i in impacts if i.reward_payable]
    return {
        "payable_transactions": len(payable),
        "withheld_transactions": len(impacts) - len(payable),
        "total_reward_amount": sum((i.reward_amount for i in payable), Decimal("0")),
        "total_commission_amount": sum((i.commission_amount for i in payable), Decimal("0")),
        "net_business_cost": sum((i.net_business_cost for i in payable), Decimal("0")),
    }


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def session_analytics(results: Iterable[VerificationResult], commission_rate: float = 0.03) -> SessionAnalytics:
    effective = effective_results(results)
    total = len(effective)
    verified = sum(1 for r in effective if r.verified)
    approved = sum(1 for r in effective if r.decision == Decision.APPROVED)
    rejected = sum(1 for r in effective if r.decision == Decision.REJECTED)

    qualities = [r.quality_score or 0 for r in effective]
    times = [r.verification_time_seconds for r in effective if r.verification_time_seconds is not None]
    risks = [r.risk_score for r in effective if r.risk_score is not None]

    reasons = Counter(r.rejection_reason for r in effective if r.rejection_reason)
    summary = payment_summary(effective, commission_rate)

    return SessionAnalytics(
        total_results=total,
        verified_transactions=verified,
        approval_rate=_rate(approved, verified),
        rejection_rate=_rate(rejected, verified),
        average_quality_score=round(sum(qualities) / total, 2) if total else 0.0,
        average_verification_time_seconds=round(sum(times) / len(times), 2) if times else None,
        average_risk_score=round(sum(risks) / len(risks), 2) if risks else None,
        total_reward_amount=summary["total_reward_amount"],
        total_commission_amount=summary["total_commission_amount"],
        common_rejection_reasons=[
            RejectionReasonCount(reason=reason, count=count)
            for reason, count in reasons.most_common()
        ],
        automated_decisions=sum(1 for r in effective if r.automated),
    )


def decision_timeline(results: Iterable[VerificationResult]) -> list[TimelineEntry]:
    """Every decision ever recorded, superseded ones included, oldest first."""
    return [
        TimelineEntry(
            transaction_id=r.transaction_id,
            decision_timestamp=r.created_at,
            decision=r.decision,
            reviewer_id=r.reviewer_id,
            automated=r.automated,
            supersedes=r.supersedes,
        )
        for r in sorted(results, key=lambda r: r.created_at)
    ]
