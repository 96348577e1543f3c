"""
Unit tests for verification result rules, automatic decisions and analytics.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.exceptions import ValidationError
from app.schemas.verification import BatchTransaction, Decision, RejectionReason
from app.verification.result import (
    AutoDecision,
    DecisionThresholds,
    auto_decision,
    auto_rejection_reason,
    build_result,
    decision_timeline,
    effective_result_for,
    effective_results,
    payment_impact,
    payment_summary,
    session_analytics,
    validate_decision_consistency,
    validate_transaction_data,
)

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)


def _make_tx(tx_id: str = "TX-1", **overrides) -> BatchTransaction:
    kwargs = {
        "transaction_id": tx_id,
        "batch_id": "batch-1",
        "transaction_date": NOW - timedelta(days=2),
        "amount_sek": Decimal("200.00"),
        "quality_score": 85,
        "reward_percentage": Decimal("5"),
        "reward_amount_sek": Decimal("10.00"),
    }
    kwargs.update(overrides)
    return BatchTransaction(**kwargs)


def _approve(tx_id: str = "TX-1", minutes: int = 0, **kwargs):
    return build_result("s-1", _make_tx(tx_id), Decision.APPROVED, NOW + timedelta(minutes=minutes), **kwargs)


def _reject(tx_id: str = "TX-1", minutes: int = 0, reason=RejectionReason.CUSTOMER_DISPUTE, **kwargs):
    return build_result(
        "s-1", _make_tx(tx_id), Decision.REJECTED, NOW + timedelta(minutes=minutes),
        rejection_reason=reason, **kwargs,
    )


class TestConsistency:

    def test_rejection_needs_reason(self):
        with pytest.raises(ValidationError, match="Rejection reason is required"):
            validate_decision_consistency(Decision.REJECTED, True, None)

    def test_approval_cannot_carry_reason(self):
        with pytest.raises(ValidationError):
            validate_decision_consistency(Decision.APPROVED, True, RejectionReason.OTHER)

    def test_pending_never_recorded(self):
        with pytest.raises(ValidationError):
            validate_decision_consistency(Decision.PENDING, False, None)

    def test_final_decision_must_be_verified(self):
        with pytest.raises(ValidationError):
            validate_decision_consistency(Decision.APPROVED, False, None)

    def test_reward_matches_percentage(self):
        assert validate_transaction_data(_make_tx()) == []

    def test_reward_mismatch_reported(self):
        problems = validate_transaction_data(_make_tx(reward_amount_sek=Decimal("12.00")))
        assert len(problems) == 1
        assert "TX-1" in problems[0]


class TestBuildResult:

    def test_snapshots_transaction(self):
        result = _approve(reviewer_id="alice", risk_score=12)
        assert result.verified is True
        assert result.amount_sek == Decimal("200.00")
        assert result.quality_score == 85
        assert result.reward_amount_sek == Decimal("10.00")
        assert result.risk_score == 12
        assert not result.automated

    def test_automated_when_no_reviewer(self):
        assert _approve().automated


class TestAutoDecision:

    def test_high_quality_low_risk_approved(self):
        assert auto_decision(92, 20) == AutoDecision.APPROVE

    def test_high_risk_rejected_regardless_of_quality(self):
        assert auto_decision(95, 75) == AutoDecision.REJECT
        assert auto_rejection_reason(95, 75) == RejectionReason.FRAUD_SUSPECTED

    def test_low_quality_rejected(self):
        assert auto_decision(30, 10) == AutoDecision.REJECT
        assert auto_rejection_reason(30, 10) == RejectionReason.QUALITY_THRESHOLD_NOT_MET

    def test_middle_band_needs_human(self):
        assert auto_decision(60, 20) == AutoDecision.MANUAL_REVIEW

    def test_boundaries_inclusive(self):
        assert auto_decision(90, 70) == AutoDecision.APPROVE
        assert auto_decision(31, 0) == AutoDecision.MANUAL_REVIEW

    def test_unknown_risk_is_zero(self):
        assert auto_decision(95, None) == AutoDecision.APPROVE

    def test_custom_thresholds(self):
        strict = DecisionThresholds(auto_approve_min_quality=98, reject_risk_threshold=40.0)
        assert auto_decision(95, 20, strict) == AutoDecision.MANUAL_REVIEW
        assert auto_decision(99, 45, strict) == AutoDecision.REJECT


class TestEffectiveResults:

    def test_correction_supersedes(self):
        first = _approve("TX-1")
        correction = _reject("TX-1", minutes=5, supersedes=first.id)
        other = _approve("TX-2")

        effective = effective_results([first, correction, other])
        assert [r.id for r in effective] == [correction.id, other.id]
        assert effective_result_for([first, correction, other], "TX-1").id == correction.id

    def test_missing_transaction(self):
        assert effective_result_for([_approve("TX-1")], "TX-9") is None


class TestPaymentImpact:

    def test_approved_pays_reward_and_commission(self):
        impact = payment_impact(_approve())
        assert impact.reward_payable
        assert impact.reward_amount == Decimal("10.00")
        assert impact.commission_amount == Decimal("6.00")
        assert impact.net_business_cost == Decimal("16.00")

    def test_rejected_pays_nothing(self):
        impact = payment_impact(_reject())
        assert not impact.reward_payable
        assert impact.commission_amount == Decimal("0")
        assert impact.net_business_cost == Decimal("0")

    def test_commission_rounds_half_up(self):
        result = _approve().model_copy(update={"amount_sek": Decimal("0.50")})
        assert payment_impact(result).commission_amount == Decimal("0.02")  # 0.015 → 0.02

    def test_summary_uses_effective_results(self):
        first = _approve("TX-1")
        correction = _reject("TX-1", minutes=5, supersedes=first.id)
        summary = payment_summary([first, correction, _approve("TX-2")])

        assert summary["payable_transactions"] == 1
        assert summary["withheld_transactions"] == 1
        assert summary["total_reward_amount"] == Decimal("10.00")
        assert summary["net_business_cost"] == Decimal("16.00")


class TestAnalytics:

    def test_rates_and_reasons(self):
        results = [
            _approve("TX-1", verification_time_seconds=30, risk_score=10),
            _approve("TX-2", verification_time_seconds=50),
            _reject("TX-3", reason=RejectionReason.AMOUNT_MISMATCH, risk_score=50),
            _reject("TX-4", reason=RejectionReason.AMOUNT_MISMATCH, reviewer_id="bob"),
        ]
        analytics = session_analytics(results)

        assert analytics.total_results == 4
        assert analytics.approval_rate == 50.0
        assert analytics.rejection_rate == 50.0
        assert analytics.average_verification_time_seconds == 40.0
        assert analytics.average_risk_score == 30.0
        assert analytics.average_quality_score == 85.0
        assert analytics.common_rejection_reasons[0].reason == RejectionReason.AMOUNT_MISMATCH
        assert analytics.common_rejection_reasons[0].count == 2
        assert analytics.automated_decisions == 3

    def test_empty(self):
        analytics = session_analytics([])
        assert analytics.total_results == 0
        assert analytics.approval_rate == 0.0
        assert analytics.average_verification_time_seconds is None

    def test_timeline_keeps_history(self):
        first = _approve("TX-1", reviewer_id="alice")
        correction = _reject("TX-1", minutes=5, supersedes=first.id, reviewer_id="bob")
        early = _approve("TX-2", minutes=-10)

        timeline = decision_timeline([first, correction, early])
        assert [e.transaction_id for e in timeline] == ["TX-2", "TX-1", "TX-1"]
        assert timeline[-1].supersedes == first.id
        assert timeline[0].automated
