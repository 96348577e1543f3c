"""
Rule-based Fraud Risk Scoring Engine

Orchestrates:
  1. All 5 factor scores
  2. Weighted composite score (0-100)
  3. Risk level assignment
  4. Recommendation from (level, confidence)

Used directly as the local risk provider, and as the rule-based fallback
when the external assessment provider is unavailable.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional

import structlog

from app.schemas.fraud import (
    AssessmentSource,
    FraudAssessment,
    Recommendation,
    RiskFactor,
    RiskLevel,
    TransactionContext,
)
from app.scoring import factors

logger = structlog.get_logger()

MODEL_VERSION = "rules-1.0"


# ═══════════════════════════════════════════════════════════════
# Factor weights — must sum to 1.0
# ═══════════════════════════════════════════════════════════════
FACTOR_WEIGHTS: dict[str, float] = {
    "amount_anomaly": 0.25,
    "time_pattern": 0.15,
    "reward_consistency": 0.20,
    "customer_behavior": 0.20,
    "frequency_analysis": 0.20,
}
assert abs(sum(FACTOR_WEIGHTS.values()) - 1.0) < 1e-9, "Weights must sum to 1.0"


# ═══════════════════════════════════════════════════════════════
# Level thresholds
#   score >= 70  → CRITICAL
#   score >= 50  → HIGH
#   score >= 30  → MEDIUM
#   else         → LOW
# ═══════════════════════════════════════════════════════════════
LEVEL_THRESHOLDS = [
    (70, RiskLevel.CRITICAL),
    (50, RiskLevel.HIGH),
    (30, RiskLevel.MEDIUM),
]

# Below this confidence every recommendation is a human review
MIN_CONFIDENCE = 0.7

FALLBACK_CONFIDENCE = 0.5
FALLBACK_SAFETY_MARGIN = 20


def calculate_base_risk(context: TransactionContext) -> tuple[int, list[RiskFactor]]:
    """
    Returns (base_score, factor breakdown). Each factor is pre-multiplied by
    its weight; the sum is rounded half-up and clamped to [0, 100].
    """
    biz = context.business_context
    hist = context.customer_history

    raw_results = [
        factors.score_amount_anomaly(
            context.amount_sek, biz.average_transaction_amount if biz else None,
        ),
        factors.score_time_pattern(
            context.transaction_date.hour, biz.peak_hours if biz else None,
            context.transaction_date.minute,
        ),
        factors.score_reward_consistency(
            context.reward_percentage, tuple(biz.typical_reward_range) if biz else None,
        ),
        factors.score_customer_behavior(context.quality_score),
        factors.score_customer_history(
            hist.total_transactions if hist else None,
            hist.fraud_history if hist else False,
        ),
    ]

    breakdown: list[RiskFactor] = []
    total = 0.0
    for result in raw_results:
        weight = FACTOR_WEIGHTS[result.factor_name]
        weighted = result.score * weight
        total += weighted
        breakdown.append(RiskFactor(
            factor_name=result.factor_name,
            score=result.score,
            weight=weight,
            weighted_score=round(weighted, 4),
            description=result.description,
        ))

    base_score = min(100, max(0, math.floor(total + 0.5)))
    return base_score, breakdown


def risk_level_for(score: float) -> RiskLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.LOW


def recommend(level: RiskLevel, confidence: float) -> Recommendation:
    if confidence < MIN_CONFIDENCE:
        return Recommendation.REVIEW

    if level == RiskLevel.CRITICAL:
        return Recommendation.REJECT if confidence > 0.9 else Recommendation.INVESTIGATE
    if level == RiskLevel.HIGH:
        return Recommendation.INVESTIGATE if confidence > 0.8 else Recommendation.REVIEW
    if level == RiskLevel.MEDIUM:
        return Recommendation.REVIEW
    return Recommendation.APPROVE if confidence > 0.8 else Recommendation.REVIEW


def rule_confidence(context: TransactionContext) -> float:
    """
    Confidence of the rule-based score grows with the context it was given:
    business baselines and customer history each remove a default assumption.
    """
    confidence = 0.65
    if context.business_context is not None:
        confidence += 0.15
    if context.customer_history is not None:
        confidence += 0.15
    return round(confidence, 2)


def evaluate(context: TransactionContext, now: Optional[datetime] = None) -> FraudAssessment:
    """
    Main scoring entry point.
    """
    base_score, breakdown = calculate_base_risk(context)
    level = risk_level_for(base_score)
    confidence = rule_confidence(context)
    recommendation = recommend(level, confidence)

    logger.debug(
        "risk_evaluation_complete",
        transaction_id=context.transaction_id,
        score=base_score,
        level=level.value,
        recommendation=recommendation.value,
    )

    return FraudAssessment(
        transaction_id=context.transaction_id,
        risk_score=base_score,
        risk_level=level,
        confidence=confidence,
        recommendation=recommendation,
        risk_factors=breakdown,
        reasoning=[f.description for f in breakdown if f.score > 0],
        source=AssessmentSource.RULES,
        model_version=MODEL_VERSION,
        assessed_at=now or datetime.now(timezone.utc),
    )


def fallback_assessment(
    context: TransactionContext,
    error: str,
    now: Optional[datetime] = None,
) -> FraudAssessment:
    """
    Conservative default when the assessment provider is unavailable:
    medium risk, review, low confidence, base score plus a safety margin.
    """
    base_score, breakdown = calculate_base_risk(context)
    return FraudAssessment(
        transaction_id=context.transaction_id,
        risk_score=min(base_score + FALLBACK_SAFETY_MARGIN, 100),
        risk_level=RiskLevel.MEDIUM,
        confidence=FALLBACK_CONFIDENCE,
        recommendation=Recommendation.REVIEW,
        risk_factors=breakdown,
        reasoning=[f"Risk assessment unavailable ({error}) - using rule-based assessment"]
        + [f.description for f in breakdown if f.score > 0],
        source=AssessmentSource.FALLBACK,
        model_version="fallback-rules",
        assessed_at=now or datetime.now(timezone.utc),
    )
