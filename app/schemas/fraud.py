"""
Fraud assessment payloads: the transaction context fed to the risk engine
and the advisory assessment it returns.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Ordering used to rank pattern detections (higher = more severe)
RISK_LEVEL_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class Recommendation(str, Enum):
    APPROVE = "approve"
    REVIEW = "review"
    REJECT = "reject"
    INVESTIGATE = "investigate"


class AssessmentSource(str, Enum):
    RULES = "rules"
    PROVIDER = "provider"
    FALLBACK = "fallback"


# ── Context ──

class CustomerHistory(BaseModel):
    total_transactions: int = Field(ge=0)
    average_amount: float = Field(default=0.0, ge=0)
    last_transaction_days_ago: Optional[int] = Field(default=None, ge=0)
    fraud_history: bool = False


class BusinessContext(BaseModel):
    average_transaction_amount: float = Field(default=200.0, gt=0)
    peak_hours: list[str] = Field(default_factory=lambda: ["14:00-16:00", "18:00-20:00"])
    typical_reward_range: tuple[float, float] = (3.0, 7.0)
    recent_fraud_incidents: int = Field(default=0, ge=0)


class TransactionContext(BaseModel):
    """Everything the risk engine needs about one transaction."""
    transaction_id: str
    amount_sek: float = Field(ge=0)
    transaction_date: datetime
    store_code: str = ""
    quality_score: int = Field(ge=0, le=100)
    reward_percentage: float = Field(default=0.0, ge=0, le=15)
    reward_amount_sek: float = Field(default=0.0, ge=0)
    phone_last4: str = "**00"
    customer_history: Optional[CustomerHistory] = None
    business_context: Optional[BusinessContext] = None


# ── Output ──

class RiskFactor(BaseModel):
    """Individual factor contribution to the risk score."""
    factor_name: str
    score: float = Field(description="Raw factor score 0-100")
    weight: float
    weighted_score: float
    description: str


class PatternDetection(BaseModel):
    pattern_type: str
    confidence: float = Field(ge=0, le=1)
    instances: int
    time_span_hours: float
    affected_transactions: list[str]
    risk_impact: RiskLevel


class FraudAssessment(BaseModel):
    """Advisory snapshot; never authoritative over a verification result."""
    transaction_id: str
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    confidence: float = Field(ge=0, le=1)
    recommendation: Recommendation
    risk_factors: list[RiskFactor] = []
    patterns: list[PatternDetection] = []
    reasoning: list[str] = []
    source: AssessmentSource = AssessmentSource.RULES
    model_version: str = "rules-1.0"
    assessed_at: datetime

    @property
    def requires_immediate_action(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) and self.confidence > 0.8
