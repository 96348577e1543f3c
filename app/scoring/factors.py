"""
Fraud Risk Model — 5 Factor Definitions

Each factor:
  1. Takes raw input from the transaction context
  2. Maps it to a bin
  3. Returns a raw score (0-100 scale) for that bin

Weights are applied in the engine, not here.

Convention: HIGHER score = HIGHER risk.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

DEFAULT_AVERAGE_AMOUNT = 200.0
DEFAULT_PEAK_HOURS = ("14:00-16:00", "18:00-20:00")
DEFAULT_REWARD_RANGE = (3.0, 7.0)


@dataclass(frozen=True)
class FactorResult:
    factor_name: str
    raw_value: str
    description: str
    score: float


# ═══════════════════════════════════════════════════════════════
# 1. AMOUNT ANOMALY  (weight = 0.25)
#    ratio = amount / business average transaction amount
# ═══════════════════════════════════════════════════════════════
def score_amount_anomaly(amount: float, average_amount: Optional[float] = None) -> FactorResult:
    avg = average_amount or DEFAULT_AVERAGE_AMOUNT
    ratio = amount / avg
    desc = f"Transaction amount {ratio:.1f}x average"

    if ratio >= 5:
        return FactorResult("amount_anomaly", f"{ratio:.2f}", desc, 40.0)
    elif ratio >= 3:
        return FactorResult("amount_anomaly", f"{ratio:.2f}", desc, 25.0)
    elif ratio >= 2:
        return FactorResult("amount_anomaly", f"{ratio:.2f}", desc, 15.0)
    elif ratio < 0.1:
        # anomalously tiny
        return FactorResult("amount_anomaly", f"{ratio:.2f}", desc, 20.0)
    else:
        return FactorResult("amount_anomaly", f"{ratio:.2f}", desc, 0.0)


# ═══════════════════════════════════════════════════════════════
# 2. TIME PATTERN  (weight = 0.15)
#    Peak windows are "HH:MM-HH:MM", start inclusive, end exclusive
# ═══════════════════════════════════════════════════════════════
def _minute_of_day(clock: str) -> int:
    hours, _, minutes = clock.strip().partition(":")
    return int(hours) * 60 + int(minutes or 0)


def is_peak_hour(hour: int, peak_hours: Sequence[str], minute: int = 0) -> bool:
    at = hour * 60 + minute
    for window in peak_hours:
        start, end = (_minute_of_day(part) for part in window.split("-"))
        if start <= at < end:
            return True
    return False


def score_time_pattern(hour: int, peak_hours: Optional[Sequence[str]] = None, minute: int = 0) -> FactorResult:
    peaks = peak_hours or DEFAULT_PEAK_HOURS

    if is_peak_hour(hour, peaks, minute):
        return FactorResult("time_pattern", f"{hour:02d}h", "Peak hours transaction", 0.0)
    if hour < 6 or hour > 22:
        return FactorResult("time_pattern", f"{hour:02d}h", "Outside normal business hours", 25.0)
    return FactorResult("time_pattern", f"{hour:02d}h", "Off-peak hours transaction", 10.0)


# ═══════════════════════════════════════════════════════════════
# 3. REWARD CONSISTENCY  (weight = 0.20)
# ═══════════════════════════════════════════════════════════════
def score_reward_consistency(
    reward_percentage: float,
    typical_range: Optional[tuple[float, float]] = None,
) -> FactorResult:
    low, high = typical_range or DEFAULT_REWARD_RANGE
    raw = f"{reward_percentage:.2f}%"

    if reward_percentage >= 10:
        return FactorResult("reward_consistency", raw, "Reward at ceiling (>=10%)", 30.0)
    if reward_percentage < low or reward_percentage > high:
        return FactorResult("reward_consistency", raw, "Reward outside typical range", 15.0)
    return FactorResult("reward_consistency", raw, "Reward within normal range", 0.0)


# ═══════════════════════════════════════════════════════════════
# 4. QUALITY-SCORE EXTREMITY  (weight = 0.20)
#    Both suspiciously perfect and suspiciously poor feedback raise risk
# ═══════════════════════════════════════════════════════════════
def score_customer_behavior(quality_score: int) -> FactorResult:
    desc = f"Quality score: {quality_score}"
    if quality_score == 100:
        return FactorResult("customer_behavior", str(quality_score), desc, 25.0)
    elif quality_score > 95:
        return FactorResult("customer_behavior", str(quality_score), desc, 15.0)
    elif quality_score < 30:
        return FactorResult("customer_behavior", str(quality_score), desc, 20.0)
    return FactorResult("customer_behavior", str(quality_score), desc, 0.0)


# ═══════════════════════════════════════════════════════════════
# 5. CUSTOMER HISTORY  (weight = 0.20)
#    No history supplied → factor contributes nothing
# ═══════════════════════════════════════════════════════════════
def score_customer_history(
    total_transactions: Optional[int],
    fraud_history: bool = False,
) -> FactorResult:
    if total_transactions is None:
        return FactorResult("frequency_analysis", "N/A", "No customer history", 0.0)

    desc = f"Customer has {total_transactions} previous transactions"
    if fraud_history:
        return FactorResult("frequency_analysis", str(total_transactions), "Customer has fraud history", 40.0)
    if total_transactions == 0:
        return FactorResult("frequency_analysis", "0", desc, 20.0)
    if total_transactions == 1:
        return FactorResult("frequency_analysis", "1", desc, 10.0)
    return FactorResult("frequency_analysis", str(total_transactions), desc, 0.0)
