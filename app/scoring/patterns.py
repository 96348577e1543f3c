"""
Cross-transaction fraud pattern detection.

Runs over a batch/session transaction window, independently of the
per-transaction risk score:
  1. Rapid identical transactions   (critical, 0.95)
  2. Amount limit testing           (high,     0.85)
  3. Perfect-score clustering       (medium,   0.75)
  4. Same-customer rapid burst      (high,     0.90)

Every match is returned, ranked by risk impact (then confidence) descending.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Protocol, Sequence

import structlog

from app.schemas.fraud import RISK_LEVEL_RANK, PatternDetection, RiskLevel

logger = structlog.get_logger()

BURST_WINDOW = timedelta(minutes=60)
RAPID_MIN_COUNT = 3
LIMIT_TEST_AMOUNTS = (999.99, 499.99, 999.90, 1999.99)
LIMIT_TEST_TOLERANCE = 0.1
LIMIT_TEST_MIN_COUNT = 2
PERFECT_SCORE_MIN_COUNT = 5


class PatternTransaction(Protocol):
    transaction_id: str
    amount_sek: object
    transaction_date: object
    quality_score: int
    phone_last4: str


def detect_patterns(transactions: Sequence[PatternTransaction]) -> list[PatternDetection]:
    patterns: list[PatternDetection] = []
    patterns.extend(detect_rapid_identical(transactions))
    patterns.extend(detect_amount_limit_testing(transactions))
    patterns.extend(detect_perfect_score_clustering(transactions))
    patterns.extend(detect_same_customer_bursts(transactions))

    patterns.sort(key=lambda p: (RISK_LEVEL_RANK[p.risk_impact], p.confidence), reverse=True)

    if patterns:
        logger.info(
            "fraud_patterns_detected",
            transactions=len(transactions),
            patterns=[p.pattern_type for p in patterns],
        )
    return patterns


def detect_rapid_identical(transactions: Sequence[PatternTransaction]) -> list[PatternDetection]:
    """>=3 transactions with identical (amount, quality_score) inside 60 minutes."""
    groups: dict[tuple[float, int], list[PatternTransaction]] = defaultdict(list)
    for tx in transactions:
        groups[(round(float(tx.amount_sek), 2), tx.quality_score)].append(tx)

    found = []
    for group in groups.values():
        for cluster in _bursts(group, RAPID_MIN_COUNT):
            found.append(_detection(
                "rapid_identical_transactions", 0.95, RiskLevel.CRITICAL, cluster,
            ))
    return found


def detect_amount_limit_testing(transactions: Sequence[PatternTransaction]) -> list[PatternDetection]:
    """>=2 transactions sitting just under common limit amounts."""
    probes = [
        tx for tx in transactions
        if any(abs(float(tx.amount_sek) - limit) < LIMIT_TEST_TOLERANCE for limit in LIMIT_TEST_AMOUNTS)
    ]
    if len(probes) < LIMIT_TEST_MIN_COUNT:
        return []
    return [_detection("amount_limit_testing", 0.85, RiskLevel.HIGH, _by_time(probes))]


def detect_perfect_score_clustering(transactions: Sequence[PatternTransaction]) -> list[PatternDetection]:
    perfect = [tx for tx in transactions if tx.quality_score == 100]
    if len(perfect) < PERFECT_SCORE_MIN_COUNT:
        return []
    return [_detection("perfect_score_clustering", 0.75, RiskLevel.MEDIUM, _by_time(perfect))]


def detect_same_customer_bursts(transactions: Sequence[PatternTransaction]) -> list[PatternDetection]:
    """>=3 transactions from the same truncated phone identifier inside 60 minutes."""
    groups: dict[str, list[PatternTransaction]] = defaultdict(list)
    for tx in transactions:
        groups[tx.phone_last4].append(tx)

    found = []
    for group in groups.values():
        for cluster in _bursts(group, RAPID_MIN_COUNT):
            found.append(_detection(
                "same_customer_rapid_transactions", 0.90, RiskLevel.HIGH, cluster,
            ))
    return found


# ── helpers ──

def _by_time(transactions: Sequence[PatternTransaction]) -> list[PatternTransaction]:
    return sorted(transactions, key=lambda tx: tx.transaction_date)


def _bursts(
    transactions: Sequence[PatternTransaction],
    min_count: int,
    window: timedelta = BURST_WINDOW,
) -> list[list[PatternTransaction]]:
    """
    Clusters of transactions belonging to some `window`-wide run of
    >= min_count. Every start position is tried; qualifying runs that share
    a transaction are merged, so a cluster may span more than `window` but
    no qualifying transaction is left out.
    """
    ordered = _by_time(transactions)
    clusters: list[list[PatternTransaction]] = []
    first = last = None  # index range of the cluster being built

    j = 0
    for i in range(len(ordered)):
        j = max(j, i)
        while j + 1 < len(ordered) and ordered[j + 1].transaction_date - ordered[i].transaction_date <= window:
            j += 1
        if j - i + 1 < min_count:
            continue
        if first is not None and i <= last:
            last = max(last, j)
        else:
            if first is not None:
                clusters.append(ordered[first:last + 1])
            first, last = i, j

    if first is not None:
        clusters.append(ordered[first:last + 1])
    return clusters


def _time_span_hours(transactions: Sequence[PatternTransaction]) -> float:
    times = [tx.transaction_date for tx in transactions]
    return round((max(times) - min(times)).total_seconds() / 3600, 4)


def _detection(
    pattern_type: str,
    confidence: float,
    impact: RiskLevel,
    transactions: Sequence[PatternTransaction],
) -> PatternDetection:
    return PatternDetection(
        pattern_type=pattern_type,
        confidence=confidence,
        instances=len(transactions),
        time_span_hours=_time_span_hours(transactions),
        affected_transactions=[tx.transaction_id for tx in transactions],
        risk_impact=impact,
    )
