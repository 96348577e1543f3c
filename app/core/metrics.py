"""
Prometheus metrics for the verification lifecycle.
Exposed on /metrics by app.main.
"""
from prometheus_client import Counter, Histogram

VERIFICATIONS_RECORDED = Counter(
    "verification_results_recorded_total",
    "Verification results written, by decision and origin",
    ["decision", "origin"],
)

SESSION_RESOLUTIONS = Counter(
    "verification_session_resolutions_total",
    "Sessions resolved by the deadline scheduler, by outcome",
    ["outcome"],
)

ASSESSMENT_FALLBACKS = Counter(
    "risk_assessment_fallbacks_total",
    "Advisory risk lookups that fell back to the rule-based default",
    ["reason"],
)

CONCURRENT_CONFLICTS = Counter(
    "verification_concurrent_conflicts_total",
    "Optimistic-lock conflicts on session writes",
    ["component"],
)

SCHEDULER_PASS_SECONDS = Histogram(
    "deadline_scheduler_pass_seconds",
    "Duration of one deadline reconciliation pass",
)
