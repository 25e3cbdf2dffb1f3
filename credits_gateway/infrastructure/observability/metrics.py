"""Prometheus metrics for monitoring access decisions, credit flow, and ledger health"""

from decimal import Decimal

from prometheus_client import Counter, Histogram

# Decision metrics
authorization_counter = Counter(
    "credits_authorization_total",
    "Access gate decisions",
    ["decision", "feature"],  # allow | warn | block | ban
)

credits_charged_counter = Counter(
    "credits_charged_total",
    "Credits debited for feature usage",
    ["feature"],
)

credits_granted_counter = Counter(
    "credits_granted_total",
    "Credits added to accounts",
    ["kind"],  # purchase | bonus | refund
)

# Ledger metrics
ledger_retry_counter = Counter(
    "ledger_retries_total",
    "Ledger operations retried after a transient datastore error",
    ["operation"],
)

ledger_failure_counter = Counter(
    "ledger_failures_total",
    "Ledger operations that exhausted their retry budget",
    ["operation"],
)

reconcile_shortfall_counter = Counter(
    "reconcile_shortfall_credits_total",
    "Credits absorbed because the account could not cover the actual cost",
)

# Risk engine metrics
detection_unavailable_counter = Counter(
    "risk_detection_unavailable_total",
    "Risk assessments that fell back because signals were unavailable",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_authorization(decision: str, feature: str, charged: Decimal) -> None:
    """Record decision metrics for monitoring block rates and credit burn"""
    authorization_counter.labels(decision=decision, feature=feature).inc()
    if charged > 0:
        credits_charged_counter.labels(feature=feature).inc(float(charged))
