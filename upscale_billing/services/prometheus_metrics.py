"""
Prometheus metrics for the billing webhook processor.

- Webhook deliveries by event type and outcome
- Webhook handling latency
- Credits granted / clawed back
- Upgrade grants blocked by the anti-farming gate
"""

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ==================== Webhook Metrics ====================
webhook_events = Counter(
    "billing_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)

webhook_duration = Histogram(
    "billing_webhook_duration_seconds",
    "Time spent handling a Stripe webhook delivery",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

webhook_recovery_attempts = Counter(
    "billing_webhook_recovery_attempts_total",
    "Failed webhook events re-processed by the recovery job",
    ["result"],
)

# ==================== Credit Metrics ====================
credits_granted = Counter(
    "billing_credits_granted_total",
    "Credits added to user balances",
    ["pool", "reason"],
)

credits_clawed_back = Counter(
    "billing_credits_clawed_back_total",
    "Credits removed from user balances after refunds",
)

upgrade_farming_blocked = Counter(
    "billing_upgrade_farming_blocked_total",
    "Plan upgrades whose credit grant was blocked by the anti-farming gate",
)


def record_webhook(event_type: str, outcome: str, duration: float | None = None) -> None:
    webhook_events.labels(event_type=event_type, outcome=outcome).inc()
    if duration is not None:
        webhook_duration.labels(event_type=event_type).observe(duration)
