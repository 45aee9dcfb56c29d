#!/usr/bin/env python3
"""
Webhook recovery job
Re-processes webhook events stuck in `failed` by re-fetching them from Stripe.

Run on a schedule through POST /cron/recover-webhooks. Each event gets at most
WEBHOOK_MAX_RETRIES attempts before it is parked as unrecoverable.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import stripe

from upscale_billing.config.config import Config
from upscale_billing.db import webhook_events
from upscale_billing.schemas.billing import RecoveryItem, RecoveryReport, WebhookOutcome
from upscale_billing.services import prometheus_metrics, stripe_adapter
from upscale_billing.services.webhook_dispatcher import WebhookDispatcher
from upscale_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


def _is_missing_event(error: Exception) -> bool:
    if isinstance(error, stripe.InvalidRequestError):
        code = getattr(error, "code", None)
        return code == "resource_missing" or "no such event" in str(error).lower()
    return False


def recover_failed_webhooks(
    dispatcher: WebhookDispatcher,
    max_retries: int | None = None,
    batch_size: int | None = None,
    event_fetcher: Callable[[str], Any] = stripe.Event.retrieve,
) -> RecoveryReport:
    max_retries = max_retries if max_retries is not None else Config.WEBHOOK_MAX_RETRIES
    batch_size = batch_size if batch_size is not None else Config.WEBHOOK_RECOVERY_BATCH_SIZE

    candidates = webhook_events.list_retryable_failed_events(max_retries, batch_size)
    report = RecoveryReport(processed_at=datetime.now(UTC))
    logger.info(f"Webhook recovery: {len(candidates)} failed events eligible for retry")

    for row in candidates:
        event_id = row["event_id"]
        retry_count = int(row.get("retry_count") or 0) + 1

        if not webhook_events.reclaim_failed_event(event_id):
            logger.info(f"Event {event_id} was picked up by another delivery; skipping")
            continue

        report.processed += 1
        status, error = _retry_event(dispatcher, event_id, retry_count, max_retries, event_fetcher)

        webhook_events.record_retry_attempt(event_id, retry_count, status, error)
        prometheus_metrics.webhook_recovery_attempts.labels(result=status).inc()

        if status == webhook_events.STATUS_COMPLETED:
            report.recovered += 1
        elif status == webhook_events.STATUS_UNRECOVERABLE:
            report.unrecoverable += 1
        else:
            report.failed += 1

        report.results.append(
            RecoveryItem(
                event_id=event_id,
                event_type=row.get("event_type"),
                status=status,
                retry_count=retry_count,
                error=error,
            )
        )

    logger.info(
        f"Webhook recovery finished: processed={report.processed} recovered={report.recovered} "
        f"failed={report.failed} unrecoverable={report.unrecoverable}"
    )
    return report


def _retry_event(
    dispatcher: WebhookDispatcher,
    event_id: str,
    retry_count: int,
    max_retries: int,
    event_fetcher: Callable[[str], Any],
) -> tuple[str, str | None]:
    """Returns the status to record and the error message, if any."""
    exhausted_status = (
        webhook_events.STATUS_UNRECOVERABLE if retry_count >= max_retries else webhook_events.STATUS_FAILED
    )

    try:
        stripe_event = event_fetcher(event_id)
    except Exception as e:
        if _is_missing_event(e):
            logger.warning(f"Event {event_id} no longer exists in Stripe; marking unrecoverable")
            return webhook_events.STATUS_UNRECOVERABLE, f"Event not found in Stripe: {e}"
        logger.error(f"Failed to fetch event {event_id} from Stripe: {e}", exc_info=True)
        return exhausted_status, str(e)

    routing = dispatcher.route(stripe_adapter.parse_event(stripe_event))

    if routing.outcome is WebhookOutcome.COMPLETED:
        logger.info(f"Recovered webhook event {event_id} on attempt {retry_count}")
        return webhook_events.STATUS_COMPLETED, None
    if routing.outcome is WebhookOutcome.UNRECOVERABLE:
        return webhook_events.STATUS_UNRECOVERABLE, routing.message

    if routing.error is not None:
        capture_payment_error(
            routing.error,
            operation="webhook_recovery",
            details={"event_id": event_id, "retry_count": retry_count},
        )
    return exhausted_status, routing.message
