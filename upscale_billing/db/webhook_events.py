#!/usr/bin/env python3
"""
Webhook Event Ledger
Claims Stripe events exactly once and tracks their processing lifecycle.

Lifecycle: processing -> completed | failed | unrecoverable.
A failed event may be re-claimed by a later delivery (or the recovery cron);
completed and unrecoverable are terminal.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from upscale_billing.config.supabase_config import execute_with_retry
from upscale_billing.db.postgrest_schema import is_unique_violation
from upscale_billing.utils.exceptions import PersistenceWriteError
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "webhook_events"

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_UNRECOVERABLE = "unrecoverable"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_UNRECOVERABLE})

_missing_table_warning_logged = False


@dataclass(frozen=True)
class ClaimResult:
    is_new: bool
    existing_status: str | None = None
    is_retry: bool = False


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the webhook_events table is missing
    from the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if WEBHOOK_EVENTS_TABLE in message or "PGRST205" in message:
        logger.warning(
            "webhook_events table is unavailable in Supabase (migrations not applied or schema "
            "cache stale). Apply the webhook_events migration, then run "
            "NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def reclaim_failed_event(event_id: str) -> bool:
    """Move a failed event back to processing; only one concurrent caller gets the row."""

    def _reclaim(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .update({"status": STATUS_PROCESSING, "error_message": None})
            .eq("event_id", event_id)
            .eq("status", STATUS_FAILED)
            .execute()
        )

    result = execute_with_retry(_reclaim, operation_name="reclaim_webhook_event")
    return bool(result.data)


def claim_event(event_id: str, event_type: str, payload: dict[str, Any] | None) -> ClaimResult:
    """
    Atomically claim a webhook event for processing.

    The insert either creates the row in `processing` or fails on the unique
    event_id constraint. A conflict is not an error: it means another delivery
    owns (or owned) the event. Conflicts on a `failed` row are re-claimed so a
    redelivery can finish the work.

    Raises:
        Exception: any store error other than the uniqueness conflict, so the
            caller can decide to run in degraded mode.
    """
    safe_id = sanitize_for_logging(event_id)

    def _insert(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .insert(
                {
                    "event_id": event_id,
                    "event_type": event_type,
                    "status": STATUS_PROCESSING,
                    "payload": payload or {},
                }
            )
            .execute()
        )

    try:
        execute_with_retry(_insert, operation_name="claim_webhook_event")
        logger.info(f"Webhook event {safe_id} claimed for processing")
        return ClaimResult(is_new=True)
    except Exception as e:
        if not is_unique_violation(e):
            _maybe_log_missing_table_hint(e)
            raise

    existing = get_event(event_id)
    existing_status = existing.get("status") if existing else STATUS_PROCESSING

    if existing_status == STATUS_FAILED and reclaim_failed_event(event_id):
        logger.info(f"Webhook event {safe_id} previously failed, re-claimed for retry")
        return ClaimResult(is_new=True, existing_status=STATUS_FAILED, is_retry=True)

    logger.info(f"Webhook event {safe_id} already exists with status: {existing_status}")
    return ClaimResult(is_new=False, existing_status=existing_status)


def mark_event_completed(event_id: str) -> None:
    """
    Mark a claimed event completed.

    Raises PersistenceWriteError when the write does not land: an event left in
    `processing` looks unfinished, so the delivery has to be retried.
    """

    def _complete(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .update({"status": STATUS_COMPLETED, "completed_at": _now_iso()})
            .eq("event_id", event_id)
            .eq("status", STATUS_PROCESSING)
            .execute()
        )

    try:
        result = execute_with_retry(_complete, operation_name="complete_webhook_event")
    except Exception as e:
        logger.error(f"Failed to mark event {sanitize_for_logging(event_id)} as completed: {e}", exc_info=True)
        raise PersistenceWriteError(f"Database error marking event completed: {e}") from e

    if not result.data:
        raise PersistenceWriteError(
            f"Event {event_id} was not in processing state when marking it completed"
        )


def _mark_event_finished_with_error(event_id: str, status: str, error_message: str) -> bool:
    """Move a processing event to `status`; rows already finished are left alone."""

    def _update(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .update(
                {
                    "status": status,
                    "error_message": error_message,
                    "completed_at": _now_iso(),
                }
            )
            .eq("event_id", event_id)
            .eq("status", STATUS_PROCESSING)
            .execute()
        )

    try:
        result = execute_with_retry(_update, operation_name=f"mark_webhook_event_{status}")
    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(
            f"Failed to mark event {sanitize_for_logging(event_id)} as {status}: {e}", exc_info=True
        )
        return False

    if not result.data:
        logger.warning(f"Event {sanitize_for_logging(event_id)} is not processing; left as is instead of {status}")
        return False
    return True


def mark_event_failed(event_id: str, error_message: str) -> bool:
    """Best-effort: record a retryable failure. Returns False when the write did not land."""
    return _mark_event_finished_with_error(event_id, STATUS_FAILED, error_message)


def mark_event_unrecoverable(event_id: str, error_message: str) -> bool:
    """Best-effort: record that retrying this event can never succeed."""
    return _mark_event_finished_with_error(event_id, STATUS_UNRECOVERABLE, error_message)


def get_event(event_id: str) -> dict[str, Any] | None:
    """
    Get a webhook event record

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        Event row if found, None otherwise
    """

    def _get_event(client):
        return client.table(WEBHOOK_EVENTS_TABLE).select("*").eq("event_id", event_id).execute()

    result = execute_with_retry(_get_event, operation_name="get_webhook_event")
    if result.data:
        return result.data[0]
    return None


def list_retryable_failed_events(max_retries: int, limit: int) -> list[dict[str, Any]]:
    """Failed events that still have retry budget, oldest first."""

    def _list(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .select("event_id, event_type, retry_count, error_message")
            .eq("status", STATUS_FAILED)
            .lt("retry_count", max_retries)
            .order("created_at")
            .limit(limit)
            .execute()
        )

    result = execute_with_retry(_list, operation_name="list_failed_webhook_events")
    return result.data or []


def record_retry_attempt(
    event_id: str,
    retry_count: int,
    status: str,
    error_message: str | None = None,
) -> None:
    """Persist the outcome of one recovery attempt."""
    patch: dict[str, Any] = {
        "status": status,
        "retry_count": retry_count,
        "last_retry_at": _now_iso(),
        "error_message": error_message,
    }
    if status in TERMINAL_STATUSES:
        patch["completed_at"] = _now_iso()

    def _update(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .update(patch)
            .eq("event_id", event_id)
            .eq("status", STATUS_PROCESSING)
            .execute()
        )

    execute_with_retry(_update, operation_name="record_webhook_retry")


def cleanup_old_events(days: int = 90) -> int:
    """
    Delete terminal webhook events older than `days`.

    Returns:
        Number of events deleted
    """
    cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

    def _cleanup(client):
        return (
            client.table(WEBHOOK_EVENTS_TABLE)
            .delete()
            .in_("status", sorted(TERMINAL_STATUSES))
            .lt("created_at", cutoff)
            .execute()
        )

    try:
        result = execute_with_retry(_cleanup, operation_name="cleanup_webhook_events")
    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error cleaning up old webhook events: {e}", exc_info=True)
        return 0

    count = len(result.data) if result.data else 0
    logger.info(f"Cleaned up {count} old webhook events (older than {days} days)")
    return count
