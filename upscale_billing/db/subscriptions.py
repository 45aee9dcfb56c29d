#!/usr/bin/env python3
"""
Subscriptions Database Module
Persists the provider subscription record. price_id is always the currently billed
price; scheduled_price_id holds a pending downgrade until Stripe's schedule fires.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from upscale_billing.config.supabase_config import execute_with_retry
from upscale_billing.db.postgrest_schema import is_missing_column_error
from upscale_billing.utils.exceptions import PersistenceWriteError
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"

# Columns added by later migrations; dropped from the write when the schema lacks them
_OPTIONAL_COLUMNS = ("trial_end", "canceled_at")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def get_subscription(subscription_id: str, columns: str = "*") -> dict[str, Any] | None:
    def _get(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE).select(columns).eq("id", subscription_id).limit(1).execute()
        )

    result = execute_with_retry(_get, operation_name="get_subscription")
    if result.data:
        return result.data[0]
    return None


def upsert_subscription(record: dict[str, Any]) -> dict[str, Any]:
    """
    Insert or update a subscription row keyed by its Stripe id.

    If the database rejects the write because an optional column is missing
    from its schema, the write is retried once with the reduced column set.

    Returns:
        The payload that was written
    """
    payload = {**record, "updated_at": _now_iso()}

    def _upsert(data):
        return lambda client: client.table(SUBSCRIPTIONS_TABLE).upsert(data).execute()

    try:
        execute_with_retry(_upsert(payload), operation_name="upsert_subscription")
        return payload
    except Exception as e:
        if not is_missing_column_error(e):
            logger.error(f"Error upserting subscription {sanitize_for_logging(record.get('id'))}: {e}", exc_info=True)
            raise PersistenceWriteError(f"Failed to upsert subscription: {e}") from e
        logger.warning(
            f"Subscription upsert hit a schema mismatch ({e}); retrying without "
            f"{', '.join(_OPTIONAL_COLUMNS)}"
        )

    reduced = {k: v for k, v in payload.items() if k not in _OPTIONAL_COLUMNS}
    try:
        execute_with_retry(_upsert(reduced), operation_name="upsert_subscription_reduced")
    except Exception as e:
        logger.error(f"Reduced subscription upsert failed: {e}", exc_info=True)
        raise PersistenceWriteError(f"Failed to upsert subscription: {e}") from e
    return reduced


def mark_subscription_canceled(subscription_id: str) -> None:
    now = _now_iso()

    def _cancel(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE)
            .update({"status": "canceled", "canceled_at": now, "updated_at": now})
            .eq("id", subscription_id)
            .execute()
        )

    try:
        execute_with_retry(_cancel, operation_name="mark_subscription_canceled")
    except Exception as e:
        logger.error(f"Error canceling subscription {sanitize_for_logging(subscription_id)}: {e}", exc_info=True)
        raise PersistenceWriteError(f"Failed to cancel subscription: {e}") from e


def apply_scheduled_change(subscription_id: str, price_id: str) -> None:
    """Commit the billed price and clear the schedule fields."""

    def _apply(client):
        return (
            client.table(SUBSCRIPTIONS_TABLE)
            .update(
                {
                    "price_id": price_id,
                    "scheduled_price_id": None,
                    "scheduled_change_date": None,
                    "updated_at": _now_iso(),
                }
            )
            .eq("id", subscription_id)
            .execute()
        )

    try:
        execute_with_retry(_apply, operation_name="apply_scheduled_change")
    except Exception as e:
        logger.error(f"Error applying scheduled change to {sanitize_for_logging(subscription_id)}: {e}", exc_info=True)
        raise PersistenceWriteError(f"Failed to apply scheduled change: {e}") from e
