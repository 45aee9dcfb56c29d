#!/usr/bin/env python3
"""
Profiles Database Module
Customer lookup and the subscription fields the webhook processor owns on a profile.
"""

import logging
from typing import Any

from upscale_billing.config.supabase_config import execute_with_retry
from upscale_billing.utils.exceptions import PersistenceWriteError
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
SUBSCRIPTION_STATUSES = frozenset({"none", "trialing", "active", "past_due", "canceled"})

_PROFILE_COLUMNS = (
    "id, email, stripe_customer_id, subscription_status, subscription_tier, "
    "subscription_credits_balance, purchased_credits_balance"
)


def get_profile_by_customer_id(customer_id: str | None) -> dict[str, Any] | None:
    """Find the profile linked to a Stripe customer id."""
    if not customer_id:
        return None

    def _lookup(client):
        return (
            client.table(PROFILES_TABLE)
            .select(_PROFILE_COLUMNS)
            .eq("stripe_customer_id", customer_id)
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_lookup, operation_name="get_profile_by_customer_id")
    if result.data:
        return result.data[0]
    return None


def _update_profile(user_id: str, patch: dict[str, Any], operation_name: str) -> None:
    def _update(client):
        return client.table(PROFILES_TABLE).update(patch).eq("id", user_id).execute()

    try:
        execute_with_retry(_update, operation_name=operation_name)
    except Exception as e:
        logger.error(
            f"Error updating profile {sanitize_for_logging(user_id)} ({operation_name}): {e}",
            exc_info=True,
        )
        raise PersistenceWriteError(f"Failed to update profile {user_id}: {e}") from e


def set_subscription_state(user_id: str, status: str, tier: str | None = None) -> None:
    """Write the profile's subscription status, and the tier key when known."""
    if status not in SUBSCRIPTION_STATUSES:
        raise ValueError(f"Unsupported subscription status: {status}")

    patch: dict[str, Any] = {"subscription_status": status}
    if tier is not None:
        patch["subscription_tier"] = tier
    _update_profile(user_id, patch, "set_subscription_state")


def link_stripe_customer(user_id: str, customer_id: str) -> None:
    _update_profile(user_id, {"stripe_customer_id": customer_id}, "link_stripe_customer")


def total_balance(profile: dict[str, Any]) -> int:
    return int(profile.get("subscription_credits_balance") or 0) + int(
        profile.get("purchased_credits_balance") or 0
    )
