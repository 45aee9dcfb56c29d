#!/usr/bin/env python3
"""
Credit Ledger
Thin wrappers around the atomic stored procedures that mutate credit balances.

Every balance change happens inside Postgres (add_subscription_credits,
add_purchased_credits, expire_subscription_credits, reset_subscription_credits,
clawback_credits_from_transaction), never as read-modify-write in Python, so two
webhooks for the same user cannot lose an update. Each procedure appends the
matching credit_transactions row.

Grants and resets are keyed by ref_id: the procedures apply a ref at most once
per user and report `applied = false` for a repeat, so a redelivered or retried
webhook can call them again safely.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from upscale_billing.config.supabase_config import execute_with_retry
from upscale_billing.services import prometheus_metrics
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

CreditPool = Literal["subscription", "purchased"]
ExpirationReason = Literal["cycle_end", "rolling_window", "subscription_canceled"]

_GRANT_PROCEDURES: dict[str, str] = {
    "subscription": "add_subscription_credits",
    "purchased": "add_purchased_credits",
}


@dataclass(frozen=True)
class ClawbackResult:
    success: bool
    credits_clawed_back: int = 0
    new_balance: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class BalanceChange:
    balance: int
    applied: bool


def _scalar(data: Any) -> Any:
    """RPC scalars come back bare, or wrapped in a one-row list by some PostgREST versions."""
    if isinstance(data, list):
        if not data:
            return None
        data = data[0]
        if isinstance(data, dict) and len(data) == 1:
            return next(iter(data.values()))
    return data


def _first_row(data: Any) -> dict[str, Any]:
    rows = data if isinstance(data, list) else [data]
    return rows[0] if rows and isinstance(rows[0], dict) else {}


def _balance_change(data: Any) -> BalanceChange:
    row = _first_row(data)
    return BalanceChange(balance=int(row.get("balance") or 0), applied=bool(row.get("applied")))


def grant_credits(
    user_id: str,
    amount: int,
    ref_id: str,
    description: str,
    pool: CreditPool = "subscription",
    reason: str = "grant",
) -> BalanceChange:
    """
    Add credits to one pool under `ref_id`.

    Returns:
        The pool's balance after the call, and whether this call applied the
        grant (False when `ref_id` had already been granted)

    Raises:
        ValueError: amount is not positive (the procedures reject it too)
        Exception: the RPC failed; callers let it propagate so Stripe retries
    """
    if amount <= 0:
        raise ValueError(f"Credit grant amount must be positive, got {amount}")

    procedure = _GRANT_PROCEDURES[pool]
    params = {
        "target_user_id": user_id,
        "amount": amount,
        "ref_id": ref_id,
        "description": description,
    }

    result = execute_with_retry(
        lambda client: client.rpc(procedure, params).execute(),
        operation_name=procedure,
    )
    change = _balance_change(result.data)

    if not change.applied:
        logger.info(
            f"Grant {sanitize_for_logging(ref_id)} already applied for user {sanitize_for_logging(user_id)}; "
            f"{pool} balance unchanged at {change.balance}"
        )
        return change

    prometheus_metrics.credits_granted.labels(pool=pool, reason=reason).inc(amount)
    logger.info(
        f"Granted {amount} {pool} credits to user {sanitize_for_logging(user_id)} "
        f"(ref: {sanitize_for_logging(ref_id)}, balance: {change.balance})"
    )
    return change


def grant_subscription_credits(
    user_id: str, amount: int, ref_id: str, description: str, reason: str = "grant"
) -> BalanceChange:
    return grant_credits(user_id, amount, ref_id, description, pool="subscription", reason=reason)


def grant_purchased_credits(user_id: str, amount: int, ref_id: str, description: str) -> BalanceChange:
    return grant_credits(user_id, amount, ref_id, description, pool="purchased", reason="pack_purchase")


def expire_subscription_credits(
    user_id: str,
    reason: ExpirationReason,
    subscription_id: str | None,
    cycle_end_date: datetime | None,
    cycle_ref_id: str | None = None,
) -> int:
    """
    Expire the user's subscription-pool balance before a new cycle grant.

    When `cycle_ref_id` (the ref of the grant about to be made) has already been
    granted, the cycle was renewed earlier and nothing is expired.

    Returns:
        The amount expired (0 when the pool was already empty)
    """
    params = {
        "target_user_id": user_id,
        "expiration_reason": reason,
        "subscription_stripe_id": subscription_id,
        "cycle_end_date": cycle_end_date.isoformat() if cycle_end_date else None,
        "cycle_ref_id": cycle_ref_id,
    }
    result = execute_with_retry(
        lambda client: client.rpc("expire_subscription_credits", params).execute(),
        operation_name="expire_subscription_credits",
    )
    expired = int(_scalar(result.data) or 0)
    if expired:
        logger.info(f"Expired {expired} subscription credits for user {sanitize_for_logging(user_id)} ({reason})")
    return expired


def reset_subscription_credits(
    user_id: str,
    amount: int,
    ref_id: str,
    description: str,
    tier: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> BalanceChange:
    """Set the subscription pool to `amount` (and the profile tier) once per `ref_id`."""
    params = {
        "p_target_user_id": user_id,
        "p_new_amount": amount,
        "p_ref_id": ref_id,
        "p_description": description,
        "p_tier": tier,
        "p_metadata": metadata or {},
    }
    result = execute_with_retry(
        lambda client: client.rpc("reset_subscription_credits", params).execute(),
        operation_name="reset_subscription_credits",
    )
    change = _balance_change(result.data)
    if change.applied:
        logger.info(
            f"Reset subscription credits for user {sanitize_for_logging(user_id)} to {amount} "
            f"(ref: {sanitize_for_logging(ref_id)})"
        )
    else:
        logger.info(f"Reset {sanitize_for_logging(ref_id)} already applied; balance unchanged at {change.balance}")
    return change


def clawback_credits(user_id: str, original_ref_id: str, reason: str) -> ClawbackResult:
    """
    Reverse credits granted under `original_ref_id`.

    The procedure sums what was granted under the ref, subtracts what earlier
    clawbacks already took back, and removes at most the remainder, so repeated
    refunds for the same invoice can never claw back more than was granted.
    """
    params = {
        "p_target_user_id": user_id,
        "p_original_ref_id": original_ref_id,
        "p_reason": reason,
    }
    result = execute_with_retry(
        lambda client: client.rpc("clawback_credits_from_transaction", params).execute(),
        operation_name="clawback_credits_from_transaction",
    )

    row = _first_row(result.data)

    clawback = ClawbackResult(
        success=bool(row.get("success")),
        credits_clawed_back=int(row.get("credits_clawed_back") or 0),
        new_balance=row.get("new_balance"),
        error_message=row.get("error_message"),
    )
    if clawback.success and clawback.credits_clawed_back:
        prometheus_metrics.credits_clawed_back.inc(clawback.credits_clawed_back)
    return clawback


def record_audit_entry(
    user_id: str,
    transaction_type: str,
    description: str,
    ref_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    balance_after: int = 0,
) -> None:
    """Append a zero-amount credit_transactions row (trial notices, blocked upgrades)."""
    row = {
        "user_id": user_id,
        "amount": 0,
        "balance_after": balance_after,
        "type": transaction_type,
        "description": description,
        "ref_id": ref_id,
        "metadata": metadata or {},
        "created_at": datetime.now(UTC).isoformat(),
    }
    execute_with_retry(
        lambda client: client.table("credit_transactions").insert(row).execute(),
        operation_name="record_audit_entry",
    )
