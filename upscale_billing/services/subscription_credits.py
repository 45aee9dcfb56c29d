#!/usr/bin/env python3
"""
Subscription credit calculations.

Pure business logic, no database calls: how many credits a plan upgrade,
downgrade, renewal or trial conversion is worth.
"""

from dataclasses import dataclass
from typing import Literal

UpgradeReason = Literal["tier_difference", "farming_blocked", "preserve_balance"]


@dataclass(frozen=True)
class CreditCalculation:
    credits_to_add: int
    reason: UpgradeReason
    # Highest balance a user could legitimately hold on the previous tier
    max_reasonable_balance: float
    is_legitimate: bool


@dataclass(frozen=True)
class RenewalCalculation:
    new_balance: int
    expired_amount: int
    credits_to_add: int
    capped: bool


def calculate_upgrade_credits(
    current_balance: int,
    previous_tier_credits: int,
    new_tier_credits: int,
    farming_multiplier: float = 1.5,
) -> CreditCalculation:
    """
    Credits to grant when a subscription moves to a tier with more cycle credits.

    The grant is the tier difference, never a top-up to the new tier's amount.
    It is withheld when the user already holds more than `farming_multiplier`
    times the previous tier's cycle credits: a balance that high on the old
    tier points at upgrade/downgrade cycling to harvest the difference.

    Raises:
        ValueError: negative inputs, or the new tier is not an upgrade
    """
    if current_balance < 0 or previous_tier_credits < 0 or new_tier_credits < 0:
        raise ValueError("Credit amounts cannot be negative")
    if new_tier_credits <= previous_tier_credits:
        raise ValueError("New tier must have more credits than previous tier (use this for upgrades only)")

    max_reasonable = previous_tier_credits * farming_multiplier
    if current_balance > max_reasonable:
        return CreditCalculation(
            credits_to_add=0,
            reason="farming_blocked",
            max_reasonable_balance=max_reasonable,
            is_legitimate=False,
        )

    return CreditCalculation(
        credits_to_add=new_tier_credits - previous_tier_credits,
        reason="tier_difference",
        max_reasonable_balance=max_reasonable,
        is_legitimate=True,
    )


def calculate_downgrade_credits() -> CreditCalculation:
    """Downgrades never claw back; the user keeps the balance until the next renewal."""
    return CreditCalculation(
        credits_to_add=0,
        reason="preserve_balance",
        max_reasonable_balance=0,
        is_legitimate=True,
    )


def explain(calculation: CreditCalculation, current_balance: int, previous_tier_credits: int, new_tier_credits: int) -> str:
    if calculation.reason == "tier_difference":
        return (
            f"User has {current_balance} credits. Adding {calculation.credits_to_add} "
            f"(tier difference {previous_tier_credits} -> {new_tier_credits}) "
            f"to reach {current_balance + calculation.credits_to_add}."
        )
    if calculation.reason == "farming_blocked":
        return (
            f"Farming detected: user has {current_balance} credits, above the "
            f"{calculation.max_reasonable_balance:g} reasonable for the previous tier "
            f"({previous_tier_credits}). Blocking credit addition."
        )
    return f"Downgrade: user keeps their {current_balance} credits until next renewal."


def calculate_balance_with_expiration(
    current_balance: int,
    new_credits: int,
    expiration_mode: str,
    max_rollover: int | None,
) -> RenewalCalculation:
    """
    Balance after a renewal grant.

    `cycle_end` and `rolling_window` expire the whole current balance and start
    the cycle at `new_credits`; `never` rolls the balance over, capped at
    `max_rollover`. `credits_to_add` is never negative: a balance already above
    the cap is left alone, not reduced.
    """
    if expiration_mode in ("cycle_end", "rolling_window"):
        return RenewalCalculation(
            new_balance=new_credits,
            expired_amount=current_balance,
            credits_to_add=new_credits,
            capped=False,
        )

    uncapped = current_balance + new_credits
    new_balance = min(uncapped, max_rollover) if max_rollover is not None else uncapped
    credits_to_add = max(0, new_balance - current_balance)
    return RenewalCalculation(
        new_balance=max(new_balance, current_balance),
        expired_amount=0,
        credits_to_add=credits_to_add,
        capped=new_balance < uncapped,
    )


def calculate_trial_conversion_credits(
    full_cycle_credits: int,
    subscription_balance: int,
    purchased_balance: int,
    pools: str = "all",
) -> int:
    """
    Shortfall to grant when a trial converts to a paid subscription.

    `pools="all"` measures the user's balance across both pools; `"subscription"`
    only counts the subscription pool, so purchased packs don't reduce the top-up.
    """
    held = subscription_balance if pools == "subscription" else subscription_balance + purchased_balance
    return max(0, full_cycle_credits - held)
