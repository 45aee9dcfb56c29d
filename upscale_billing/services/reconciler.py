#!/usr/bin/env python3
"""
Subscription Reconciler
Applies Stripe subscription lifecycle events to the subscription record, the
profile, and the credit ledger.

Handlers do not return an outcome. Returning normally means the event is fully
applied; raising means it is not. WebhookDispatcher.route maps a normal return
to COMPLETED and any exception to RETRYABLE_FAILURE, and the dispatcher's
finalize step records that in the webhook ledger.

Handlers are safe to replay after a partial failure. Every grant and reset
carries a ref_id naming one logical balance change (`<subscription id>`
for the trial grant, `trial_conversion_<sub>`, `upgrade_<sub>_<price>_<period>`,
`invoice_<id>`, `schedule_<id>`), and the ledger procedures apply each ref once.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from upscale_billing.config import plans
from upscale_billing.config.config import Config, WebhookSettings
from upscale_billing.db import credit_ledger, profiles, subscriptions
from upscale_billing.schemas.billing import InvoiceSnapshot, ScheduleSnapshot, SubscriptionSnapshot
from upscale_billing.services import prometheus_metrics, stripe_adapter
from upscale_billing.services.analytics import AnalyticsService, get_analytics_service
from upscale_billing.services.subscription_credits import (
    calculate_balance_with_expiration,
    calculate_downgrade_credits,
    calculate_trial_conversion_credits,
    calculate_upgrade_credits,
    explain,
)
from upscale_billing.utils.exceptions import ProfileNotFoundError
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

FALLBACK_PERIOD_DAYS = 30

# Stripe statuses outside the profile enum
_PROFILE_STATUS_MAP = {
    "incomplete": "none",
    "incomplete_expired": "canceled",
    "unpaid": "past_due",
    "paused": "past_due",
}


def _profile_status(stripe_status: str) -> str:
    if stripe_status in profiles.SUBSCRIPTION_STATUSES:
        return stripe_status
    return _PROFILE_STATUS_MAP.get(stripe_status, "none")


def upgrade_ref_id(subscription: SubscriptionSnapshot) -> str:
    """One upgrade grant per target price per billing period."""
    period = int(subscription.current_period_start.timestamp()) if subscription.current_period_start else "none"
    return f"upgrade_{subscription.id}_{subscription.price_id}_{period}"


def lookup_profile(customer_id: str | None, test_mode: bool) -> dict[str, Any] | None:
    """
    Resolve the profile for a Stripe customer.

    A missing profile is fatal outside test mode: the customer-to-user link may
    still be in flight, so Stripe's retry can succeed later. In test mode the
    event is skipped.
    """
    profile = profiles.get_profile_by_customer_id(customer_id)
    if profile:
        return profile

    if test_mode:
        logger.warning(f"No profile found for customer {sanitize_for_logging(customer_id)} (test mode, skipping)")
        return None
    raise ProfileNotFoundError(customer_id)


class SubscriptionReconciler:
    """State machine over subscription status plus the scheduled-downgrade side channel."""

    def __init__(
        self,
        settings: WebhookSettings,
        analytics: AnalyticsService | None = None,
        farming_multiplier: float | None = None,
        trial_conversion_pools: str | None = None,
        subscription_fetcher=stripe_adapter.fetch_subscription,
    ):
        self.settings = settings
        self.analytics = analytics or get_analytics_service()
        self.farming_multiplier = (
            farming_multiplier if farming_multiplier is not None else Config.UPGRADE_FARMING_MULTIPLIER
        )
        self.trial_conversion_pools = trial_conversion_pools or Config.TRIAL_CONVERSION_POOLS
        self.subscription_fetcher = subscription_fetcher

    # ==================== Subscription created / updated ====================

    def handle_subscription_update(
        self,
        subscription: SubscriptionSnapshot,
        previous_price_id: str | None = None,
    ) -> None:
        profile = lookup_profile(subscription.customer_id, self.settings.test_mode)
        if profile is None:
            return

        user_id = profile["id"]
        previous_status = profile.get("subscription_status")

        existing = subscriptions.get_subscription(subscription.id, "price_id, updated_at")
        db_price_id = existing.get("price_id") if existing else None

        # Only the event's previous attributes mark a plan change. The stored price
        # may lag or lead the event (out-of-order delivery, the synchronous
        # change-plan path), so it is never used to infer one.
        if previous_price_id and db_price_id and db_price_id != previous_price_id:
            logger.warning(
                f"[WEBHOOK_RACE] DB price_id {db_price_id} differs from event previous price "
                f"{previous_price_id} for subscription {subscription.id}; using the event value"
            )

        plan = plans.assert_plan(subscription.price_id)
        subscription = self._ensure_period(subscription)

        subscriptions.upsert_subscription(
            {
                "id": subscription.id,
                "user_id": user_id,
                "status": subscription.status,
                "price_id": subscription.price_id,
                "current_period_start": subscription.current_period_start.isoformat(),
                "current_period_end": subscription.current_period_end.isoformat(),
                "trial_end": subscription.trial_end.isoformat() if subscription.trial_end else None,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "canceled_at": subscription.canceled_at.isoformat() if subscription.canceled_at else None,
            }
        )

        trial = plans.get_trial_config(subscription.price_id)

        if subscription.status == "trialing" and previous_status != "trialing" and trial:
            trial_credits = trial.trial_credits or plan.credits_per_cycle
            credit_ledger.grant_subscription_credits(
                user_id,
                trial_credits,
                ref_id=subscription.id,
                description=f"Trial credits - {plan.name} plan - {trial_credits} credits",
                reason="trial_start",
            )

        elif subscription.status == "active" and previous_status == "trialing" and trial and trial.trial_credits is not None:
            shortfall = calculate_trial_conversion_credits(
                plan.credits_per_cycle,
                int(profile.get("subscription_credits_balance") or 0),
                int(profile.get("purchased_credits_balance") or 0),
                pools=self.trial_conversion_pools,
            )
            if shortfall > 0:
                credit_ledger.grant_subscription_credits(
                    user_id,
                    shortfall,
                    ref_id=f"trial_conversion_{subscription.id}",
                    description=f"Trial converted - {plan.name} plan - {shortfall} credits to full allotment",
                    reason="trial_conversion",
                )
            else:
                logger.info(f"Trial conversion for user {user_id}: balance already at full allotment")

        if previous_price_id and previous_price_id != subscription.price_id and subscription.status == "active":
            self._apply_plan_change(user_id, profile, subscription, plan, previous_price_id)

        profiles.set_subscription_state(user_id, _profile_status(subscription.status), plan.key)

        if subscription.status in ("active", "trialing"):
            self.analytics.track(
                user_id,
                "subscription_created",
                {
                    "plan": plan.key,
                    "amountCents": subscription.price_unit_amount,
                    "billingInterval": subscription.price_interval,
                    "status": subscription.status,
                    "subscriptionId": subscription.id,
                },
            )

    def _ensure_period(self, subscription: SubscriptionSnapshot) -> SubscriptionSnapshot:
        """Never persist a subscription without a billing period."""
        if subscription.has_period:
            return subscription

        try:
            fetched = self.subscription_fetcher(subscription.id)
            if fetched.has_period:
                return subscription.model_copy(
                    update={
                        "current_period_start": fetched.current_period_start,
                        "current_period_end": fetched.current_period_end,
                    }
                )
        except Exception as e:
            logger.warning(f"Could not re-fetch subscription {subscription.id} for its period: {e}")

        now = datetime.now(UTC)
        logger.warning(
            f"Subscription {subscription.id} has no billing period; using a {FALLBACK_PERIOD_DAYS}-day window from now"
        )
        return subscription.model_copy(
            update={
                "current_period_start": now,
                "current_period_end": now + timedelta(days=FALLBACK_PERIOD_DAYS),
            }
        )

    def _apply_plan_change(
        self,
        user_id: str,
        profile: dict[str, Any],
        subscription: SubscriptionSnapshot,
        plan: plans.PlanDescriptor,
        previous_price_id: str,
    ) -> None:
        try:
            previous_plan = plans.assert_plan(previous_price_id)
        except Exception as e:
            logger.error(
                f"[WEBHOOK_ERROR] Failed to resolve previous price ID {previous_price_id} "
                f"for subscription {subscription.id}: {e}; skipping credit adjustment"
            )
            return

        current_balance = profiles.total_balance(profile)
        difference = plan.credits_per_cycle - previous_plan.credits_per_cycle

        if difference == 0:
            logger.info(f"Plan change {previous_plan.key} -> {plan.key} keeps the same credits; nothing to do")
            return

        if difference < 0:
            calculation = calculate_downgrade_credits()
            logger.info(
                f"Downgrade {previous_plan.key} -> {plan.key} for user {user_id}: "
                + explain(calculation, current_balance, previous_plan.credits_per_cycle, plan.credits_per_cycle)
            )
            return

        calculation = calculate_upgrade_credits(
            current_balance,
            previous_plan.credits_per_cycle,
            plan.credits_per_cycle,
            farming_multiplier=self.farming_multiplier,
        )
        explanation = explain(calculation, current_balance, previous_plan.credits_per_cycle, plan.credits_per_cycle)

        if calculation.reason == "farming_blocked":
            prometheus_metrics.upgrade_farming_blocked.inc()
            logger.warning(f"[WEBHOOK_UPGRADE_BLOCKED] user {user_id}, subscription {subscription.id}: {explanation}")
            credit_ledger.record_audit_entry(
                user_id,
                "upgrade_blocked",
                f"Plan upgrade - {previous_plan.name} -> {plan.name} - credit grant blocked",
                ref_id=upgrade_ref_id(subscription),
                metadata={
                    "current_balance": current_balance,
                    "max_reasonable_balance": calculation.max_reasonable_balance,
                    "previous_price_id": previous_price_id,
                    "price_id": subscription.price_id,
                },
                balance_after=current_balance,
            )
            return

        logger.info(f"[WEBHOOK_UPGRADE] user {user_id}: {explanation}")
        credit_ledger.grant_subscription_credits(
            user_id,
            calculation.credits_to_add,
            ref_id=upgrade_ref_id(subscription),
            description=(
                f"Plan upgrade - {previous_plan.name} -> {plan.name} - "
                f"{calculation.credits_to_add} credits (tier difference)"
            ),
            reason="upgrade",
        )

    # ==================== Subscription deleted ====================

    def handle_subscription_deleted(self, subscription: SubscriptionSnapshot) -> None:
        profile = lookup_profile(subscription.customer_id, self.settings.test_mode)
        if profile is None:
            return

        user_id = profile["id"]
        subscriptions.mark_subscription_canceled(subscription.id)
        profiles.set_subscription_state(user_id, "canceled")

        plan = plans.resolve(subscription.price_id)
        self.analytics.track(
            user_id,
            "subscription_canceled",
            {"plan": plan.key if plan else None, "subscriptionId": subscription.id},
        )
        logger.info(f"Subscription {subscription.id} canceled for user {user_id}")

    # ==================== Trial will end ====================

    def handle_trial_will_end(self, subscription: SubscriptionSnapshot) -> None:
        profile = lookup_profile(subscription.customer_id, self.settings.test_mode)
        if profile is None:
            return

        if subscription.trial_end is None:
            logger.info(f"trial_will_end for {subscription.id} without trial_end; nothing to record")
            return

        days_remaining = max(0, (subscription.trial_end - datetime.now(UTC)).days)
        credit_ledger.record_audit_entry(
            profile["id"],
            "trial_warning",
            f"Trial ending in {days_remaining} days",
            ref_id=subscription.id,
            metadata={
                "subscription_id": subscription.id,
                "trial_end_date": subscription.trial_end.isoformat(),
                "days_remaining": days_remaining,
                "email": profile.get("email"),
            },
            balance_after=profiles.total_balance(profile),
        )

    # ==================== Invoices ====================

    def handle_invoice_paid(self, invoice: InvoiceSnapshot) -> None:
        """Renewal: apply the plan's expiration policy, then grant the cycle credits."""
        if not invoice.subscription_id:
            logger.info(f"Invoice {invoice.id} is not for a subscription; skipping")
            return

        profile = lookup_profile(invoice.customer_id, self.settings.test_mode)
        if profile is None:
            return

        user_id = profile["id"]
        plan = plans.assert_plan(invoice.price_id)
        # Shared with the checkout grant for the first invoice; the ledger applies it once
        ref_id = f"invoice_{invoice.id}"

        current_balance = profiles.total_balance(profile)
        renewal = calculate_balance_with_expiration(
            current_balance,
            plan.credits_per_cycle,
            plan.expiration_mode,
            plan.max_rollover,
        )

        expired = 0
        if plan.expiration_mode != "never":
            expired = credit_ledger.expire_subscription_credits(
                user_id,
                plan.expiration_mode,
                invoice.subscription_id,
                invoice.period_end,
                cycle_ref_id=ref_id,
            )

        if renewal.credits_to_add <= 0:
            logger.info(
                f"Skipped renewal grant for user {user_id}: already at max rollover "
                f"({current_balance}/{plan.max_rollover})"
            )
            return

        if plan.expiration_mode != "never":
            note = f"expired {expired}"
        elif renewal.capped:
            note = f"capped at {plan.max_rollover}"
        else:
            note = "rollover"

        credit_ledger.grant_subscription_credits(
            user_id,
            renewal.credits_to_add,
            ref_id=ref_id,
            description=(
                f"Monthly subscription renewal - {plan.name} plan - "
                f"{renewal.credits_to_add} credits ({note})"
            ),
            reason="renewal",
        )

    def handle_invoice_payment_failed(self, invoice: InvoiceSnapshot) -> None:
        profile = lookup_profile(invoice.customer_id, self.settings.test_mode)
        if profile is None:
            return
        profiles.set_subscription_state(profile["id"], "past_due")
        logger.warning(f"Invoice {invoice.id} payment failed; user {profile['id']} marked past_due")

    # ==================== Subscription schedules ====================

    def handle_schedule_completed(self, schedule: ScheduleSnapshot) -> None:
        """
        A scheduled downgrade took effect: reset the subscription pool to the new
        tier's cycle amount, then commit the price and clear the schedule.

        The schedule fields are cleared last so a failure before that leaves the
        change pending for Stripe's retry; the reset is keyed by the schedule id
        and is applied once.
        """
        if not schedule.subscription_id:
            logger.info(f"Schedule {schedule.id} has no subscription; skipping")
            return

        record = subscriptions.get_subscription(
            schedule.subscription_id, "id, user_id, scheduled_price_id, price_id"
        )
        if not record:
            logger.warning(f"Schedule {schedule.id} completed for unknown subscription {schedule.subscription_id}")
            return

        scheduled_price_id = record.get("scheduled_price_id")
        if not scheduled_price_id:
            logger.info(f"Schedule {schedule.id} completed without a pending price change")
            subscriptions.apply_scheduled_change(record["id"], record.get("price_id"))
            return

        plan = plans.assert_plan(scheduled_price_id)
        credit_ledger.reset_subscription_credits(
            record["user_id"],
            plan.credits_per_cycle,
            ref_id=f"schedule_{schedule.id}",
            description=f"Scheduled plan change to {plan.name} - balance reset to {plan.credits_per_cycle} credits",
            tier=plan.key,
            metadata={
                "subscription_id": record["id"],
                "previous_price_id": record.get("price_id"),
                "price_id": scheduled_price_id,
            },
        )
        subscriptions.apply_scheduled_change(record["id"], scheduled_price_id)
