#!/usr/bin/env python3
"""
Checkout & customer webhooks
Initial subscription credits and one-time credit pack purchases completed through
Stripe Checkout, plus linking new Stripe customers to profiles.
"""

import logging

from upscale_billing.config import plans
from upscale_billing.db import credit_ledger, profiles
from upscale_billing.schemas.billing import CheckoutSessionSnapshot, CustomerSnapshot
from upscale_billing.services import stripe_adapter
from upscale_billing.services.analytics import AnalyticsService, get_analytics_service
from upscale_billing.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)


class CheckoutHandler:
    def __init__(self, analytics: AnalyticsService | None = None, subscription_fetcher=stripe_adapter.fetch_subscription):
        self.analytics = analytics or get_analytics_service()
        self.subscription_fetcher = subscription_fetcher

    def handle_checkout_completed(self, session: CheckoutSessionSnapshot) -> None:
        user_id = session.metadata.get("user_id")
        if not user_id:
            logger.error(f"Checkout session {session.id} has no user_id in metadata; cannot attribute credits")
            return

        logger.info(f"Checkout completed for user {sanitize_for_logging(user_id)}, mode: {session.mode}")

        if session.mode == "subscription":
            self._grant_initial_subscription_credits(session, user_id)
        elif session.mode == "payment":
            self._grant_credit_pack(session, user_id)
        else:
            logger.warning(
                f"Unexpected checkout mode: {session.mode} for session {session.id}. "
                "Expected 'subscription' or 'payment'."
            )

    def _grant_initial_subscription_credits(self, session: CheckoutSessionSnapshot, user_id: str) -> None:
        """
        Grant the first cycle right away so the user lands on the success page with credits.

        Failures are logged only; the first invoice.paid webhook grants the same
        credits under the same invoice ref, and the ledger applies that ref once
        whichever webhook lands first.
        """
        if not session.subscription_id:
            return

        ref_id = f"invoice_{session.invoice_id}" if session.invoice_id else f"session_{session.id}"
        try:
            subscription = self.subscription_fetcher(session.subscription_id)
            plan = plans.assert_plan(subscription.price_id)

            credit_ledger.grant_subscription_credits(
                user_id,
                plan.credits_per_cycle,
                ref_id=ref_id,
                description=f"Initial subscription credits - {plan.name} plan - {plan.credits_per_cycle} credits",
                reason="checkout",
            )
        except Exception as e:
            logger.error(
                f"[WEBHOOK_ERROR] Initial subscription credits failed for session {session.id} "
                f"(subscription {session.subscription_id}): {e}",
                exc_info=True,
            )

    def _grant_credit_pack(self, session: CheckoutSessionSnapshot, user_id: str) -> None:
        pack_key = session.metadata.get("pack_key")
        pack = plans.get_pack_by_key(pack_key) if pack_key else None

        credits_value = session.metadata.get("credits")
        try:
            credits = int(credits_value) if credits_value else (pack.credits if pack else 0)
        except ValueError as e:
            raise ValueError(f"Invalid credits metadata '{credits_value}' on session {session.id}") from e

        if credits <= 0:
            raise ValueError(f"Checkout session {session.id} carries no credit amount (pack_key={pack_key})")

        ref_id = f"pi_{session.payment_intent_id}" if session.payment_intent_id else f"session_{session.id}"
        pack_name = pack.name if pack else (pack_key or "credit pack")

        credit_ledger.grant_purchased_credits(
            user_id,
            credits,
            ref_id=ref_id,
            description=f"Credit pack purchase - {pack_name} - {credits} credits",
        )
        self.analytics.track(
            user_id,
            "credits_purchased",
            {"packKey": pack_key, "credits": credits, "sessionId": session.id},
        )

    def handle_customer_created(self, customer: CustomerSnapshot) -> None:
        user_id = customer.metadata.get("user_id")
        if not user_id:
            logger.info(f"Customer {customer.id} created without user_id metadata; nothing to link")
            return
        profiles.link_stripe_customer(user_id, customer.id)
        logger.info(f"Linked Stripe customer {customer.id} to user {sanitize_for_logging(user_id)}")
