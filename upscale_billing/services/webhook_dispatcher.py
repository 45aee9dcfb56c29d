#!/usr/bin/env python3
"""
Stripe Webhook Dispatcher
received -> signature-verified -> idempotency-claimed -> routed -> completed | failed | unrecoverable

The dispatcher owns the HTTP semantics Stripe relies on: 400 for requests that
can never be valid, 500 for processing failures that Stripe should redeliver,
200 for everything that is done (including duplicates and event types this
service does not handle).
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import stripe

from upscale_billing.config.config import WebhookSettings
from upscale_billing.db import webhook_events
from upscale_billing.db.webhook_events import ClaimResult
from upscale_billing.schemas.billing import WebhookEvent, WebhookOutcome, WebhookResult
from upscale_billing.services import prometheus_metrics, stripe_adapter
from upscale_billing.services.checkout import CheckoutHandler
from upscale_billing.services.reconciler import SubscriptionReconciler
from upscale_billing.services.refunds import RefundHandler
from upscale_billing.utils.exceptions import (
    InvalidWebhookPayloadError,
    PersistenceWriteError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from upscale_billing.utils.security_validators import sanitize_for_logging
from upscale_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

INVOICE_PAID_EVENTS = ("invoice.payment_succeeded", "invoice.paid", "invoice_payment.paid")
INVOICE_FAILED_EVENTS = ("invoice.payment_failed", "invoice_payment.failed")


@dataclass(frozen=True)
class RoutingResult:
    outcome: WebhookOutcome
    message: str | None = None
    error: Exception | None = None


class WebhookDispatcher:
    """Verifies, claims and routes Stripe webhook deliveries."""

    def __init__(
        self,
        settings: WebhookSettings,
        reconciler: SubscriptionReconciler | None = None,
        checkout: CheckoutHandler | None = None,
        refunds: RefundHandler | None = None,
    ):
        self.settings = settings
        self.reconciler = reconciler or SubscriptionReconciler(settings)
        self.checkout = checkout or CheckoutHandler()
        self.refunds = refunds or RefundHandler(settings)
        self.routes = self._build_routes()

        if settings.secret_key:
            stripe.api_key = settings.secret_key
        if not settings.webhook_secret and not settings.test_mode:
            logger.warning("STRIPE_WEBHOOK_SECRET not set - webhook deliveries will be rejected")

    def _build_routes(self) -> dict[str, Callable[[WebhookEvent], Any]]:
        reconciler, checkout, refunds = self.reconciler, self.checkout, self.refunds

        def subscription_update(event: WebhookEvent):
            return reconciler.handle_subscription_update(
                stripe_adapter.to_subscription(event.data_object),
                previous_price_id=stripe_adapter.extract_previous_price_id(event.previous_attributes),
            )

        routes: dict[str, Callable[[WebhookEvent], Any]] = {
            "checkout.session.completed": lambda e: checkout.handle_checkout_completed(
                stripe_adapter.to_checkout_session(e.data_object)
            ),
            "customer.created": lambda e: checkout.handle_customer_created(
                stripe_adapter.to_customer(e.data_object)
            ),
            "customer.subscription.created": subscription_update,
            "customer.subscription.updated": subscription_update,
            "customer.subscription.deleted": lambda e: reconciler.handle_subscription_deleted(
                stripe_adapter.to_subscription(e.data_object)
            ),
            "customer.subscription.trial_will_end": lambda e: reconciler.handle_trial_will_end(
                stripe_adapter.to_subscription(e.data_object)
            ),
            "charge.refunded": lambda e: refunds.handle_charge_refunded(
                stripe_adapter.to_charge(e.data_object)
            ),
            "charge.dispute.created": lambda e: refunds.handle_dispute_created(e.data_object),
            "invoice.payment_refunded": lambda e: refunds.handle_invoice_refunded(e.data_object),
            "subscription_schedule.completed": lambda e: reconciler.handle_schedule_completed(
                stripe_adapter.to_schedule(e.data_object)
            ),
        }
        for event_type in INVOICE_PAID_EVENTS:
            routes[event_type] = lambda e: reconciler.handle_invoice_paid(
                stripe_adapter.resolve_invoice(e.data_object)
            )
        for event_type in INVOICE_FAILED_EVENTS:
            routes[event_type] = lambda e: reconciler.handle_invoice_payment_failed(
                stripe_adapter.resolve_invoice(e.data_object)
            )
        return routes

    # ==================== Verification ====================

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Verify the delivery and return the parsed event body.

        Raises:
            WebhookConfigurationError: the placeholder or no signing secret outside test mode
            WebhookSignatureError: signature header missing or invalid
            InvalidWebhookPayloadError: body is not a JSON event
        """
        if self.settings.test_mode:
            logger.debug("Test mode: skipping webhook signature verification")
            return self._parse_body(payload)

        if self.settings.uses_placeholder_secret:
            raise WebhookConfigurationError(
                "STRIPE_WEBHOOK_SECRET is set to the test placeholder outside test mode"
            )
        if not self.settings.webhook_secret:
            raise WebhookConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.settings.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Webhook signature verification failed: {e}") from e
        except ValueError as e:
            raise InvalidWebhookPayloadError(f"Invalid webhook payload: {e}") from e

        # Verified against the raw bytes; the parsed body is what the handlers read
        return self._parse_body(payload)

    @staticmethod
    def _parse_body(payload: bytes) -> dict[str, Any]:
        try:
            body = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise InvalidWebhookPayloadError(f"Invalid JSON body: {e}") from e
        if not isinstance(body, dict):
            raise InvalidWebhookPayloadError("Webhook body must be a JSON object")
        return body

    # ==================== Routing ====================

    def route(self, event: WebhookEvent) -> RoutingResult:
        """Run the handler for an event; never raises."""
        handler = self.routes.get(event.type)
        if handler is None:
            message = f"Unhandled event type: {event.type}"
            logger.info(message)
            return RoutingResult(WebhookOutcome.UNRECOVERABLE, message=message)

        try:
            handler(event)
        except Exception as e:
            logger.error(
                f"Error processing webhook {sanitize_for_logging(event.id)} ({event.type}): {e}",
                exc_info=True,
            )
            return RoutingResult(WebhookOutcome.RETRYABLE_FAILURE, message=str(e) or type(e).__name__, error=e)

        return RoutingResult(WebhookOutcome.COMPLETED)

    def _claim(self, event: WebhookEvent, raw: dict[str, Any]) -> ClaimResult | None:
        """Claim the event; None means the ledger is unreachable and processing runs untracked."""
        try:
            return webhook_events.claim_event(event.id, event.type, raw)
        except Exception as e:
            logger.error(
                f"Idempotency ledger unavailable for {sanitize_for_logging(event.id)}; "
                f"processing without duplicate protection: {e}",
                exc_info=True,
            )
            return None

    # ==================== Entry point ====================

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        started = time.monotonic()

        try:
            raw = self.verify(payload, signature)
        except WebhookConfigurationError as e:
            logger.error(f"Webhook misconfiguration: {e}")
            return WebhookResult(outcome=WebhookOutcome.RETRYABLE_FAILURE, status_code=500, body={"error": str(e)})
        except (WebhookSignatureError, InvalidWebhookPayloadError) as e:
            logger.warning(f"Rejected webhook delivery: {e}")
            return WebhookResult(outcome=WebhookOutcome.UNRECOVERABLE, status_code=400, body={"error": str(e)})

        event = stripe_adapter.parse_event(raw)

        if self.settings.test_mode and event.type == "test" and not event.id:
            return WebhookResult(
                outcome=WebhookOutcome.COMPLETED,
                body={"received": True, "test": True},
                event_type=event.type,
            )

        if not event.id or not event.type:
            return WebhookResult(
                outcome=WebhookOutcome.UNRECOVERABLE,
                status_code=400,
                body={"error": "Webhook event is missing id or type"},
            )

        claim = self._claim(event, raw)
        if claim is not None and not claim.is_new:
            logger.info(f"Skipping duplicate webhook {sanitize_for_logging(event.id)} ({claim.existing_status})")
            prometheus_metrics.record_webhook(event.type, "duplicate")
            return WebhookResult(
                outcome=WebhookOutcome.COMPLETED,
                body={"received": True, "skipped": True, "reason": f"Event already {claim.existing_status}"},
                event_id=event.id,
                event_type=event.type,
            )

        routing = self.route(event)
        result = self._finalize(event, routing, tracked=claim is not None)
        prometheus_metrics.record_webhook(event.type, result.outcome.value, time.monotonic() - started)
        return result

    def _finalize(self, event: WebhookEvent, routing: RoutingResult, tracked: bool) -> WebhookResult:
        """Record the routing outcome in the ledger and translate it into a response."""
        if routing.outcome is WebhookOutcome.COMPLETED:
            if tracked:
                try:
                    webhook_events.mark_event_completed(event.id)
                except PersistenceWriteError as e:
                    webhook_events.mark_event_failed(event.id, str(e))
                    capture_payment_error(e, operation="webhook_complete", details={"event_id": event.id})
                    return WebhookResult(
                        outcome=WebhookOutcome.RETRYABLE_FAILURE,
                        status_code=500,
                        body={"error": str(e)},
                        event_id=event.id,
                        event_type=event.type,
                    )
            return WebhookResult(
                outcome=WebhookOutcome.COMPLETED,
                body={"received": True},
                event_id=event.id,
                event_type=event.type,
            )

        if routing.outcome is WebhookOutcome.UNRECOVERABLE:
            if tracked:
                webhook_events.mark_event_unrecoverable(event.id, routing.message or "unrecoverable")
            return WebhookResult(
                outcome=WebhookOutcome.UNRECOVERABLE,
                body={"received": True, "warning": routing.message},
                event_id=event.id,
                event_type=event.type,
            )

        if tracked:
            webhook_events.mark_event_failed(event.id, routing.message or "processing failed")
        if routing.error is not None:
            capture_payment_error(
                routing.error,
                operation="webhook",
                details={"event_id": event.id, "event_type": event.type},
            )
        return WebhookResult(
            outcome=WebhookOutcome.RETRYABLE_FAILURE,
            status_code=500,
            body={"error": routing.message},
            event_id=event.id,
            event_type=event.type,
        )


_dispatcher: WebhookDispatcher | None = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher(WebhookSettings.from_config())
    return _dispatcher
