"""Internal snapshots of Stripe objects consumed by the reconciler.

The adapter in services/stripe_adapter.py builds these once, at the boundary,
so the rest of the code never touches raw Stripe payloads.
"""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ===========================
# Stripe object snapshots
# ===========================


class SubscriptionSnapshot(BaseModel):
    """Subscription as seen in a customer.subscription.* event"""
    id: str
    customer_id: str | None = None
    status: str
    price_id: str | None = None
    price_unit_amount: int | None = None
    price_interval: str = "month"
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None

    @property
    def has_period(self) -> bool:
        return self.current_period_start is not None and self.current_period_end is not None


class InvoiceSnapshot(BaseModel):
    id: str
    customer_id: str | None = None
    subscription_id: str | None = None
    price_id: str | None = None
    period_end: datetime | None = None


class ChargeSnapshot(BaseModel):
    id: str
    customer_id: str | None = None
    invoice_id: str | None = None
    amount_refunded: int = 0


class CheckoutSessionSnapshot(BaseModel):
    id: str
    mode: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    payment_intent_id: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CustomerSnapshot(BaseModel):
    id: str
    metadata: dict[str, str] = Field(default_factory=dict)


class ScheduleSnapshot(BaseModel):
    id: str
    subscription_id: str | None = None


class WebhookEvent(BaseModel):
    """Envelope of a verified Stripe event"""
    id: str | None = None
    type: str
    data_object: dict[str, Any] = Field(default_factory=dict)
    previous_attributes: dict[str, Any] | None = None
    livemode: bool = False


# ===========================
# Processing outcome
# ===========================


class WebhookOutcome(str, Enum):
    COMPLETED = "completed"
    RETRYABLE_FAILURE = "retryable_failure"
    UNRECOVERABLE = "unrecoverable"


class WebhookResult(BaseModel):
    """What the dispatcher decided for one delivery, before it becomes an HTTP response"""
    outcome: WebhookOutcome
    status_code: int = 200
    body: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = None
    event_type: str | None = None


class RecoveryItem(BaseModel):
    event_id: str
    event_type: str | None = None
    status: str
    retry_count: int
    error: str | None = None


class RecoveryReport(BaseModel):
    """Response for POST /cron/recover-webhooks"""
    success: bool = True
    processed: int = 0
    recovered: int = 0
    failed: int = 0
    unrecoverable: int = 0
    results: list[RecoveryItem] = Field(default_factory=list)
    processed_at: datetime | None = None
