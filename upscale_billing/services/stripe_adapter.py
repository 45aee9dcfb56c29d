#!/usr/bin/env python3
"""
Stripe payload adapter
Normalizes raw Stripe webhook objects into the snapshots in schemas/billing.py.

Stripe objects arrive either as plain dicts (parsed webhook bodies) or as
StripeObject instances (API re-fetches); both are read through
_get_stripe_object_value. Field locations that moved between API versions
(invoice.subscription vs invoice.parent.subscription_details, line price vs
line.pricing.price_details) are resolved here and nowhere else.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import stripe

from upscale_billing.schemas.billing import (
    ChargeSnapshot,
    CheckoutSessionSnapshot,
    CustomerSnapshot,
    InvoiceSnapshot,
    ScheduleSnapshot,
    SubscriptionSnapshot,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def _get_stripe_object_value(obj: Any, attr: str) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(attr)
    try:
        return obj[attr]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, attr, None)


def _get_path(obj: Any, *path: str) -> Any:
    for attr in path:
        obj = _get_stripe_object_value(obj, attr)
        if obj is None:
            return None
    return obj


def _id_of(value: Any) -> str | None:
    """Stripe expands references either as an id string or as an object carrying `id`."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    ref = _get_stripe_object_value(value, "id")
    return ref if isinstance(ref, str) and ref else None


def _to_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _metadata_to_dict(metadata: Any) -> dict[str, str]:
    if not metadata:
        return {}
    if isinstance(metadata, dict):
        items = metadata.items()
    else:
        try:
            items = dict(metadata).items()
        except (TypeError, ValueError):
            return {}
    return {str(k): str(v) for k, v in items if v is not None}


def to_plain(obj: Any) -> Any:
    """Convert a StripeObject tree to plain dicts/lists."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_plain(v) for v in obj]
    for converter in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, converter, None)
        if callable(fn):
            return to_plain(dict(fn()))
    return obj


def parse_event(event: Any) -> WebhookEvent:
    """Build the event envelope from a parsed webhook body or a stripe.Event."""
    event = to_plain(event)
    data = event.get("data") or {}
    return WebhookEvent(
        id=event.get("id"),
        type=event.get("type") or "",
        data_object=data.get("object") or {},
        previous_attributes=data.get("previous_attributes"),
        livemode=bool(event.get("livemode", False)),
    )


# ==================== Subscriptions ====================


def _price_id_from_item(item: Any) -> str | None:
    return _id_of(_get_stripe_object_value(item, "price")) or _id_of(
        _get_stripe_object_value(item, "plan")
    )


def extract_previous_price_id(previous_attributes: dict[str, Any] | None) -> str | None:
    """
    Pull the pre-change price id out of an event's previous_attributes.

    Stripe reports item changes as `items: {data: [...]}` (or a bare list in
    some fixtures); older plan-based payloads carry `price` / `plan` directly.
    """
    if not previous_attributes or not isinstance(previous_attributes, dict):
        return None

    items = previous_attributes.get("items")
    if isinstance(items, dict):
        items = items.get("data")
    if isinstance(items, list) and items:
        price_id = _price_id_from_item(items[0])
        if price_id:
            return price_id

    return _price_id_from_item(previous_attributes)


def to_subscription(obj: Any) -> SubscriptionSnapshot:
    items = _get_path(obj, "items", "data") or []
    first_item = items[0] if items else None
    price = _get_stripe_object_value(first_item, "price")

    # Newer API versions report the billing period on the item, not the subscription
    period_start = _get_stripe_object_value(obj, "current_period_start") or _get_stripe_object_value(
        first_item, "current_period_start"
    )
    period_end = _get_stripe_object_value(obj, "current_period_end") or _get_stripe_object_value(
        first_item, "current_period_end"
    )

    unit_amount = _get_stripe_object_value(price, "unit_amount")

    return SubscriptionSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        customer_id=_id_of(_get_stripe_object_value(obj, "customer")),
        status=_get_stripe_object_value(obj, "status") or "incomplete",
        price_id=_id_of(price),
        price_unit_amount=int(unit_amount) if unit_amount is not None else None,
        price_interval=_get_path(price, "recurring", "interval") or "month",
        current_period_start=_to_datetime(period_start),
        current_period_end=_to_datetime(period_end),
        trial_end=_to_datetime(_get_stripe_object_value(obj, "trial_end")),
        cancel_at_period_end=bool(_get_stripe_object_value(obj, "cancel_at_period_end")),
        canceled_at=_to_datetime(_get_stripe_object_value(obj, "canceled_at")),
    )


def fetch_subscription(subscription_id: str) -> SubscriptionSnapshot:
    """Re-fetch a subscription from Stripe (used when a webhook omits its period)."""
    return to_subscription(stripe.Subscription.retrieve(subscription_id))


# ==================== Invoices ====================


def select_invoice_price_id(lines: list[Any]) -> str | None:
    """
    Choose the price an invoice bills for.

    Preference: the subscription line, then a positive proration line (mid-cycle
    upgrade), then any line that carries a price.
    """

    def _line_price(line: Any) -> str | None:
        return _price_id_from_item(line) or _id_of(
            _get_path(line, "pricing", "price_details", "price")
        )

    for line in lines:
        if _get_stripe_object_value(line, "type") == "subscription" and _line_price(line):
            return _line_price(line)

    for line in lines:
        if (
            _get_stripe_object_value(line, "proration")
            and (_get_stripe_object_value(line, "amount") or 0) > 0
            and _line_price(line)
        ):
            return _line_price(line)

    for line in lines:
        price_id = _line_price(line)
        if price_id:
            return price_id

    return None


def to_invoice(obj: Any) -> InvoiceSnapshot:
    subscription_id = _id_of(_get_stripe_object_value(obj, "subscription")) or _id_of(
        _get_path(obj, "parent", "subscription_details", "subscription")
    )
    lines = _get_path(obj, "lines", "data") or []

    return InvoiceSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        customer_id=_id_of(_get_stripe_object_value(obj, "customer")),
        subscription_id=subscription_id,
        price_id=select_invoice_price_id(list(lines)),
        period_end=_to_datetime(_get_stripe_object_value(obj, "period_end")),
    )


def resolve_invoice(obj: Any) -> InvoiceSnapshot:
    """
    Normalize the data object of an invoice event.

    invoice_payment.* events carry an InvoicePayment that only references the
    invoice, so the invoice itself is fetched from Stripe.
    """
    if _get_stripe_object_value(obj, "object") == "invoice_payment":
        invoice_id = _id_of(_get_stripe_object_value(obj, "invoice"))
        if not invoice_id:
            raise ValueError("invoice_payment event does not reference an invoice")
        return to_invoice(stripe.Invoice.retrieve(invoice_id, expand=["lines"]))
    return to_invoice(obj)


# ==================== Other objects ====================


def to_charge(obj: Any) -> ChargeSnapshot:
    return ChargeSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        customer_id=_id_of(_get_stripe_object_value(obj, "customer")),
        invoice_id=_id_of(_get_stripe_object_value(obj, "invoice")),
        amount_refunded=int(_get_stripe_object_value(obj, "amount_refunded") or 0),
    )


def to_checkout_session(obj: Any) -> CheckoutSessionSnapshot:
    return CheckoutSessionSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        mode=_get_stripe_object_value(obj, "mode"),
        customer_id=_id_of(_get_stripe_object_value(obj, "customer")),
        subscription_id=_id_of(_get_stripe_object_value(obj, "subscription")),
        invoice_id=_id_of(_get_stripe_object_value(obj, "invoice")),
        payment_intent_id=_id_of(_get_stripe_object_value(obj, "payment_intent")),
        metadata=_metadata_to_dict(_get_stripe_object_value(obj, "metadata")),
    )


def to_customer(obj: Any) -> CustomerSnapshot:
    return CustomerSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        metadata=_metadata_to_dict(_get_stripe_object_value(obj, "metadata")),
    )


def to_schedule(obj: Any) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        id=_get_stripe_object_value(obj, "id"),
        subscription_id=_id_of(_get_stripe_object_value(obj, "subscription")),
    )
