"""
Sentry error context utilities for billing webhook failures.
"""

import logging
from typing import Any

from sentry_sdk import capture_exception, set_context, set_tag

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None if Sentry is not initialised or capture failed
    """
    try:
        if context_type and context_data:
            set_context(context_type, context_data)

        if tags:
            for key, value in tags.items():
                set_tag(key, str(value))

        return capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    amount: float | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'webhook', 'clawback', 'recovery')
        provider: Payment provider (default: 'stripe')
        user_id: User ID if applicable
        amount: Credit or cent amount if applicable
        details: Additional details (event id, customer id, invoice id, ...)

    Returns:
        Event ID if captured, None otherwise
    """
    context_data: dict[str, Any] = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if amount:
        context_data["amount"] = amount
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )
