"""
Analytics Service
=================

Server-side PostHog integration for billing lifecycle events
(subscription_created, subscription_canceled, credits_purchased).
Tracking is fire-and-forget: failures are logged and never reach the webhook.
"""

import logging
from typing import Any

from posthog import Posthog

from upscale_billing.config.config import Config

logger = logging.getLogger(__name__)


class AnalyticsService:
    """
    PostHog analytics service.

    Falls back to logging-only mode when POSTHOG_API_KEY is not configured.
    """

    def __init__(self, api_key: str | None = None, host: str | None = None):
        self.api_key = api_key if api_key is not None else Config.POSTHOG_API_KEY
        self.host = host or Config.POSTHOG_HOST
        self.client: Posthog | None = None
        self.enabled = False

        if not self.api_key:
            logger.info("POSTHOG_API_KEY not set - billing analytics in fallback (log-only) mode")
            return

        try:
            self.client = Posthog(self.api_key, host=self.host)
            self.enabled = True
        except Exception as e:
            logger.error(f"Failed to initialize PostHog client: {e}")

    def track(self, user_id: str, event_name: str, properties: dict[str, Any] | None = None) -> bool:
        """
        Capture an event for a user.

        Returns:
            True if the event was handed to PostHog (or logged in fallback mode)
        """
        try:
            if self.enabled and self.client is not None:
                self.client.capture(event=event_name, distinct_id=user_id, properties=properties or {})
                logger.debug(f"Analytics event captured: {event_name} (user: {user_id})")
            else:
                logger.info(f"[Fallback] Analytics event: {event_name} (user: {user_id})")
            return True
        except Exception as e:
            logger.warning(f"Failed to capture analytics event '{event_name}': {e}")
            return False

    def shutdown(self) -> None:
        if self.client is not None:
            try:
                self.client.shutdown()
            except Exception as e:
                logger.warning(f"Error flushing PostHog client: {e}")


_analytics_service: AnalyticsService | None = None


def get_analytics_service() -> AnalyticsService:
    global _analytics_service
    if _analytics_service is None:
        _analytics_service = AnalyticsService()
    return _analytics_service
