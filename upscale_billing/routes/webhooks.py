#!/usr/bin/env python3
"""
Stripe Webhook Routes
Inbound Stripe deliveries and the scheduled recovery of failed events.
"""

import asyncio
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from upscale_billing.config.config import Config
from upscale_billing.schemas.billing import RecoveryReport
from upscale_billing.services.webhook_dispatcher import WebhookDispatcher, get_webhook_dispatcher
from upscale_billing.services.webhook_recovery import recover_failed_webhooks

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Stripe Webhooks"])


# ==================== Webhook Endpoint ====================


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """
    Stripe webhook endpoint.

    The raw body is verified byte-for-byte against the stripe-signature header,
    so it is read with request.body() and never re-serialized.

    Returns:
        200 {received: true[, skipped|warning]} when the event is done,
        400 for a bad signature or body, 500 when Stripe should redeliver
    """
    payload = await request.body()

    # Handlers talk to Supabase and Stripe through blocking clients
    result = await asyncio.to_thread(dispatcher.handle, payload, stripe_signature)

    logger.info(
        f"Webhook {result.event_type or 'unknown'} ({result.event_id or '-'}): "
        f"{result.outcome.value} -> {result.status_code}"
    )
    return JSONResponse(status_code=result.status_code, content=result.body)


# ==================== Cron ====================


def verify_cron_secret(x_cron_secret: str | None = Header(None, alias="x-cron-secret")) -> None:
    expected = Config.CRON_SECRET
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/cron/recover-webhooks", response_model=RecoveryReport)
async def recover_webhooks(
    _auth: None = Depends(verify_cron_secret),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """Retry failed webhook events (bounded by WEBHOOK_MAX_RETRIES)."""
    return await asyncio.to_thread(recover_failed_webhooks, dispatcher)
