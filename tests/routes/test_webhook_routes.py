#!/usr/bin/env python3
"""
Tests for the HTTP surface

Tests cover:
- POST /webhooks/stripe status codes and bodies
- POST /cron/recover-webhooks authorization
- GET /health and GET /metrics
"""

import json
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from upscale_billing.config.config import Config
from upscale_billing.main import app
from upscale_billing.schemas.billing import RecoveryReport, WebhookOutcome, WebhookResult
from upscale_billing.services.webhook_dispatcher import get_webhook_dispatcher


@pytest.fixture
def dispatcher():
    return Mock()


@pytest.fixture
def client(dispatcher):
    app.dependency_overrides[get_webhook_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestStripeWebhookEndpoint:
    def test_passes_raw_body_and_signature(self, client, dispatcher):
        dispatcher.handle.return_value = WebhookResult(outcome=WebhookOutcome.COMPLETED, body={"received": True})
        body = json.dumps({"id": "evt_1", "type": "invoice.paid"}, separators=(",", ":")).encode()

        response = client.post("/webhooks/stripe", content=body, headers={"stripe-signature": "t=1,v1=abc"})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        dispatcher.handle.assert_called_once_with(body, "t=1,v1=abc")

    def test_failure_maps_to_500(self, client, dispatcher):
        dispatcher.handle.return_value = WebhookResult(
            outcome=WebhookOutcome.RETRYABLE_FAILURE, status_code=500, body={"error": "Unknown price ID: price_x"}
        )

        response = client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 500
        assert response.json()["error"].startswith("Unknown price ID")
        dispatcher.handle.assert_called_once_with(b"{}", None)

    def test_bad_signature_maps_to_400(self, client, dispatcher):
        dispatcher.handle.return_value = WebhookResult(
            outcome=WebhookOutcome.UNRECOVERABLE, status_code=400, body={"error": "Webhook signature verification failed"}
        )

        response = client.post("/webhooks/stripe", content=b"{}", headers={"stripe-signature": "bad"})

        assert response.status_code == 400


class TestRecoverWebhooksEndpoint:
    @pytest.fixture(autouse=True)
    def cron_secret(self, monkeypatch):
        monkeypatch.setattr(Config, "CRON_SECRET", "cron-s3cret")

    def test_rejects_missing_secret(self, client):
        assert client.post("/cron/recover-webhooks").status_code == 401

    def test_rejects_wrong_secret(self, client):
        response = client.post("/cron/recover-webhooks", headers={"x-cron-secret": "nope"})

        assert response.status_code == 401

    def test_runs_recovery(self, client, dispatcher):
        report = RecoveryReport(processed=2, recovered=1, failed=1)
        with patch("upscale_billing.routes.webhooks.recover_failed_webhooks", return_value=report) as mock_recover:
            response = client.post("/cron/recover-webhooks", headers={"x-cron-secret": "cron-s3cret"})

        assert response.status_code == 200
        assert response.json()["recovered"] == 1
        mock_recover.assert_called_once_with(dispatcher)


class TestMonitoringEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "database" in response.json()

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "billing_webhook_events_total" in response.text


@pytest.mark.asyncio
async def test_health_reports_degraded_mode(monkeypatch):
    from upscale_billing.routes import health

    monkeypatch.setattr(
        health,
        "get_initialization_status",
        lambda: {"initialized": False, "has_error": True, "error_message": "boom", "error_type": "RuntimeError"},
    )

    body = await health.health_check()

    assert body["mode"] == "degraded"
    assert body["database"] == "unavailable"
    assert body["database_error"] == "RuntimeError"
