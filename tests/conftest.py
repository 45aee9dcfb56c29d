import pytest

from tests.helpers.stripe_payloads import TEST_PLANS_JSON
from tests.helpers.supabase_stub import SupabaseStub
from upscale_billing.config import plans
from upscale_billing.config.config import WebhookSettings


@pytest.fixture(autouse=True)
def catalog(monkeypatch):
    """Built-in plans plus a `never`-expiration plan and a trial plan."""
    monkeypatch.setenv("BILLING_PLANS_JSON", TEST_PLANS_JSON)
    monkeypatch.delenv("BILLING_PACKS_JSON", raising=False)
    plans.clear_catalog_cache()
    yield
    plans.clear_catalog_cache()


@pytest.fixture()
def sb(monkeypatch):
    """Route every execute_with_retry call to a fresh in-memory store."""
    stub = SupabaseStub()
    monkeypatch.setattr("upscale_billing.config.supabase_config.get_supabase_client", lambda: stub)
    return stub


@pytest.fixture()
def live_settings():
    return WebhookSettings(app_env="production", secret_key="sk_live_abc", webhook_secret="whsec_live_signing")


@pytest.fixture()
def test_mode_settings():
    return WebhookSettings(app_env="test", secret_key="sk_test_dummy_key_123", webhook_secret=None)
