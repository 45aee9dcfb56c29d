import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

TEST_MODE_KEY_MARKER = "dummy_key"
PLACEHOLDER_WEBHOOK_SECRET = "whsec_test_secret"


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_float(name: str, default: float) -> float:
    raw = _get_env_var(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = _get_env_var(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    """Configuration class for the billing webhook service"""

    # Environment Detection
    APP_ENV = (_get_env_var("APP_ENV", "development") or "development").lower()
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    # Supabase Configuration
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")

    # Cron endpoints
    CRON_SECRET = _get_env_var("CRON_SECRET")

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = (_get_env_var("SENTRY_ENABLED", "true") or "true").lower() in {"1", "true", "yes"}
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE", "1.0.0")

    # PostHog Configuration
    POSTHOG_API_KEY = _get_env_var("POSTHOG_API_KEY")
    POSTHOG_HOST = _get_env_var("POSTHOG_HOST", "https://us.i.posthog.com")

    # Credit policy
    UPGRADE_FARMING_MULTIPLIER = _get_float("UPGRADE_FARMING_MULTIPLIER", 1.5)
    # "all" counts subscription + purchased pools when topping up a converted trial,
    # "subscription" counts only the subscription pool
    TRIAL_CONVERSION_POOLS = (_get_env_var("TRIAL_CONVERSION_POOLS", "all") or "all").lower()

    # Webhook recovery
    WEBHOOK_MAX_RETRIES = _get_int("WEBHOOK_MAX_RETRIES", 3)
    WEBHOOK_RECOVERY_BATCH_SIZE = _get_int("WEBHOOK_RECOVERY_BATCH_SIZE", 50)

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")
        if not cls.STRIPE_SECRET_KEY:
            missing_vars.append("STRIPE_SECRET_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_webhook_signing_secret"
            )

        return True

    @classmethod
    def get_supabase_config(cls):
        """Get Supabase configuration as a tuple"""
        return cls.SUPABASE_URL, cls.SUPABASE_KEY


@dataclass(frozen=True)
class WebhookSettings:
    """
    Explicit settings handed to the webhook dispatcher.

    Test mode needs both APP_ENV=test and a secret key carrying the dummy key
    marker; either one alone keeps signature verification on.
    """

    app_env: str
    secret_key: str | None
    webhook_secret: str | None

    @property
    def test_mode(self) -> bool:
        return self.app_env == "test" and TEST_MODE_KEY_MARKER in (self.secret_key or "")

    @property
    def uses_placeholder_secret(self) -> bool:
        return self.webhook_secret == PLACEHOLDER_WEBHOOK_SECRET

    @classmethod
    def from_config(cls) -> "WebhookSettings":
        return cls(
            app_env=Config.APP_ENV,
            secret_key=Config.STRIPE_SECRET_KEY,
            webhook_secret=Config.STRIPE_WEBHOOK_SECRET,
        )
