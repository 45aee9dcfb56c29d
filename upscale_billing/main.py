import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import REGISTRY, generate_latest

from upscale_billing import __version__
from upscale_billing.config.config import Config
from upscale_billing.config.logging_config import configure_logging
from upscale_billing.routes import health, webhooks
from upscale_billing.services import prometheus_metrics  # noqa: F401
from upscale_billing.services.analytics import get_analytics_service

configure_logging()
logger = logging.getLogger(__name__)

if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sample_rate=0.1,
        # Webhook bodies carry customer emails and addresses
        send_default_pii=False,
    )
    logger.info(f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Billing webhook service starting (environment: {Config.APP_ENV})")
    yield
    get_analytics_service().shutdown()
    logger.info("Billing webhook service stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Upscaler Billing Webhooks",
        description="Stripe webhook processor and credit ledger reconciliation",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(webhooks.router)

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(REGISTRY), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
