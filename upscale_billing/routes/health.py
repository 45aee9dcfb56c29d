"""
Health endpoint

Always answers 200 while the process is serving; database trouble shows up in
the body as degraded mode (webhooks then run without idempotency tracking).
"""

from datetime import UTC, datetime

from fastapi import APIRouter

from upscale_billing.config.supabase_config import get_initialization_status

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    db_status = get_initialization_status()

    response = {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
    }

    if db_status["has_error"]:
        response["database"] = "unavailable"
        response["mode"] = "degraded"
        response["database_error"] = db_status["error_type"]
    elif db_status["initialized"]:
        response["database"] = "connected"
    else:
        response["database"] = "not_initialized"

    return response
