"""
Health endpoints.

Lightweight checks for operational monitoring without exposing secrets.
"""
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from commerce.core.database import check_connection
from commerce.core.logging import get_request_id, latency_bucket_ms

logger = logging.getLogger("commerce")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "user_subscriptions",
    "subscription_history",
    "provider_events",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request):
    """Readiness check: DB connectivity + required tables."""
    engine = request.app.state.services.engine
    start = time.perf_counter()
    if not check_connection(engine):
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    try:
        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] table inspection failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info(
        "health.ready",
        extra={
            "request_id": get_request_id(),
            "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
        },
    )
    return {"status": "ok"}
