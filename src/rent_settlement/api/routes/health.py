"""Health check endpoint.

Verifies connectivity to the database and Redis and reports whether the
reconciliation workers are running. Used by container healthchecks and
load balancers.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from sqlalchemy import text

from rent_settlement.infrastructure.database.engine import get_session_factory
from rent_settlement.infrastructure.redis_client import get_redis
from rent_settlement.logging_config import get_logger
from rent_settlement.schemas.agreement import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(request: Request) -> HealthResponse:
    db_status = "unknown"
    redis_status = "unknown"

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    try:
        await get_redis().ping()
        redis_status = "healthy"
    except Exception as exc:
        redis_status = f"unhealthy: {exc}"
        logger.warning("health.redis_check_failed", error=str(exc))

    pool = getattr(request.app.state, "worker_pool", None)
    workers = "disabled" if pool is None else ("running" if pool.running else "stopped")

    if db_status != "healthy":
        overall = "unhealthy"
    elif redis_status != "healthy":
        overall = "degraded"
    else:
        overall = "ok"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        workers=workers,
    )
