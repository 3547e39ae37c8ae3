"""FastAPI application entry point for the Rent Settlement engine.

Lifecycle:
    1. Startup: logging, database, Redis, ledger client, notifier, then
       the reconciliation worker pool.
    2. Running: serve the REST API at /api/v1/* while workers reconcile
       payments in the same event loop.
    3. Shutdown: stop the workers first, then close the ledger client,
       database and Redis.

Run with:
    uv run uvicorn rent_settlement.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from rent_settlement.api.middleware import setup_middleware
from rent_settlement.api.routes.agreements import router as agreements_router
from rent_settlement.api.routes.health import router as health_router
from rent_settlement.config import get_settings
from rent_settlement.infrastructure.database.engine import close_db, get_session_factory, init_db
from rent_settlement.infrastructure.redis_client import close_redis, init_redis
from rent_settlement.ledger.http_client import HttpLedgerClient
from rent_settlement.ledger.simulated import SimulatedLedger
from rent_settlement.logging_config import get_logger, setup_logging
from rent_settlement.services.notifier import build_notifier
from rent_settlement.services.worker_pool import ReconciliationWorkerPool

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    await init_db()

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    if settings.ledger_backend == "simulated":
        logger.warning("app.simulated_ledger", detail="ledger state lives in memory")
        ledger_client = SimulatedLedger()
    else:
        ledger_client = HttpLedgerClient()
    app.state.ledger_client = ledger_client

    pool = None
    if settings.reconciliation_enabled:
        pool = ReconciliationWorkerPool(get_session_factory(), ledger_client, build_notifier())
        await pool.start()
    app.state.worker_pool = pool

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    logger.info("app.shutting_down")
    if pool is not None:
        await pool.stop()
    if isinstance(ledger_client, HttpLedgerClient):
        await ledger_client.aclose()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Rent Settlement",
        description=(
            "Rent escrow on an external ledger, with a local payment ledger "
            "reconciled against it."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    setup_middleware(app)

    app.include_router(health_router)
    app.include_router(agreements_router)

    return app


# The app instance used by Uvicorn
app = create_app()
