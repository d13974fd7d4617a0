from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from planpay import __version__
from planpay.config import PlanPaySettings, load_settings
from planpay.database import Database
from planpay.orchestrator import PaymentOrchestrator, build_orchestrator
from planpay.sweeper import ExpirySweeper

from .dependencies import PaymentDependencies, get_deps
from .middleware import StructuredLoggingMiddleware, register_exception_handlers, setup_logging
from .routers import payments, webhooks

logger = logging.getLogger("planpay.api")

EXCLUDED_LOG_PATHS = ["/health", "/docs", "/openapi.json"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    settings: PlanPaySettings = app.state.settings
    orchestrator: PaymentOrchestrator = app.state.orchestrator
    logger.info("Starting planpay API (%s)...", settings.environment)

    await orchestrator.database.create_all()
    sweeper: Optional[ExpirySweeper] = None
    if settings.sweeper.enabled:
        sweeper = ExpirySweeper(orchestrator, settings.sweeper.interval_seconds)
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    logger.info("Shutting down planpay API...")
    if sweeper is not None:
        await sweeper.stop()
    await orchestrator.close()
    await orchestrator.database.dispose()


def create_app(
    settings: Optional[PlanPaySettings] = None,
    *,
    orchestrator: Optional[PaymentOrchestrator] = None,
    database: Optional[Database] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    configure_logging: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(json_format=settings.use_json_logs, level=settings.log_level)

    orchestrator = orchestrator or build_orchestrator(settings, database=database, transport=transport)

    app = FastAPI(
        title="planpay API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(StructuredLoggingMiddleware, exclude_paths=EXCLUDED_LOG_PATHS)
    register_exception_handlers(app)

    deps = PaymentDependencies(orchestrator=orchestrator)
    app.dependency_overrides[get_deps] = lambda: deps

    prefix = settings.api_prefix.rstrip("/")
    app.include_router(payments.router, prefix=f"{prefix}/payments", tags=["payments"])
    app.include_router(webhooks.router, prefix=f"{prefix}/webhooks", tags=["webhooks"])

    @app.get("/health", tags=["health"])
    async def health_check():
        return {
            "status": "healthy",
            "environment": settings.environment,
            "version": __version__,
        }

    return app
