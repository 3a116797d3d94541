from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from api.audit import router as audit_router
from api.config import get_settings
from api.config.prod_invariants import assert_prod_invariants
from api.db import init_db
from api.evidence_drafts import router as drafts_router
from api.evidence_records import router as records_router
from api.middleware.correlation import CorrelationIdMiddleware
from api.middleware.exception_shield import (
    SLExceptionShieldMiddleware,
    install_exception_handlers,
)
from api.tenants import router as tenants_router
from api.work_items import router as work_items_router

logger = logging.getLogger("supplylens")

SERVICE_NAME = "supplylens-evidence-ledger"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    settings = get_settings()
    _configure_logging(settings.log_level)

    # Refuse to start on an unsafe prod/staging configuration.
    assert_prod_invariants()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        logger.info(
            "%s v%s started env=%s auth_enabled=%s",
            SERVICE_NAME,
            settings.version,
            settings.env,
            settings.auth_enabled,
        )
        yield
        logger.info("Shutting down %s", SERVICE_NAME)

    app = FastAPI(
        title="SupplyLens Evidence Ledger",
        version=settings.version,
        description="Evidence sealing protocol: drafts, validation, sealing, "
        "work items and a hash-chained audit log.",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Service health endpoints"},
            {"name": "evidence", "description": "Drafts, sealing and sealed records"},
            {"name": "work-items", "description": "Review and conflict follow-ups"},
            {"name": "audit", "description": "Per-tenant hash-chained audit log"},
            {"name": "tenants", "description": "Tenant profile and data mode"},
        ],
    )

    # Schema must exist before the first request, including under TestClient
    # without a lifespan context.
    init_db()

    install_exception_handlers(app)
    # Added last = outermost: correlation id is set before the shield runs.
    app.add_middleware(SLExceptionShieldMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    app.include_router(drafts_router)
    app.include_router(records_router)
    app.include_router(work_items_router)
    app.include_router(audit_router)
    app.include_router(tenants_router)

    @app.get("/health/live", tags=["health"])
    async def health_live() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/ready", tags=["health"])
    async def health_ready() -> dict[str, str]:
        return {"status": "ready"}

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"service": SERVICE_NAME, "status": "ok", "version": app.version}

    return app


app = build_app()
