from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from expense_intake.api.router import router as api_router
from expense_intake.bootstrap import bootstrap
from expense_intake.core.config import settings
from expense_intake.core.logging import (
    RequestContextMiddleware,
    configure_logging,
    get_logger,
    log_event,
)

logger = get_logger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        log_event(
            logger,
            "app.started",
            environment=settings.environment,
            storage_backend=settings.storage_backend,
            recognition_legacy_enabled=settings.recognition_legacy_enabled,
        )
        yield

    configure_logging()
    app = FastAPI(title="Expense Intake", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )
    app.include_router(api_router)
    return app


app = create_app()
