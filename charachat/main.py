import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from charachat.api import accounts, credits, health, subscriptions, webhooks
from charachat.core.config import settings, validate_config
from charachat.core.database import create_all_tables, get_db_session
from charachat.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from charachat.core.logging import configure_logging
from charachat.core.middleware.request_id import RequestIdMiddleware
from charachat.features.plans.service import seed_plans
from charachat.features.usage.service import seed_service_costs


def bootstrap_database() -> None:
    """Create tables and seed reference data (idempotent)."""
    create_all_tables()
    with get_db_session() as session:
        seed_plans(session)
        seed_service_costs(session)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("charachat")
    logger.info("Starting charachat credits backend...")
    app.state.startup_time = time.time()
    bootstrap_database()
    try:
        yield
    finally:
        logger.info("Stopping charachat credits backend...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="Charachat - Credits", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(accounts.router)
    app.include_router(credits.router)
    app.include_router(subscriptions.router)
    app.include_router(webhooks.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("charachat.main:app", host="0.0.0.0", port=8000)
