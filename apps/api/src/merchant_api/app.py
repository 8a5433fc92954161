from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from merchant_api.core.settings import settings
from merchant_api.db.session import engine
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing


APP_VERSION = "0.1.0"
SERVICE_NAME = "merchant-api"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Merchant API starting",
        environment=settings.environment,
        magic_rules_timezone=settings.magic_rules_timezone,
        candidate_limit=settings.magic_rules_candidate_limit,
        internal_secret_configured=bool(settings.internal_api_secret),
    )
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Merchant API stopped")


def create_app() -> FastAPI:
    """Application factory for the merchant FastAPI service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Merchant API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name=SERVICE_NAME,
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
