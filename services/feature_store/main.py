"""Feature Store Service - Main FastAPI application."""

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from libs.api_common.middleware import (
    RequestLoggingMiddleware,
    ResponseStandardizationMiddleware,
    SecurityHeadersMiddleware,
)
from libs.api_common.versioning import APIVersion, VersionedAPIRouter
from libs.config import get_database_settings
from libs.observability import configure_structured_logging, get_observability_config
from libs.persistence import DatabaseManager

from .config import get_feature_store_settings
from .core import FeatureStoreService
from .routes import router as feature_store_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    obs_config = get_observability_config()
    configure_structured_logging(obs_config.logging)
    logger.info(
        "Starting Feature Store service",
        service=obs_config.service_name,
        version=obs_config.service_version,
        environment=obs_config.environment,
    )

    db_settings = get_database_settings()
    settings = get_feature_store_settings()
    db_manager = DatabaseManager(db_settings.url, echo=db_settings.echo)
    source_db = (
        DatabaseManager(settings.source_database_url)
        if settings.source_database_url
        else None
    )

    app.state.db_manager = db_manager
    app.state.feature_store = FeatureStoreService(
        db_manager, source_db=source_db, settings=settings
    )
    logger.info(
        "Database initialized",
        service="feature_store",
        separate_source=source_db is not None,
    )

    yield

    await app.state.feature_store.close()
    await db_manager.close()
    logger.info("Feature Store service stopped", service="feature_store")


app = FastAPI(
    title="Feature Store Service",
    description="Feature registry, materialization and point-in-time serving",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

allowed_origins = os.getenv(
    "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(ResponseStandardizationMiddleware, version="v1")

v1_router = VersionedAPIRouter(version=APIVersion.V1)
v1_router.include_router(feature_store_router)
app.include_router(v1_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "feature_store",
        "version": "1.0.0",
        "docs": "/docs",
    }


metrics_config = get_observability_config().metrics

if metrics_config.enabled:

    @app.get(metrics_config.prometheus_endpoint, include_in_schema=False)
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.feature_store.main:app",
        host="0.0.0.0",
        port=8001,
        log_level="info",
    )
