from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from kfactor_api.core.settings import settings
from kfactor_api.db.session import async_session
from .api.middleware.attribution import AttributionMiddleware
from .api.routes import api_router
from .api.v1.endpoints.smart_links import resolve_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.analytics import AnalyticsDispatcher
from .services.ephemeral import EphemeralStore, build_redis_client
from .services.orchestrator import LoopOrchestratorClient
from .services.rewards import AllowAllSafetyCheck
from .services.smart_links import SignatureCodec


APP_VERSION = "0.1.0"
SERVICE_NAME = "kfactor-api"


@asynccontextmanager
async def lifespan(app: FastAPI):
    analytics: AnalyticsDispatcher = app.state.analytics
    if settings.analytics_enabled:
        await analytics.start()
        logger.info("Analytics dispatcher enabled", queue_size=settings.analytics_queue_size)
    else:
        logger.info("Analytics dispatcher disabled", reason="analytics_enabled is false")

    if not app.state.signature_codec.configured:
        logger.warning("SMARTLINK_HMAC_SECRET not set; smart link issuance is disabled")

    try:
        yield
    finally:
        await analytics.stop()
        await app.state.orchestrator.aclose()
        redis_client = app.state.redis_client
        if redis_client is not None:
            await redis_client.aclose()


def _configure_state(app: FastAPI) -> None:
    redis_client = build_redis_client(settings)
    app.state.redis_client = redis_client
    app.state.ephemeral_store = EphemeralStore(
        redis_client,
        name="redis",
        health_window=settings.ephemeral_health_window_seconds,
        log_suppression=settings.ephemeral_log_suppression_seconds,
    )
    app.state.signature_codec = SignatureCodec(settings.smartlink_hmac_secret)
    app.state.analytics = AnalyticsDispatcher(
        async_session,
        maxsize=settings.analytics_queue_size,
        enabled=settings.analytics_enabled,
    )
    app.state.orchestrator = LoopOrchestratorClient(
        settings.orchestrator_url,
        timeout_seconds=settings.orchestrator_timeout_seconds,
        default_loop=settings.orchestrator_default_loop,
    )
    app.state.safety_check = AllowAllSafetyCheck()


def create_app() -> FastAPI:
    """Application factory for the viral-loop attribution service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="K-Factor API",
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

    _configure_state(app)

    app.add_middleware(
        AttributionMiddleware,
        tracked_prefixes=settings.attribution_tracked_paths,
        processed_max_age=settings.attribution_processed_max_age_seconds,
        secure_cookies=settings.environment == "production",
    )

    app.include_router(api_router)
    app.include_router(resolve_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
