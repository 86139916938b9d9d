"""
CallRoute - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.api import health
from app.config import Settings, get_settings
from app.core.exceptions import CallRoutingError
from app.core.logging import setup_structured_logging
from app.core.routing import create_routing_service
from app.telephony import router as telephony_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Configure logging
        - Load the routing catalog and create the routing service
          (unless one was injected on app.state)
        - Start the session cleanup loop

    Shutdown:
        - Cancel in-flight call work and clear sessions
        - Close the classifier client
    """
    settings: Settings = app.state.settings

    # === Startup ===
    setup_structured_logging(settings.app_log_level, json_format=settings.log_json_format)
    logger.info("CallRoute starting in %s mode", settings.app_env)

    routing = getattr(app.state, "routing", None)
    if routing is None:
        routing = create_routing_service(settings)
        app.state.routing = routing

    await routing.startup()

    logger.info(
        "Routing ready: numbers=%d, default_provider=%s, classifier=%s",
        len(routing.registry),
        settings.telephony_provider,
        settings.classifier_backend,
    )
    logger.info(
        "   Webhooks: signature_validation=%s, route_action=%s",
        settings.validate_webhook_signatures,
        settings.route_action_url,
    )
    if settings.is_production and not settings.validate_webhook_signatures:
        logger.warning("Webhook signature validation is disabled in production")

    yield

    # === Shutdown ===
    logger.info("CallRoute shutting down")
    await routing.shutdown()
    logger.info("Shutdown complete")


async def call_routing_error_handler(request: Request, exc: CallRoutingError) -> JSONResponse:
    """Render domain errors as {"error": code, "message": ...}."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Application factory."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="CallRoute",
        description="Multi-tenant call routing with L1/L2/L3 escalation",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    app.add_exception_handler(CallRoutingError, call_routing_error_handler)

    # --- Routes ---
    app.include_router(health.router)
    app.include_router(telephony_router.router)

    @app.get("/")
    async def root():
        """Root health check."""
        return {
            "service": "CallRoute",
            "status": "operational",
            "version": __version__,
        }

    return app


# Create app instance
app = create_app()
