"""FastAPI application entrypoint.

Configures sessions and CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import models  # noqa: F401  (Alembic discovers metadata through this import)
from . import schemas
from .deps import get_settings
from .routers import oauth as oauth_router
from .routers import stores as stores_router
from .routers import webhooks as webhooks_router
from .telemetry import init_sentry
from .workers.arq_enqueue import reset_arq_pool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="storelink API",
        description="""
        storelink connects merchant stores on Shopify and Squarespace and keeps
        a local mirror of their products and orders.

        This API provides endpoints for:
        - Connecting and disconnecting stores (OAuth 2.0)
        - Receiving signed platform webhooks
        - Store administration: activate/deactivate, product creation and duplication,
          full catalog sync, manual order item mapping
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto so OAuth redirect URLs keep https behind a load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    if settings.SESSION_SECRET_KEY == "change-this-session-secret":
        logger.warning("[STARTUP] Using default session secret. Set SESSION_SECRET_KEY for production.")

    # Carries the nonce OAuth states are bound to
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        same_site="lax",
        https_only=settings.FRONTEND_URL.startswith("https://"),
        max_age=settings.OAUTH_STATE_TTL_SECONDS * 6,
    )

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(oauth_router.router)
    app.include_router(webhooks_router.router)
    app.include_router(stores_router.router)

    @app.get("/health", response_model=schemas.HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def close_job_queue():
        await reset_arq_pool()

    return app


app = create_app()
