"""Application factory for the FastAPI app.

Builds the app and binds the process-wide cache manager and the global rate
governor to its lifespan: both are created at startup, stored on
``app.state`` and released at shutdown.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from serviplay.api.routes import health_router
from serviplay.core.cache import CacheManager
from serviplay.core.config import API_VERSION, settings
from serviplay.core.exception_handlers import setup_exception_handlers
from serviplay.core.logging import configure_logging
from serviplay.core.middleware import request_id_middleware
from serviplay.core.openapi import apply_openapi_customizations
from serviplay.core.rate_limit import RateGovernor, RateLimitConfig


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    cache: CacheManager = app.state.cache
    await cache.connect()
    try:
        yield
    finally:
        await cache.close()


def create_app(cache: CacheManager | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        cache: Cache manager to use; built from settings when omitted.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Serviplay API",
        description=(
            "Backend de Serviplay: conecta Ases (proveedores de servicios) con "
            "Exploradores. Todas las rutas públicas pasan por un limitador de "
            "ventana fija respaldado por Redis, con caché en memoria cuando "
            "Redis no está disponible."
        ),
        version=API_VERSION,
        debug=settings.app.debug,
        lifespan=lifespan,
    )

    app.state.cache = cache if cache is not None else CacheManager.from_settings(settings.redis)
    app.state.rate_governor = RateGovernor(
        app.state.cache,
        RateLimitConfig.from_settings(settings.rate_limit),
    )

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)
    app.include_router(health_router, prefix="/api")

    apply_openapi_customizations(app)

    return app
