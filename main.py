"""
ShearWork calendar-integration service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_exception_handlers, register_middleware
from api.routes import router as api_router
from config.settings import Settings, config
from connectors.routes import acuity_router, router as integrations_router, square_router
from core.container import ServiceContainer

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "asyncio", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the app.  Clients are created in the lifespan from ``settings``
    unless a ready ``container`` is passed in (tests).
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = container is None
        app.state.container = container or await ServiceContainer.start(settings)
        logger.info(
            "Application ready (providers: %s)", app.state.container.registry.list_configured()
        )
        try:
            yield
        finally:
            if owned:
                await app.state.container.aclose()

    app = FastAPI(
        title="ShearWork Calendar Integrations",
        version="1.0.0",
        description="Booking-provider OAuth, token lifecycle and availability sync.",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(acuity_router, prefix="/api")
    app.include_router(square_router, prefix="/api")
    app.include_router(integrations_router, prefix="/api")
    app.include_router(api_router, prefix="/api")

    @app.get("/health", include_in_schema=False)
    async def health_check() -> Dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
