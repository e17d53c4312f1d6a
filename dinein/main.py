"""
Dine-in Engine - Main Application Entry Point
Table sessions, order lifecycle and realtime fan-out for dine-in restaurants
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import structlog

from dinein.core.config import Settings, get_settings
from dinein.core.database import create_engine_from_settings, create_session_factory, init_db
from dinein.core.logging_config import configure_logging
from dinein.services.container import build_services
from dinein.api import orders, scan, table_sessions, tables, websockets

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    settings: Settings = app.state.settings

    # Startup
    logger.info("Initializing dine-in engine", environment=settings.ENVIRONMENT)
    engine = create_engine_from_settings(settings)
    if settings.DATABASE_CREATE_TABLES:
        await init_db(engine)

    services = build_services(settings, create_session_factory(engine))
    app.state.services = services

    if settings.REAPER_ENABLED:
        await services.reaper.start()

    yield

    # Shutdown
    logger.info("Shutting down dine-in engine")
    await services.reaper.stop()
    await engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application"""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Dine-in table sessions, order lifecycle and realtime updates",
        version="1.0.0",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure middleware stack
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    prefix = settings.API_V1_PREFIX
    app.include_router(scan.router, prefix=f"{prefix}/scan", tags=["scan"])
    app.include_router(orders.router, prefix=f"{prefix}/orders", tags=["orders"])
    app.include_router(table_sessions.router, prefix=f"{prefix}/table-sessions", tags=["table-sessions"])
    app.include_router(tables.router, prefix=f"{prefix}/tables", tags=["tables"])
    app.include_router(websockets.router, prefix=f"{prefix}/ws", tags=["websockets"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        services = getattr(app.state, "services", None)
        return {
            "status": "healthy",
            "service": "dinein-engine",
            "reaper_running": bool(services and services.reaper.running),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "dinein.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
