"""
CRM Sync Engine - FastAPI Application Entry Point

Synchronizes Pipedrive persons and organizations into the local database
and replicates local changes back to Pipedrive.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import crm_sync, health
from app.core.config import ConfigurationError, get_settings, validate_crm_settings
from app.db.base import Base
from app.db.session import async_engine

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.app_debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def check_configuration() -> None:
    """
    Validates the Pipedrive and sync settings.

    Raises:
        ConfigurationError: Listing every invalid setting
    """
    errors = validate_crm_settings(settings)
    if errors:
        for error in errors:
            logger.error(f"❌ Configuration error: {error}")
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors))
    logger.info("✅ Configuration valid")


async def init_database():
    """Initialize database tables."""
    # Import all models to ensure they're registered with Base
    from app.models import crm, sync  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database tables initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    Runs startup and shutdown logic.
    """
    # Startup
    logger.info("🚀 Starting CRM Sync Engine...")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Debug Mode: {settings.app_debug}")
    logger.info(f"Pipedrive API: {settings.pipedrive_api_url}")

    check_configuration()
    await init_database()

    logger.info("✅ Startup complete! Ready to accept requests.")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("👋 Shutting down CRM Sync Engine...")
    await async_engine.dispose()
    logger.info("✅ Shutdown complete")


app = FastAPI(
    title="CRM Sync Engine",
    description="Pipedrive synchronization with timeout, retry and recovery handling",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(health.router, prefix="/api/v1", tags=["Health"])
app.include_router(crm_sync.router, prefix="/api/v1", tags=["CRM Sync"])


@app.get("/", tags=["Health"])
async def root():
    """Liveness endpoint."""
    return {
        "status": "healthy",
        "service": "CRM Sync Engine",
        "version": "0.1.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
    )
