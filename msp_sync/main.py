from contextlib import asynccontextmanager
import logging
from datetime import datetime
from fastapi import FastAPI

from msp_sync.config import settings
from msp_sync.core.errors import ConfigurationError
from msp_sync.database import init_db
from msp_sync.api import health, sync


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events for the application."""
    # Startup
    await init_db()
    try:
        settings.connectwise_config()
    except ConfigurationError as e:
        # Status and health endpoints stay available; sync requests return 503
        logging.error(f"ConnectWise configuration invalid: {e}")

    yield


app = FastAPI(
    title=settings.app_title,
    description=settings.app_description,
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(sync.router)
app.include_router(health.router)


@app.get("/health")
async def health_legacy():
    """
    Plain liveness check.

    For detailed health checks, use /api/health instead.
    """
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "msp_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=True
    )
