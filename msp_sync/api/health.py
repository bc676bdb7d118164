"""Health check API for monitoring system status."""

import time
from datetime import datetime
from importlib.metadata import version, PackageNotFoundError
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from msp_sync.api.sync import get_connectwise_transport
from msp_sync.config import settings
from msp_sync.core.connectwise_client import ConnectWiseClient
from msp_sync.core.errors import ConfigurationError, ConnectWiseClientError
from msp_sync.core.rate_limiter import RateLimiter
from msp_sync.database import get_db
from msp_sync.models import SyncLog

try:
    __version__ = version("msp-sync")
except PackageNotFoundError:
    __version__ = "0.1.0"


router = APIRouter(prefix="/api/health", tags=["health"])


class ComponentHealth(BaseModel):
    """Health status of a single component."""
    name: str
    status: str  # "healthy", "degraded", "unhealthy"
    message: Optional[str] = None
    latency_ms: Optional[float] = None


class HealthResponse(BaseModel):
    """Complete health check response."""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    version: str
    components: List[ComponentHealth]


class QuickHealthResponse(BaseModel):
    """Quick health check for load balancers."""
    status: str
    timestamp: str


@router.get("/quick", response_model=QuickHealthResponse)
async def quick_health():
    """
    Quick health check for load balancers and uptime monitors.

    Returns immediately without checking external dependencies.
    """
    return QuickHealthResponse(
        status="healthy",
        timestamp=datetime.utcnow().isoformat()
    )


@router.get("", response_model=HealthResponse)
async def detailed_health(
    test: bool = Query(
        False,
        description="Whether to test ConnectWise connectivity (fetches one member)"
    ),
    db: AsyncSession = Depends(get_db),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_connectwise_transport),
):
    """
    Detailed health check with component status.

    Reports database connectivity and whether ConnectWise credentials are
    configured. With ``test=true`` a single one-record request is made to
    confirm the credentials work.
    """
    components: List[ComponentHealth] = []
    overall_status = "healthy"

    db_health = await _check_database(db)
    components.append(db_health)
    if db_health.status == "unhealthy":
        overall_status = "unhealthy"

    try:
        config = settings.connectwise_config()
        components.append(ComponentHealth(
            name="configuration",
            status="healthy",
            message=f"ConnectWise credentials configured for {config.base_url}"
        ))
    except ConfigurationError as e:
        config = None
        overall_status = "unhealthy"
        components.append(ComponentHealth(name="configuration", status="unhealthy", message=str(e)))

    if test and config is not None:
        remote = await _check_connectwise(config, transport)
        components.append(remote)
        if remote.status != "healthy" and overall_status == "healthy":
            overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        components=components,
    )


async def _check_database(db: AsyncSession) -> ComponentHealth:
    """Check database connectivity."""
    start = time.perf_counter()

    try:
        await db.execute(select(func.count()).select_from(SyncLog))
        latency = (time.perf_counter() - start) * 1000

        return ComponentHealth(
            name="database",
            status="healthy",
            message="Connected",
            latency_ms=round(latency, 2)
        )
    except Exception as e:
        return ComponentHealth(
            name="database",
            status="unhealthy",
            message=f"Connection failed: {str(e)}"
        )


async def _check_connectwise(config, transport) -> ComponentHealth:
    """Fetch a single member to confirm the API accepts the credentials."""
    start = time.perf_counter()
    async with ConnectWiseClient(
        config,
        rate_limiter=RateLimiter(delay_ms=0, max_retries=0),
        transport=transport,
    ) as client:
        try:
            await client.request("/system/members", page_size=1, fields="id")
        except ConnectWiseClientError as e:
            return ComponentHealth(
                name="connectwise",
                status="unhealthy",
                message=f"Connection failed: {e}"
            )
        codebase = client.codebase_resolver.resolved

    latency = (time.perf_counter() - start) * 1000
    return ComponentHealth(
        name="connectwise",
        status="healthy",
        message=f"Connected (codebase {codebase})",
        latency_ms=round(latency, 2)
    )
