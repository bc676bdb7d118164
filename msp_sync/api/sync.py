"""Sync status and trigger API."""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import async_sessionmaker

from msp_sync.core.errors import ConfigurationError
from msp_sync.core.staleness import StalenessGate
from msp_sync.core.store import SyncStore
from msp_sync.core.sync_engine import open_sync_engine
from msp_sync.core.sync_ledger import SyncLedger, parse_entity_types
from msp_sync.database import get_session_maker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

# One sync at a time per process
_sync_lock = asyncio.Lock()


def get_connectwise_transport() -> Optional[httpx.AsyncBaseTransport]:
    """HTTP transport for the ConnectWise client; None uses the network."""
    return None


class SyncRequest(BaseModel):
    force: bool = False
    entities: List[str] = []  # empty syncs every entity type

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, v: List[str]) -> List[str]:
        return parse_entity_types(v)


class LedgerEntryResponse(BaseModel):
    entity_type: str
    status: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    age_hours: Optional[float] = None
    record_count: int = 0
    error_message: Optional[str] = None
    next_mode: str  # what the next run would do: "skip", "full" or "incremental"


class SyncStatusResponse(BaseModel):
    running: bool
    entries: List[LedgerEntryResponse]


class StageResultResponse(BaseModel):
    entity_type: str
    mode: str
    synced: bool
    count: int
    failed_records: int
    message: str
    warnings: List[str] = []


class SyncRunResponse(BaseModel):
    status: str
    started_at: str
    finished_at: Optional[str] = None
    stages: List[StageResultResponse]
    warnings: List[str]
    error: Optional[str] = None


@router.get("", response_model=SyncStatusResponse)
async def sync_status(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """Ledger state per entity type and what the gate would decide now."""
    now = datetime.utcnow()
    ledger = SyncLedger(SyncStore(session_maker))
    gate = StalenessGate(ledger)

    entries = []
    for row in await ledger.status_report(now):
        decision = await gate.evaluate(row["entity_type"], now)
        entries.append(LedgerEntryResponse(**row, next_mode=decision.mode))

    return SyncStatusResponse(running=_sync_lock.locked(), entries=entries)


@router.post("", response_model=SyncRunResponse)
async def trigger_sync(
    request: Optional[SyncRequest] = None,
    session_maker: async_sessionmaker = Depends(get_session_maker),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_connectwise_transport),
):
    """
    Run a sync now.

    The staleness gate still applies unless ``force`` is set; ``entities``
    limits the run to the named entity types. Returns 409 while another
    sync is running, 422 for unknown entity types and 503 when credentials
    are missing.
    """
    request = request or SyncRequest()
    if _sync_lock.locked():
        raise HTTPException(status_code=409, detail="A sync is already running")

    async with _sync_lock:
        try:
            async with open_sync_engine(session_maker, transport=transport) as engine:
                result = await engine.run(force=request.force, entities=request.entities)
        except ConfigurationError as e:
            logger.error(f"Sync not started: {e}")
            raise HTTPException(status_code=503, detail=str(e))

    return result.to_dict()
