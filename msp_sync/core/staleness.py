"""
Staleness gate: decides whether an entity type may be fetched again.

The remote API is metered, so re-syncs are refused inside a minimum
interval. Data older than the stale threshold is re-fetched in full;
anything in between is fetched incrementally from the last successful
sync.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from msp_sync.config import settings
from msp_sync.core.sync_ledger import BOARDS, MEMBERS, SyncLedger

logger = logging.getLogger(__name__)


SKIP = "skip"
FULL = "full"
INCREMENTAL = "incremental"

# Small collections that are always fetched whole
FULL_ONLY_ENTITY_TYPES = {MEMBERS, BOARDS}


@dataclass
class GateDecision:
    """Outcome of the gate for one entity type."""
    mode: str
    reason: str
    watermark: Optional[datetime] = None
    allow_incremental_fallback: bool = False

    @property
    def should_sync(self) -> bool:
        return self.mode != SKIP

    @property
    def is_incremental(self) -> bool:
        return self.mode == INCREMENTAL


def decide(
    last_sync_at: Optional[datetime],
    now: datetime,
    minimum_interval: timedelta,
    stale_threshold: timedelta,
) -> GateDecision:
    """Pure gate policy over the age of the last successful sync."""
    if last_sync_at is None:
        return GateDecision(FULL, "never synced")

    age = now - last_sync_at
    hours = age.total_seconds() / 3600

    if age < minimum_interval:
        return GateDecision(SKIP, f"synced {hours:.1f}h ago, minimum interval not reached")
    if age > stale_threshold:
        return GateDecision(FULL, f"synced {hours:.1f}h ago, data is stale")
    return GateDecision(INCREMENTAL, f"synced {hours:.1f}h ago", watermark=last_sync_at)


class StalenessGate:
    """Applies ``decide`` to ledger rows."""

    def __init__(
        self,
        ledger: SyncLedger,
        minimum_interval: Optional[timedelta] = None,
        stale_threshold: Optional[timedelta] = None,
        allow_incremental_fallback: Optional[bool] = None,
    ):
        self.ledger = ledger
        self.minimum_interval = minimum_interval or timedelta(hours=settings.minimum_sync_interval_hours)
        self.stale_threshold = stale_threshold or timedelta(hours=settings.stale_threshold_hours)
        if allow_incremental_fallback is None:
            allow_incremental_fallback = settings.sync_incremental_fallback
        self.allow_incremental_fallback = allow_incremental_fallback

    async def evaluate(self, entity_type: str, now: Optional[datetime] = None) -> GateDecision:
        now = now or datetime.utcnow()
        log = await self.ledger.get(entity_type)
        decision = decide(
            log.last_sync_at if log else None,
            now,
            self.minimum_interval,
            self.stale_threshold,
        )
        if decision.mode == INCREMENTAL and entity_type in FULL_ONLY_ENTITY_TYPES:
            decision = GateDecision(FULL, f"{decision.reason}; {entity_type} always syncs in full")
        decision.allow_incremental_fallback = self.allow_incremental_fallback
        logger.debug(f"Gate {entity_type}: {decision.mode} ({decision.reason})")
        return decision

    async def should_sync(self, entity_type: str, now: Optional[datetime] = None) -> bool:
        return (await self.evaluate(entity_type, now)).should_sync
