"""Per entity type record of sync attempts (the ``sync_logs`` table)."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from msp_sync.core.store import SyncStore
from msp_sync.models import SyncLog

logger = logging.getLogger(__name__)


MEMBERS = "members"
BOARDS = "boards"
TICKETS = "tickets"
TIME_ENTRIES = "timeEntries"
PROJECTS = "projects"
PROJECT_TICKETS = "projectTickets"

ENTITY_TYPES = (MEMBERS, BOARDS, TICKETS, TIME_ENTRIES, PROJECTS, PROJECT_TICKETS)

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_PARTIAL = "partial"


def parse_entity_types(names: Iterable[str]) -> List[str]:
    """
    Validate requested entity type names.

    Raises:
        ValueError: If a name is not one of ``ENTITY_TYPES``
    """
    requested = [name.strip() for name in names if name.strip()]
    unknown = sorted(set(requested) - set(ENTITY_TYPES))
    if unknown:
        raise ValueError(
            f"Unknown entity type(s): {', '.join(unknown)}; "
            f"expected one of {', '.join(ENTITY_TYPES)}"
        )
    return [et for et in ENTITY_TYPES if et in requested]


class SyncLedger:
    """
    Reads and writes ledger rows.

    ``last_sync_at`` only ever moves on success; a failure or a truncated
    fetch updates the status and error message of the row and leaves the
    watermark alone.
    """

    def __init__(self, store: SyncStore):
        self.store = store

    async def get(self, entity_type: str) -> Optional[SyncLog]:
        async with self.store.session_maker() as session:
            result = await session.execute(
                select(SyncLog).where(SyncLog.entity_type == entity_type)
            )
            return result.scalar_one_or_none()

    async def entries(self) -> Dict[str, SyncLog]:
        async with self.store.session_maker() as session:
            result = await session.execute(select(SyncLog))
            return {log.entity_type: log for log in result.scalars().all()}

    async def record_success(
        self, entity_type: str, synced_at: datetime, record_count: Optional[int] = None
    ) -> None:
        """
        Move the watermark to ``synced_at``.

        ``record_count`` None keeps the stored total; incremental stages only
        see the records modified since the previous run.
        """
        row = {
            "entity_type": entity_type,
            "last_sync_at": synced_at,
            "status": STATUS_SUCCESS,
            "error_message": None,
            "updated_at": datetime.utcnow(),
        }
        if record_count is not None:
            row["record_count"] = record_count
        await self.store.upsert(SyncLog, row)
        logger.info(
            f"Ledger: {entity_type} synced at {synced_at.isoformat()} "
            f"({record_count if record_count is not None else 'unchanged'} records)"
        )

    async def record_partial(self, entity_type: str, warning: str) -> None:
        """Record a stage that ran on truncated data; the watermark stays put."""
        await self.store.upsert(SyncLog, {
            "entity_type": entity_type,
            "status": STATUS_PARTIAL,
            "error_message": warning[:2000],
            "updated_at": datetime.utcnow(),
        })
        logger.warning(f"Ledger: {entity_type} incomplete: {warning}")

    async def record_failure(self, entity_type: str, error_message: str) -> None:
        await self.store.upsert(SyncLog, {
            "entity_type": entity_type,
            "status": STATUS_FAILURE,
            "error_message": error_message[:2000],
            "updated_at": datetime.utcnow(),
        })
        logger.warning(f"Ledger: {entity_type} failed: {error_message}")

    async def status_report(self, now: Optional[datetime] = None) -> List[Dict]:
        """One row per known entity type, including types never synced."""
        now = now or datetime.utcnow()
        logs = await self.entries()
        report = []
        for entity_type in ENTITY_TYPES:
            log = logs.get(entity_type)
            last_sync_at = log.last_sync_at if log else None
            report.append({
                "entity_type": entity_type,
                "status": log.status if log else None,
                "last_sync_at": last_sync_at,
                "age_hours": round((now - last_sync_at).total_seconds() / 3600, 2) if last_sync_at else None,
                "record_count": log.record_count if log else 0,
                "error_message": log.error_message if log else None,
            })
        return report
