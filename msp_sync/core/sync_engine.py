"""
Sync orchestrator.

Runs the stages in dependency order::

    members -> boards -> timeEntries -> (discovery) -> projects -> tickets -> projectTickets

Each stage is gated by the staleness policy, commits its own writes and
reports to the sync ledger as soon as it finishes. A failing stage aborts
the rest of the run; record level failures are logged and skipped.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

import httpx

from msp_sync.config import settings
from msp_sync.core.connectwise_client import ConnectWiseClient
from msp_sync.core.discovery import DiscoveryResult, discover
from msp_sync.core.errors import ConnectWiseClientError, RecordShapeError, SyncStageError
from msp_sync.core.fetchers import CollectionFetcher, chunked
from msp_sync.core.mapping import (
    board_row,
    default_board_row,
    is_service_board,
    member_row,
    placeholder_project_row,
    placeholder_ticket_row,
    project_audit_row,
    project_row,
    project_ticket_row,
    synthesized_board_row,
    ticket_matches_engineers,
    ticket_row,
    time_entry_row,
)
from msp_sync.core.rate_limiter import BatchOperationTracker
from msp_sync.core.schemas import BoardRecord, TicketRecord, TimeEntryRecord, ref_name
from msp_sync.core.staleness import FULL, INCREMENTAL, SKIP, GateDecision, StalenessGate
from msp_sync.core.store import SyncStore
from msp_sync.core.sync_ledger import (
    BOARDS,
    MEMBERS,
    PROJECT_TICKETS,
    PROJECTS,
    TICKETS,
    TIME_ENTRIES,
    SyncLedger,
    parse_entity_types,
)
from msp_sync.database import AsyncSessionLocal
from msp_sync.models import Board, Member, Project, ProjectAudit, ProjectTicket, Ticket, TimeEntry

logger = logging.getLogger(__name__)


STAGE_ORDER = (MEMBERS, BOARDS, TIME_ENTRIES, PROJECTS, TICKETS, PROJECT_TICKETS)

RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_SKIPPED = "skipped"

AUDITED_PROJECT_STATUSES = {"Closed", "Ready to Close"}


@dataclass
class StageResult:
    """Outcome of one stage."""
    entity_type: str
    mode: str
    synced: bool = False
    count: int = 0
    failed_records: int = 0
    message: str = ""
    warnings: List[str] = field(default_factory=list)


@dataclass
class SyncRunResult:
    """Outcome of a whole run."""
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    stages: List[StageResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def stage(self, entity_type: str) -> Optional[StageResult]:
        for stage in self.stages:
            if stage.entity_type == entity_type:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass
class _RunContext:
    """State handed from one stage to the next within a run."""
    now: datetime
    known_project_ids: Set[int] = field(default_factory=set)
    member_ids: List[int] = field(default_factory=list)
    boards: Optional[List[BoardRecord]] = None
    time_entries: List[TimeEntryRecord] = field(default_factory=list)
    discovery: DiscoveryResult = field(default_factory=DiscoveryResult)
    placeholder_board_id: Optional[int] = None


class SyncEngine:
    """Mirror the remote collections into the local store."""

    def __init__(
        self,
        client: ConnectWiseClient,
        store: SyncStore,
        *,
        ledger: Optional[SyncLedger] = None,
        gate: Optional[StalenessGate] = None,
        fetcher: Optional[CollectionFetcher] = None,
        engineer_identifiers: Optional[Sequence[str]] = None,
        service_board_names: Optional[Sequence[str]] = None,
        batch_size: Optional[int] = None,
        lookback_days: Optional[int] = None,
        sync_project_audits: Optional[bool] = None,
    ):
        self.client = client
        self.store = store
        self.ledger = ledger or SyncLedger(store)
        self.gate = gate or StalenessGate(self.ledger)
        self.fetcher = fetcher or CollectionFetcher(client)
        if engineer_identifiers is None:
            engineer_identifiers = settings.allowed_engineer_identifiers
        self.engineer_identifiers = [i.lower() for i in engineer_identifiers]
        if not self.engineer_identifiers:
            logger.warning("No allowed engineers configured, nothing will be synced")
        self.service_board_names = list(service_board_names or settings.service_board_names)
        self.batch_size = batch_size or settings.upsert_batch_size
        self.lookback_days = lookback_days or settings.time_entry_lookback_days
        if sync_project_audits is None:
            sync_project_audits = settings.sync_project_audits
        self.sync_project_audits = sync_project_audits

        self._stages: Dict[str, Callable[[GateDecision, _RunContext], Awaitable[StageResult]]] = {
            MEMBERS: self._sync_members,
            BOARDS: self._sync_boards,
            TIME_ENTRIES: self._sync_time_entries,
            PROJECTS: self._sync_projects,
            TICKETS: self._sync_tickets,
            PROJECT_TICKETS: self._sync_project_tickets,
        }

    async def run(
        self,
        force: bool = False,
        now: Optional[datetime] = None,
        entities: Optional[Sequence[str]] = None,
    ) -> SyncRunResult:
        """
        Run one sync.

        Args:
            force: Ignore the staleness gate and fetch everything in full
            now: Run timestamp (naive UTC); defaults to the current time
            entities: Entity types to sync; None or empty syncs all of them

        Returns:
            SyncRunResult with status "success", "partial", "failed" or "skipped"

        Raises:
            ValueError: If ``entities`` names an unknown entity type
        """
        selected = set(parse_entity_types(entities or []) or STAGE_ORDER)
        now = now or datetime.utcnow()
        result = SyncRunResult(status=RUN_SUCCESS, started_at=now)
        warnings_before = len(self.client.fetch_warnings)

        decisions: Dict[str, GateDecision] = {}
        for entity_type in STAGE_ORDER:
            if entity_type not in selected:
                decisions[entity_type] = GateDecision(SKIP, "not requested")
            elif force:
                decisions[entity_type] = GateDecision(FULL, "forced full sync")
            else:
                decisions[entity_type] = await self.gate.evaluate(entity_type, now)

        if not any(d.should_sync for d in decisions.values()):
            logger.info("All entity types are fresh, nothing to sync")
            result.status = RUN_SKIPPED
            result.stages = [
                StageResult(entity_type, SKIP, message=decisions[entity_type].reason)
                for entity_type in STAGE_ORDER
            ]
            result.finished_at = datetime.utcnow()
            return result

        logger.info(
            "Starting sync: "
            + ", ".join(f"{et}={decisions[et].mode}" for et in STAGE_ORDER)
        )
        ctx = _RunContext(now=now, known_project_ids=set(await self.store.all_ids(Project)))
        self.client.rate_limiter.start_tracking()

        for entity_type in STAGE_ORDER:
            decision = decisions[entity_type]

            if not decision.should_sync:
                logger.info(f"Skipping {entity_type}: {decision.reason}")
                if entity_type == MEMBERS:
                    ctx.member_ids = await self.store.member_ids(self.engineer_identifiers)
                result.stages.append(StageResult(entity_type, SKIP, message=decision.reason))
            else:
                stage_warnings_before = len(self.client.fetch_warnings)
                try:
                    stage = await self._run_stage(entity_type, decision, ctx)
                except Exception as e:
                    error = SyncStageError(entity_type, e)
                    logger.error(f"Sync stage {entity_type} failed: {e}", exc_info=True)
                    await self.ledger.record_failure(entity_type, str(e))
                    result.stages.append(
                        StageResult(entity_type, decision.mode, synced=False, message=f"Failed: {e}")
                    )
                    result.status = RUN_FAILED
                    result.error = str(error)
                    break

                stage.warnings = list(self.client.fetch_warnings[stage_warnings_before:])
                if stage.warnings:
                    stage.message += f", incomplete ({len(stage.warnings)} fetch warning(s))"
                    await self.ledger.record_partial(entity_type, "; ".join(stage.warnings))
                    result.status = RUN_PARTIAL
                else:
                    record_count = None if stage.mode == INCREMENTAL else stage.count
                    await self.ledger.record_success(entity_type, now, record_count)
                result.stages.append(stage)

            if entity_type == TIME_ENTRIES:
                ctx.discovery = discover(ctx.time_entries)

        result.warnings = list(self.client.fetch_warnings[warnings_before:])
        result.finished_at = datetime.utcnow()
        metrics = self.client.rate_limiter.get_metrics()
        logger.info(
            f"Sync {result.status}: {metrics['request_count']} API request(s) in "
            f"{metrics['duration_seconds']}s ({len(result.warnings)} fetch warning(s))"
        )
        return result

    async def _run_stage(self, entity_type: str, decision: GateDecision, ctx: _RunContext) -> StageResult:
        stage_fn = self._stages[entity_type]
        try:
            return await stage_fn(decision, ctx)
        except Exception as e:
            if not (decision.is_incremental and decision.allow_incremental_fallback):
                raise
            logger.warning(
                f"Incremental sync of {entity_type} failed ({e}), falling back to full sync"
            )
            stage = await stage_fn(GateDecision(FULL, "incremental fallback"), ctx)
            stage.message = f"Fallback full sync: {stage.count} records (incremental failed)"
            return stage

    async def _persist(
        self,
        label: str,
        records: Sequence[Any],
        write: Callable[[Any], Awaitable[None]],
    ) -> BatchOperationTracker:
        """
        Write records in batches; writes within a batch run concurrently.

        Records that cannot be mapped or violate a constraint are logged and
        skipped. Any other error fails the stage once its batch has settled.
        """
        tracker = BatchOperationTracker(len(records))

        async def _write_one(record: Any) -> None:
            try:
                await write(record)
            except (RecordShapeError, IntegrityError) as e:
                message = f"Skipping {label} {getattr(record, 'id', '?')}: {e}"
                logger.warning(message)
                tracker.record_failure(message)
                return
            tracker.record_success()

        for batch in chunked(list(records), self.batch_size):
            outcomes = await asyncio.gather(
                *(_write_one(record) for record in batch), return_exceptions=True
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            logger.debug(f"Persisted {label} batch: {tracker.get_progress()}")

        summary = tracker.get_summary()
        logger.info(
            f"Persisted {summary['succeeded']}/{summary['total']} {label} record(s) "
            f"in {summary['duration_seconds']}s"
        )
        return tracker

    def _stage_result(
        self, entity_type: str, decision: GateDecision, tracker: BatchOperationTracker, extra: str = ""
    ) -> StageResult:
        message = f"{decision.mode} sync: {tracker.succeeded} records"
        if tracker.failed:
            message += f", {tracker.failed} skipped"
        if extra:
            message += f", {extra}"
        return StageResult(
            entity_type,
            decision.mode,
            synced=True,
            count=tracker.succeeded,
            failed_records=tracker.failed,
            message=message,
        )

    async def _sync_members(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        records = await self.fetcher.get_members()
        allowed = set(self.engineer_identifiers)
        members = [
            m for m in records
            if m.identifier and m.identifier.lower() in allowed and not m.inactive_flag
        ]
        logger.info(f"Found {len(records)} active members, {len(members)} allowed engineers")

        tracker = await self._persist(
            "member", members, lambda m: self.store.upsert(Member, member_row(m))
        )
        ctx.member_ids = sorted(await self.store.existing_ids(Member, [m.id for m in members]))
        return self._stage_result(MEMBERS, decision, tracker)

    async def _sync_boards(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        ctx.boards = await self.fetcher.get_boards()
        tracker = await self._persist(
            "board", ctx.boards, lambda b: self.store.upsert(Board, board_row(b))
        )
        return self._stage_result(BOARDS, decision, tracker)

    async def _ensure_placeholder_board(self) -> int:
        """Board for placeholder tickets: the lowest existing board, or a default one."""
        board_id = await self.store.first_board_id()
        if board_id is not None:
            return board_id
        row = default_board_row()
        await self.store.insert_if_absent(Board, row)
        logger.info(f"No boards stored, created {row['name']} (id {row['id']}) for placeholder tickets")
        return row["id"]

    async def _sync_time_entries(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        if not ctx.member_ids:
            logger.warning("No allowed members in the store, no time entries to sync")
            ctx.time_entries = []
            return StageResult(TIME_ENTRIES, decision.mode, synced=True, message="No allowed members")

        start = ctx.now - timedelta(days=self.lookback_days)
        records = await self.fetcher.get_time_entries(
            ctx.member_ids, start=start, modified_since=decision.watermark
        )
        allowed_member_ids = set(ctx.member_ids)
        entries = [e for e in records if e.member_ref in allowed_member_ids]
        ctx.time_entries = entries
        logger.info(f"Fetched {len(records)} time entries, {len(entries)} for allowed engineers")

        if any(e.ticket_ref for e in entries):
            ctx.placeholder_board_id = await self._ensure_placeholder_board()

        async def write(entry: TimeEntryRecord) -> None:
            row = time_entry_row(entry)
            # Referenced rows must exist before the entry; real data replaces
            # the placeholders in the projects and tickets stages.
            if row["ticket_id"]:
                await self.store.insert_if_absent(
                    Ticket, placeholder_ticket_row(row["ticket_id"], ctx.placeholder_board_id)
                )
            if row["project_id"]:
                await self.store.insert_if_absent(Project, placeholder_project_row(row["project_id"]))
            await self.store.upsert(TimeEntry, row)

        tracker = await self._persist("time entry", entries, write)
        return self._stage_result(TIME_ENTRIES, decision, tracker)

    async def _sync_projects(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        projects = await self.fetcher.get_projects(
            self.engineer_identifiers, modified_since=decision.watermark
        )
        remainder = ctx.discovery.remainder([p.id for p in projects], []).project_ids
        if remainder:
            logger.info(f"Fetching {len(remainder)} project(s) discovered through time entries")
            projects = projects + await self.fetcher.get_projects_by_ids(remainder)

        tracker = await self._persist(
            "project", projects, lambda p: self.store.upsert(Project, project_row(p))
        )

        extra = ""
        if self.sync_project_audits:
            closing_ids = [
                p.id for p in projects if ref_name(p.status) in AUDITED_PROJECT_STATUSES
            ]
            stored = await self.store.existing_ids(Project, closing_ids)
            inserted = await self._sync_project_audits(sorted(stored))
            extra = f"{inserted} audit entries"
        return self._stage_result(PROJECTS, decision, tracker, extra)

    async def _sync_project_audits(self, project_ids: List[int]) -> int:
        """Store status changes of closing projects; failures are logged per project."""
        if not project_ids:
            return 0
        logger.info(f"Syncing audit trails for {len(project_ids)} closed/ready-to-close project(s)")

        inserted = 0
        for project_id in project_ids:
            try:
                entries = await self.fetcher.get_audit_trail("Project", project_id)
            except ConnectWiseClientError as e:
                logger.warning(f"Could not fetch audit trail for project {project_id}: {e}")
                continue

            for entry in entries:
                if not entry.is_status_change:
                    continue
                try:
                    if await self.store.insert_if_absent(ProjectAudit, project_audit_row(project_id, entry)):
                        inserted += 1
                except RecordShapeError as e:
                    logger.debug(f"Skipping audit entry: {e}")
        return inserted

    async def _sync_tickets(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        if ctx.boards is None:
            ctx.boards = await self.fetcher.get_boards()
        service_board_ids = {
            b.id for b in ctx.boards if is_service_board(b.name, self.service_board_names)
        }

        primary: List[TicketRecord] = []
        if service_board_ids:
            primary = await self.fetcher.get_tickets(
                service_board_ids,
                engineer_identifiers=self.engineer_identifiers,
                modified_since=decision.watermark,
            )
        else:
            logger.warning("No configured service boards found remotely")

        tickets = [t for t in primary if ticket_matches_engineers(t, self.engineer_identifiers)]
        logger.info(f"Filtered {len(primary)} tickets to {len(tickets)} relevant to allowed engineers")

        # Time entries may reference tickets the ownership query did not return
        kept_ids: Set[int] = {t.id for t in tickets}
        primary_by_id = {t.id: t for t in primary}
        discovered = [
            primary_by_id[i] for i in sorted(ctx.discovery.ticket_ids)
            if i in primary_by_id and i not in kept_ids
        ]
        remainder = ctx.discovery.remainder([], primary_by_id).ticket_ids
        if remainder:
            logger.info(f"Fetching {len(remainder)} ticket(s) discovered through time entries")
            fetched = await self.fetcher.get_tickets_by_ids(remainder)
            discovered.extend(t for t in fetched if t.board_ref in service_board_ids)
        tickets.extend(discovered)

        await self._ensure_boards(tickets)
        tracker = await self._persist(
            "ticket", tickets, lambda t: self.store.upsert(Ticket, ticket_row(t))
        )
        return self._stage_result(TICKETS, decision, tracker)

    async def _ensure_boards(self, tickets: Sequence[TicketRecord]) -> None:
        """Synthesize boards that tickets reference but the store lacks."""
        board_ids = {t.board_ref for t in tickets if t.board_ref}
        missing = board_ids - await self.store.existing_ids(Board, board_ids)
        for board_id in sorted(missing):
            logger.info(f"Synthesizing unknown board {board_id}")
            await self.store.insert_if_absent(Board, synthesized_board_row(board_id))

    async def _sync_project_tickets(self, decision: GateDecision, ctx: _RunContext) -> StageResult:
        project_ids = await self.store.all_ids(Project)
        if not project_ids:
            logger.info("No projects stored, no project tickets to sync")
            return StageResult(PROJECT_TICKETS, decision.mode, synced=True, message="No projects")

        # Projects first stored by this run have no tasks yet, so they are
        # fetched without the watermark.
        new_ids = [i for i in project_ids if i not in ctx.known_project_ids]
        if decision.watermark is None or not new_ids:
            records = await self.fetcher.get_project_tickets(project_ids, modified_since=decision.watermark)
        else:
            logger.info(f"Fetching all tasks of {len(new_ids)} newly stored project(s)")
            known_ids = [i for i in project_ids if i in ctx.known_project_ids]
            records = await self.fetcher.get_project_tickets(new_ids)
            if known_ids:
                records += await self.fetcher.get_project_tickets(known_ids, modified_since=decision.watermark)

        tracker = await self._persist(
            "project ticket", records, lambda t: self.store.upsert(ProjectTicket, project_ticket_row(t))
        )
        return self._stage_result(PROJECT_TICKETS, decision, tracker)


@asynccontextmanager
async def open_sync_engine(
    session_maker: Optional[async_sessionmaker] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
):
    """
    Build a ``SyncEngine`` from settings and close its HTTP client on exit.

    Raises:
        ConfigurationError: If the ConnectWise credentials are incomplete
    """
    config = settings.connectwise_config()

    async with ConnectWiseClient(config, transport=transport) as client:
        yield SyncEngine(client, SyncStore(session_maker or AsyncSessionLocal))
