"""
Collection fetchers for the ConnectWise resources the sync engine mirrors.

Each fetcher builds a condition expression, pages through the collection
with a minimal field projection and parses the items into wire records.
Fetchers never touch the local store.
"""

import logging
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

from msp_sync.config import settings
from msp_sync.core.conditions import Condition, Field, all_of, any_of, in_list, render
from msp_sync.core.connectwise_client import ConnectWiseClient
from msp_sync.core.schemas import (
    AuditEntryRecord,
    BoardRecord,
    MemberRecord,
    ProjectRecord,
    ProjectTicketRecord,
    TicketRecord,
    TimeEntryRecord,
    parse_records,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMBER_FIELDS = "id,identifier,firstName,lastName,emailAddress,inactiveFlag"
BOARD_FIELDS = "id,name"
TIME_ENTRY_FIELDS = (
    "id,member/id,ticket/id,project/id,hours,actualHours,billableOption,"
    "notes,internalNotes,timeStart,timeEnd"
)
TICKET_FIELDS = (
    "id,summary,board/id,status/name,closedDate,closedFlag,dateEntered,resolvedDate,"
    "type/name,priority/name,owner/identifier,company/name,estimatedHours,actualHours,"
    "resources,_info/dateEntered,_info/dateResolved,_info/closedDate"
)
PROJECT_FIELDS = (
    "id,name,status/name,company/name,manager/identifier,manager/name,board/name,"
    "estimatedStart,estimatedEnd,actualStart,actualEnd,actualHours,estimatedHours,"
    "percentComplete,type/name,closedFlag,description"
)
PROJECT_TICKET_FIELDS = (
    "id,summary,project/id,project/name,phase/id,phase/name,board/id,board/name,"
    "status/name,company/name,resources,closedFlag,priority/name,type/name,wbsCode,"
    "actualHours,budgetHours,dateEntered,closedDate,_info/dateEntered,_info/closedDate"
)


def chunked(values: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split ``values`` into consecutive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("size must be at least 1")
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def modified_since_condition(modified_since: Optional[datetime]) -> Optional[Condition]:
    if modified_since is None:
        return None
    return Field("_info/lastUpdated").gt(modified_since)


def engineer_condition(identifiers: Iterable[str]) -> Optional[Condition]:
    """
    Tickets owned by OR assigned to any of the engineers.

    ``resources`` is a comma separated list of identifiers, so assignment is
    a substring match.
    """
    parts = []
    for identifier in identifiers:
        parts.append(Field("owner/identifier").eq(identifier))
        parts.append(Field("resources").contains(identifier))
    return any_of(*parts)


class CollectionFetcher:
    """Typed, filtered access to the remote collections."""

    def __init__(self, client: ConnectWiseClient, id_chunk_size: Optional[int] = None):
        self.client = client
        self.id_chunk_size = id_chunk_size or settings.id_chunk_size

    async def get_members(self) -> List[MemberRecord]:
        """Active members only."""
        items = await self.client.fetch_all_pages(
            "/system/members",
            conditions=render(Field("inactiveFlag").eq(False)),
            fields=MEMBER_FIELDS,
        )
        return parse_records(MemberRecord, items, "member")

    async def get_boards(self, type_hint: Optional[str] = None) -> List[BoardRecord]:
        condition = Field("name").contains(type_hint) if type_hint else None
        items = await self.client.fetch_all_pages(
            "/service/boards",
            conditions=render(condition),
            fields=BOARD_FIELDS,
        )
        return parse_records(BoardRecord, items, "board")

    async def get_time_entries(
        self,
        member_ids: Iterable[int],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        modified_since: Optional[datetime] = None,
    ) -> List[TimeEntryRecord]:
        condition = all_of(
            Field("timeStart").gte(start) if start else None,
            Field("timeStart").lte(end) if end else None,
            in_list("member/id", sorted(set(member_ids))),
            modified_since_condition(modified_since),
        )
        items = await self.client.fetch_all_pages(
            "/time/entries",
            conditions=render(condition),
            order_by="timeStart desc",
            fields=TIME_ENTRY_FIELDS,
        )
        return parse_records(TimeEntryRecord, items, "time entry")

    async def get_tickets(
        self,
        board_ids: Iterable[int],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        engineer_identifiers: Optional[Iterable[str]] = None,
        modified_since: Optional[datetime] = None,
    ) -> List[TicketRecord]:
        """
        Tickets on the given boards.

        ``engineer_identifiers`` None applies no ownership filter; an empty
        list matches no ticket and sends no request.
        """
        if engineer_identifiers is not None:
            engineer_identifiers = list(engineer_identifiers)
            if not engineer_identifiers:
                logger.warning("No engineer identifiers given, skipping ticket query")
                return []
        condition = all_of(
            in_list("board/id", sorted(set(board_ids))),
            Field("dateEntered").gte(start) if start else None,
            Field("dateEntered").lte(end) if end else None,
            engineer_condition(engineer_identifiers or []),
            modified_since_condition(modified_since),
        )
        items = await self.client.fetch_all_pages(
            "/service/tickets",
            conditions=render(condition),
            order_by="dateEntered desc",
            fields=TICKET_FIELDS,
        )
        return parse_records(TicketRecord, items, "ticket")

    async def get_tickets_by_ids(self, ids: Iterable[int]) -> List[TicketRecord]:
        records: List[TicketRecord] = []
        for chunk in chunked(sorted(set(ids)), self.id_chunk_size):
            items = await self.client.fetch_all_pages(
                "/service/tickets",
                conditions=render(Field("id").in_(chunk)),
                order_by="dateEntered desc",
                fields=TICKET_FIELDS,
            )
            records.extend(parse_records(TicketRecord, items, "ticket"))
        return records

    async def get_projects(
        self,
        manager_identifiers: Iterable[str],
        modified_since: Optional[datetime] = None,
    ) -> List[ProjectRecord]:
        manager_identifiers = list(manager_identifiers)
        if not manager_identifiers:
            logger.warning("No manager identifiers given, skipping project query")
            return []
        condition = all_of(
            any_of(*[Field("manager/identifier").eq(i) for i in manager_identifiers]),
            modified_since_condition(modified_since),
        )
        items = await self.client.fetch_all_pages(
            "/project/projects",
            conditions=render(condition),
            order_by="id desc",
            fields=PROJECT_FIELDS,
        )
        return parse_records(ProjectRecord, items, "project")

    async def get_projects_by_ids(self, ids: Iterable[int]) -> List[ProjectRecord]:
        records: List[ProjectRecord] = []
        for chunk in chunked(sorted(set(ids)), self.id_chunk_size):
            items = await self.client.fetch_all_pages(
                "/project/projects",
                conditions=render(Field("id").in_(chunk)),
                order_by="id desc",
                fields=PROJECT_FIELDS,
            )
            records.extend(parse_records(ProjectRecord, items, "project"))
        return records

    async def get_project_tickets(
        self,
        project_ids: Iterable[int],
        modified_since: Optional[datetime] = None,
    ) -> List[ProjectTicketRecord]:
        records: List[ProjectTicketRecord] = []
        for chunk in chunked(sorted(set(project_ids)), self.id_chunk_size):
            condition = all_of(
                Field("project/id").in_(chunk),
                modified_since_condition(modified_since),
            )
            items = await self.client.fetch_all_pages(
                "/project/tickets",
                conditions=render(condition),
                order_by="id desc",
                fields=PROJECT_TICKET_FIELDS,
            )
            records.extend(parse_records(ProjectTicketRecord, items, "project ticket"))
        return records

    async def get_audit_trail(self, record_type: str, record_id: int) -> List[AuditEntryRecord]:
        condition = all_of(Field("type").eq(record_type), Field("id").eq(record_id))
        items = await self.client.fetch_all_pages(
            "/system/auditTrail",
            conditions=render(condition),
            order_by="dateEntered desc",
        )
        return parse_records(AuditEntryRecord, items, "audit trail")
