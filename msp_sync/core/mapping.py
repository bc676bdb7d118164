"""
Mapping of wire records to local row dictionaries.

Row dictionaries are keyed by ORM column name and fed straight into the
store's upserts. A record that cannot become a valid row raises
``RecordShapeError``; the caller skips it.
"""

from typing import Any, Dict, Iterable, Optional

from msp_sync.core.errors import RecordShapeError
from msp_sync.core.schemas import (
    AuditEntryRecord,
    BoardRecord,
    MemberRecord,
    ProjectRecord,
    ProjectTicketRecord,
    TicketRecord,
    TimeEntryRecord,
    ref_id,
    ref_name,
)

Row = Dict[str, Any]

PLACEHOLDER_NAME = "Pending Sync"
DEFAULT_BOARD_ID = 1
DEFAULT_BOARD_NAME = "Default Board"


def board_type_for(name: Optional[str]) -> str:
    """Managed-services boards carry "MS" in their name; everything else is PS."""
    return "MS" if name and "MS" in name else "PS"


def _service_board_key(name: str) -> str:
    return name.lower().replace("(ms)", "").replace("(ts)", "").strip()


def is_service_board(board_name: Optional[str], service_board_names: Iterable[str]) -> bool:
    """
    Loose match of a remote board name against the configured service boards.

    A board matches when its name contains a configured name (with the
    "(MS)" / "(TS)" suffix removed), or a configured name contains it.
    """
    if not board_name:
        return False
    lowered = board_name.lower()
    for name in service_board_names:
        key = _service_board_key(name)
        if (key and key in lowered) or lowered in name.lower():
            return True
    return False


def ticket_matches_engineers(ticket: TicketRecord, identifiers: Iterable[str]) -> bool:
    """
    True when an allowed engineer owns the ticket or appears in its resources.

    Owner matching is exact and case-insensitive; resources matching is a
    case-insensitive substring test, so "bob" also matches "bobby".
    """
    allowed = [i.lower() for i in identifiers if i]
    owner = (ticket.owner_identifier or "").lower()
    if owner and owner in allowed:
        return True
    resources = (ticket.resource_text or "").lower()
    return bool(resources) and any(identifier in resources for identifier in allowed)


def member_row(record: MemberRecord) -> Row:
    if not record.identifier:
        raise RecordShapeError(f"Member {record.id} has no identifier")
    return {
        "id": record.id,
        "identifier": record.identifier,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "email": record.email_address,
        "inactive_flag": bool(record.inactive_flag),
    }


def board_row(record: BoardRecord) -> Row:
    name = record.name or f"Board {record.id}"
    return {"id": record.id, "name": name, "type": board_type_for(record.name)}


def synthesized_board_row(board_id: int) -> Row:
    """Stand-in for a board referenced by a ticket but never fetched."""
    name = f"Board {board_id}"
    return {"id": board_id, "name": name, "type": board_type_for(name)}


def default_board_row() -> Row:
    return {"id": DEFAULT_BOARD_ID, "name": DEFAULT_BOARD_NAME, "type": "MS"}


def ticket_row(record: TicketRecord) -> Row:
    board_id = record.board_ref
    if not board_id:
        raise RecordShapeError(f"Ticket {record.id} has no board")
    info = record.info
    return {
        "id": record.id,
        "summary": record.summary,
        "board_id": board_id,
        "status": ref_name(record.status),
        "date_entered": record.date_entered or (info.date_entered if info else None),
        "resolved_date": record.resolved_date or (info.date_resolved if info else None),
        "closed_date": record.closed_date or (info.closed_date if info else None),
        "closed_flag": bool(record.closed_flag),
        "owner": record.owner_identifier,
        "company": ref_name(record.company),
        "type": ref_name(record.type),
        "priority": ref_name(record.priority),
        "resources": record.resource_text,
        "estimated_hours": record.estimated_hours,
        "actual_hours": record.actual_hours,
    }


def placeholder_ticket_row(ticket_id: int, board_id: int) -> Row:
    return {"id": ticket_id, "summary": PLACEHOLDER_NAME, "board_id": board_id}


def time_entry_row(record: TimeEntryRecord) -> Row:
    member_id = record.member_ref
    if not member_id:
        raise RecordShapeError(f"Time entry {record.id} has no member")
    if record.time_start is None:
        raise RecordShapeError(f"Time entry {record.id} has no start time")
    return {
        "id": record.id,
        "member_id": member_id,
        "ticket_id": record.ticket_ref,
        "project_id": record.project_ref,
        "hours": record.hours or record.actual_hours or 0.0,
        "billable_option": record.billable_option,
        "notes": record.notes,
        "internal_notes": record.internal_notes,
        "date_start": record.time_start,
        "date_end": record.time_end,
    }


def project_row(record: ProjectRecord) -> Row:
    manager = record.manager
    return {
        "id": record.id,
        "name": record.name or f"Project {record.id}",
        "status": ref_name(record.status),
        "company": ref_name(record.company),
        "manager_identifier": manager.identifier if manager else None,
        "manager_name": manager.name if manager else None,
        "board_name": ref_name(record.board),
        "estimated_start": record.estimated_start,
        "estimated_end": record.estimated_end,
        "actual_start": record.actual_start,
        "actual_end": record.actual_end,
        "estimated_hours": record.estimated_hours,
        "actual_hours": record.actual_hours,
        "percent_complete": record.percent_complete,
        "type": ref_name(record.type),
        "closed_flag": bool(record.closed_flag),
        "description": record.description,
    }


def placeholder_project_row(project_id: int) -> Row:
    return {"id": project_id, "name": PLACEHOLDER_NAME}


def project_ticket_row(record: ProjectTicketRecord) -> Row:
    project_id = ref_id(record.project)
    if not project_id:
        raise RecordShapeError(f"Project ticket {record.id} has no project")
    info = record.info
    return {
        "id": record.id,
        "summary": record.summary,
        "project_id": project_id,
        "project_name": ref_name(record.project),
        "phase_id": ref_id(record.phase),
        "phase_name": ref_name(record.phase),
        "board_id": ref_id(record.board),
        "board_name": ref_name(record.board),
        "status": ref_name(record.status),
        "company": ref_name(record.company),
        "resources": record.resources,
        "closed_flag": bool(record.closed_flag),
        "priority": ref_name(record.priority),
        "type": ref_name(record.type),
        "wbs_code": record.wbs_code,
        "budget_hours": record.budget_hours,
        "actual_hours": record.actual_hours,
        "date_entered": record.date_entered or (info.date_entered if info else None),
        "closed_date": record.closed_date or (info.closed_date if info else None),
    }


def project_audit_row(project_id: int, record: AuditEntryRecord) -> Row:
    if not record.new_value or record.date_entered is None:
        raise RecordShapeError(f"Audit entry for project {project_id} has no status or date")
    return {
        "project_id": project_id,
        "status": record.new_value,
        "previous_status": record.old_value,
        "changed_by": record.entered_by,
        "date_entered": record.date_entered,
        "message": record.message,
    }
