"""
Pydantic models for ConnectWise wire records.

Every remote field is optional except the record id: the API omits fields
that are empty, and some references arrive either as an object
(``{"id": 1, "name": "Open"}``) or as a bare string.
"""

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Iterable, List, Optional, Type, TypeVar

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)


def _coerce_reference(value: Any) -> Any:
    if isinstance(value, str):
        return {"name": value, "identifier": value} if value else None
    if isinstance(value, int) and not isinstance(value, bool):
        return {"id": value}
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Reference(BaseModel):
    """Nested reference such as ``board``, ``status`` or ``owner``."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: Optional[str] = None
    identifier: Optional[str] = None


Ref = Annotated[Optional[Reference], BeforeValidator(_coerce_reference)]
WireDatetime = Annotated[
    Optional[datetime], BeforeValidator(_blank_to_none), AfterValidator(_to_naive_utc)
]


def ref_id(ref: Optional[Reference]) -> Optional[int]:
    return ref.id if ref is not None else None


def ref_name(ref: Optional[Reference]) -> Optional[str]:
    return ref.name if ref is not None else None


class RecordInfo(BaseModel):
    """The ``_info`` metadata block."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    date_entered: WireDatetime = None
    date_resolved: WireDatetime = None
    closed_date: WireDatetime = None
    last_updated: WireDatetime = None


class WireRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: int


class MemberRecord(WireRecord):
    identifier: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_address: Optional[str] = None
    inactive_flag: Optional[bool] = None


class BoardRecord(WireRecord):
    name: Optional[str] = None


class TimeEntryRecord(WireRecord):
    """
    A time entry. References appear nested (``ticket.id``) or flat
    (``ticketId``) depending on the projection; both are read.
    """

    member: Ref = None
    ticket: Ref = None
    project: Ref = None
    member_id: Optional[int] = None
    ticket_id: Optional[int] = None
    project_id: Optional[int] = None
    hours: Optional[float] = None
    actual_hours: Optional[float] = None
    billable_option: Optional[str] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    time_start: WireDatetime = None
    time_end: WireDatetime = None

    @property
    def member_ref(self) -> Optional[int]:
        return ref_id(self.member) or self.member_id

    @property
    def ticket_ref(self) -> Optional[int]:
        return ref_id(self.ticket) or self.ticket_id

    @property
    def project_ref(self) -> Optional[int]:
        return ref_id(self.project) or self.project_id


class TicketRecord(WireRecord):
    summary: Optional[str] = None
    board: Ref = None
    board_id: Optional[int] = None
    status: Ref = None
    type: Ref = None
    priority: Ref = None
    owner: Ref = None
    company: Ref = None
    closed_flag: Optional[bool] = None
    date_entered: WireDatetime = None
    resolved_date: WireDatetime = None
    closed_date: WireDatetime = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    resources: Optional[str] = None
    team_member: Optional[str] = None
    info: Optional[RecordInfo] = Field(None, alias="_info")

    @property
    def board_ref(self) -> Optional[int]:
        return ref_id(self.board) or self.board_id

    @property
    def owner_identifier(self) -> Optional[str]:
        if self.owner is None:
            return None
        return self.owner.identifier or self.owner.name

    @property
    def resource_text(self) -> Optional[str]:
        return self.team_member or self.resources


class ProjectRecord(WireRecord):
    name: Optional[str] = None
    status: Ref = None
    company: Ref = None
    manager: Ref = None
    board: Ref = None
    type: Ref = None
    estimated_start: WireDatetime = None
    estimated_end: WireDatetime = None
    actual_start: WireDatetime = None
    actual_end: WireDatetime = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    percent_complete: Optional[float] = None
    closed_flag: Optional[bool] = None
    description: Optional[str] = None


class ProjectTicketRecord(WireRecord):
    summary: Optional[str] = None
    project: Ref = None
    phase: Ref = None
    board: Ref = None
    status: Ref = None
    company: Ref = None
    priority: Ref = None
    type: Ref = None
    resources: Optional[str] = None
    closed_flag: Optional[bool] = None
    wbs_code: Optional[str] = None
    budget_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    date_entered: WireDatetime = None
    closed_date: WireDatetime = None
    info: Optional[RecordInfo] = Field(None, alias="_info")


AUDIT_STATUSES = ("Ready to Close", "Closed")


class AuditEntryRecord(BaseModel):
    """One entry of ``/system/auditTrail``; entries carry no id of their own."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    audit_type: Optional[str] = None
    message: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    entered_by: Optional[str] = None
    date_entered: WireDatetime = None

    @property
    def is_status_change(self) -> bool:
        if self.audit_type == "Status":
            return True
        if self.message and "status changed" in self.message:
            return True
        return bool(self.new_value and any(s in self.new_value for s in AUDIT_STATUSES))


def parse_records(model: Type[R], items: Iterable[Any], label: str) -> List[R]:
    """
    Validate raw API items into ``model`` instances.

    Items that fail validation are logged and skipped so one bad record
    cannot fail a whole collection.
    """
    records: List[R] = []
    for item in items:
        try:
            records.append(model.model_validate(item))
        except ValidationError as e:
            item_id = item.get("id") if isinstance(item, dict) else None
            logger.warning(
                f"Skipping invalid {label} record {item_id!r}: "
                f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
            )
    return records
