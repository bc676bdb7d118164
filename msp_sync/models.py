from datetime import datetime
from typing import Optional
from sqlalchemy import String, Boolean, Integer, Float, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class Member(Base):
    """A ConnectWise member (engineer). Primary keys are remote ids."""
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    identifier: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    inactive_flag: Mapped[bool] = mapped_column(Boolean, default=False)


class Board(Base):
    """A service board; ``type`` is "MS" or "PS"."""
    __tablename__ = "boards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False, default="PS")


class Ticket(Base):
    """A service ticket."""
    __tablename__ = "tickets"
    __table_args__ = (
        Index('idx_ticket_board', 'board_id'),
        Index('idx_ticket_date_entered', 'date_entered'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    board_id: Mapped[int] = mapped_column(Integer, ForeignKey("boards.id"), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(100))
    date_entered: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    owner: Mapped[Optional[str]] = mapped_column(String(100))
    company: Mapped[Optional[str]] = mapped_column(String(255))
    type: Mapped[Optional[str]] = mapped_column(String(100))
    priority: Mapped[Optional[str]] = mapped_column(String(100))
    # Comma separated member identifiers
    resources: Mapped[Optional[str]] = mapped_column(Text)
    estimated_hours: Mapped[Optional[float]] = mapped_column(Float)
    actual_hours: Mapped[Optional[float]] = mapped_column(Float)


class Project(Base):
    """A ConnectWise project."""
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(100))
    company: Mapped[Optional[str]] = mapped_column(String(255))
    manager_identifier: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    manager_name: Mapped[Optional[str]] = mapped_column(String(255))
    board_name: Mapped[Optional[str]] = mapped_column(String(255))
    estimated_start: Mapped[Optional[datetime]] = mapped_column(DateTime)
    estimated_end: Mapped[Optional[datetime]] = mapped_column(DateTime)
    actual_start: Mapped[Optional[datetime]] = mapped_column(DateTime)
    actual_end: Mapped[Optional[datetime]] = mapped_column(DateTime)
    estimated_hours: Mapped[Optional[float]] = mapped_column(Float)
    actual_hours: Mapped[Optional[float]] = mapped_column(Float)
    percent_complete: Mapped[Optional[float]] = mapped_column(Float)
    type: Mapped[Optional[str]] = mapped_column(String(100))
    closed_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    description: Mapped[Optional[str]] = mapped_column(Text)


class TimeEntry(Base):
    """A time entry; ticket and project references are optional."""
    __tablename__ = "time_entries"
    __table_args__ = (
        Index('idx_time_entry_member', 'member_id'),
        Index('idx_time_entry_ticket', 'ticket_id'),
        Index('idx_time_entry_date_start', 'date_start'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    member_id: Mapped[int] = mapped_column(Integer, ForeignKey("members.id"), nullable=False)
    ticket_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("tickets.id"))
    project_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("projects.id"))
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    billable_option: Mapped[Optional[str]] = mapped_column(String(50))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text)
    date_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    date_end: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ProjectTicket(Base):
    """A ticket that belongs to a project (``/project/tickets``)."""
    __tablename__ = "project_tickets"
    __table_args__ = (
        Index('idx_project_ticket_project', 'project_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    project_name: Mapped[Optional[str]] = mapped_column(String(255))
    phase_id: Mapped[Optional[int]] = mapped_column(Integer)
    phase_name: Mapped[Optional[str]] = mapped_column(String(255))
    # Project boards are not synced as service boards, so no foreign key here
    board_id: Mapped[Optional[int]] = mapped_column(Integer)
    board_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[Optional[str]] = mapped_column(String(100))
    company: Mapped[Optional[str]] = mapped_column(String(255))
    resources: Mapped[Optional[str]] = mapped_column(Text)
    closed_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[Optional[str]] = mapped_column(String(100))
    type: Mapped[Optional[str]] = mapped_column(String(100))
    wbs_code: Mapped[Optional[str]] = mapped_column(String(50))
    budget_hours: Mapped[Optional[float]] = mapped_column(Float)
    actual_hours: Mapped[Optional[float]] = mapped_column(Float)
    date_entered: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closed_date: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ProjectAudit(Base):
    """Status change history of a project, taken from the audit trail."""
    __tablename__ = "project_audits"
    __table_args__ = (
        UniqueConstraint('project_id', 'date_entered', 'status', name='uq_project_audit_change'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(100))
    changed_by: Mapped[Optional[str]] = mapped_column(String(100))
    date_entered: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text)


class SyncLog(Base):
    """Per entity type record of the last sync attempt."""
    __tablename__ = "sync_logs"

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    # Last *successful* sync; kept unchanged when a sync fails
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # "success" or "failure"
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
