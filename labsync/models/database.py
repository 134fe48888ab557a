"""SQLAlchemy ORM models for the calendar back end.

Tables:
    labs                        - tenant units owning calendar events
    lab_calendar_integrations   - which external calendar belongs to which lab
    calendar_events             - local calendar events, optionally bound to a Google event
    sync_logs                   - append-only audit trail of reconciliation passes

All DateTime columns hold naive UTC values.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    create_engine
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.pool import StaticPool


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


class Lab(Base):
    """Lab - a tenant owning members, studies and calendar events."""

    __tablename__ = "labs"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    events = relationship("CalendarEventRow", back_populates="lab")
    calendar_integrations = relationship("LabCalendarIntegration", back_populates="lab")

    def __repr__(self):
        return f"<Lab(id={self.id}, name={self.name})>"


class LabCalendarIntegration(Base):
    """Maps an external calendar to the lab that owns it."""

    __tablename__ = "lab_calendar_integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lab_id = Column(String, ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String, nullable=False, default="google")
    calendar_id = Column(String, nullable=False, unique=True, comment="External calendar ID")
    sync_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    lab = relationship("Lab", back_populates="calendar_integrations")

    __table_args__ = (
        Index("idx_calendar_integrations_lab", "lab_id"),
    )

    def __repr__(self):
        return f"<LabCalendarIntegration(lab_id={self.lab_id}, calendar_id={self.calendar_id})>"


class CalendarEventRow(Base):
    """Local calendar event."""

    __tablename__ = "calendar_events"

    id = Column(String, primary_key=True, default=_new_id)
    lab_id = Column(String, ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    event_type = Column(String, nullable=False, default="OTHER")
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)
    location = Column(String, nullable=True)
    created_by = Column(String, nullable=True, comment="NULL for system-created events")

    google_calendar_id = Column(String, nullable=True, unique=True, comment="External (Google) event ID")
    google_calendar_url = Column(String, nullable=True)
    needs_sync = Column(Boolean, nullable=False, default=False, comment="Local changes not yet pushed")
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    lab = relationship("Lab", back_populates="events")

    __table_args__ = (
        Index("idx_calendar_events_lab_start", "lab_id", "start_date"),
        Index("idx_calendar_events_push", "needs_sync", "start_date"),
    )

    def __repr__(self):
        return f"<CalendarEventRow(id={self.id}, title={self.title})>"


class SyncLogRow(Base):
    """One reconciliation pass."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String, nullable=False)
    status = Column(String, nullable=False, comment="success or error")
    duration_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_skipped = Column(Integer, nullable=False, default=0)
    events_pushed = Column(Integer, nullable=False, default=0)
    events_failed = Column(Integer, nullable=False, default=0)
    log_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_sync_logs_created", "created_at"),
    )

    def __repr__(self):
        return f"<SyncLogRow(id={self.id}, status={self.status})>"


def build_engine(database_url: str) -> Engine:
    """
    Create an engine usable from worker threads.

    SQLite connections are shared across threads; in-memory databases use a
    single static connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)
