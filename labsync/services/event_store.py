"""
Relational store for labs, calendar events and sync logs.

Blocking SQLAlchemy work runs in a worker thread so callers can simply
``await`` every operation from the event loop.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import or_, select, text
from sqlalchemy.orm import sessionmaker

from labsync.models.database import (
    Base,
    CalendarEventRow,
    Lab as LabRow,
    LabCalendarIntegration as IntegrationRow,
    SyncLogRow,
    build_engine,
)
from labsync.models.calendar_sync import (
    CalendarEvent,
    Lab,
    LabCalendarIntegration,
    SyncLogEntry,
)
from labsync.utils.datetime_utils import ensure_utc, to_db_datetime, utc_now

logger = structlog.get_logger()

# Columns callers may write through create_event/update_event
EVENT_FIELDS = {
    "lab_id", "title", "description", "event_type", "start_date", "end_date",
    "all_day", "location", "created_by", "google_calendar_id",
    "google_calendar_url", "needs_sync", "metadata", "updated_at",
}
DATETIME_FIELDS = {"start_date", "end_date", "updated_at"}


class EventStore:
    """SQLAlchemy-backed store for the calendar tables."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._prepare_sqlite_dir(database_url)
        self.engine = build_engine(database_url)
        Base.metadata.create_all(bind=self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("event_store_initialized", database_url=database_url.split("@")[-1])

    @staticmethod
    def _prepare_sqlite_dir(database_url: str):
        prefix = "sqlite:///"
        if database_url.startswith(prefix) and database_url != "sqlite:///:memory:":
            Path(database_url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)

    def dispose(self):
        """Close pooled connections."""
        self.engine.dispose()

    def _ping(self) -> bool:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    async def ping(self) -> bool:
        """Round-trip to the database; raises if it is unreachable."""
        return await asyncio.to_thread(self._ping)

    # ==================== Row mapping ====================

    @staticmethod
    def _event_from_row(row: CalendarEventRow) -> CalendarEvent:
        return CalendarEvent(
            id=row.id,
            lab_id=row.lab_id,
            title=row.title,
            description=row.description,
            event_type=row.event_type,
            start_date=ensure_utc(row.start_date),
            end_date=ensure_utc(row.end_date),
            all_day=bool(row.all_day),
            location=row.location,
            created_by=row.created_by,
            google_calendar_id=row.google_calendar_id,
            google_calendar_url=row.google_calendar_url,
            needs_sync=bool(row.needs_sync),
            metadata=dict(row.event_metadata or {}),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    @staticmethod
    def _sync_log_from_row(row: SyncLogRow) -> SyncLogEntry:
        return SyncLogEntry(
            id=row.id,
            sync_type=row.sync_type,
            status=row.status,
            duration_ms=row.duration_ms,
            error_message=row.error_message,
            events_created=row.events_created,
            events_updated=row.events_updated,
            events_skipped=row.events_skipped,
            events_pushed=row.events_pushed,
            events_failed=row.events_failed,
            metadata=dict(row.log_metadata or {}),
            created_at=ensure_utc(row.created_at),
        )

    @staticmethod
    def _apply_event_values(row: CalendarEventRow, values: Dict[str, Any]):
        unknown = set(values) - EVENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown calendar event fields: {sorted(unknown)}")

        for key, value in values.items():
            if key in DATETIME_FIELDS:
                value = to_db_datetime(value)
            if key == "metadata":
                row.event_metadata = dict(value or {})
            else:
                setattr(row, key, value)

    # ==================== Labs ====================

    def _create_lab(self, name: str, lab_id: Optional[str]) -> Lab:
        with self.SessionLocal() as session:
            row = LabRow(name=name)
            if lab_id:
                row.id = lab_id
            session.add(row)
            session.commit()
            return Lab(id=row.id, name=row.name, created_at=ensure_utc(row.created_at))

    async def create_lab(self, name: str, lab_id: Optional[str] = None) -> Lab:
        """Insert a lab."""
        lab = await asyncio.to_thread(self._create_lab, name, lab_id)
        logger.info("lab_created", lab_id=lab.id)
        return lab

    def _list_labs(self) -> List[Lab]:
        with self.SessionLocal() as session:
            rows = session.scalars(select(LabRow).order_by(LabRow.created_at)).all()
            return [Lab(id=r.id, name=r.name, created_at=ensure_utc(r.created_at)) for r in rows]

    async def list_labs(self) -> List[Lab]:
        return await asyncio.to_thread(self._list_labs)

    def _lab_exists(self, lab_id: str) -> bool:
        with self.SessionLocal() as session:
            return session.get(LabRow, lab_id) is not None

    async def lab_exists(self, lab_id: str) -> bool:
        return await asyncio.to_thread(self._lab_exists, lab_id)

    def _get_default_lab_id(self) -> Optional[str]:
        with self.SessionLocal() as session:
            return session.scalars(select(LabRow.id).order_by(LabRow.created_at).limit(1)).first()

    async def get_default_lab_id(self) -> Optional[str]:
        """Return an arbitrary existing lab (the oldest), or None when there are no labs."""
        return await asyncio.to_thread(self._get_default_lab_id)

    # ==================== Calendar integrations ====================

    @staticmethod
    def _integration_from_row(row: IntegrationRow) -> LabCalendarIntegration:
        return LabCalendarIntegration(
            id=row.id,
            lab_id=row.lab_id,
            provider=row.provider,
            calendar_id=row.calendar_id,
            sync_enabled=bool(row.sync_enabled),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def _set_calendar_integration(self, lab_id: str, calendar_id: str, provider: str,
                                  sync_enabled: bool) -> LabCalendarIntegration:
        now = to_db_datetime(utc_now())
        with self.SessionLocal() as session:
            # A calendar belongs to exactly one lab; a lab has one integration
            for existing in session.scalars(
                select(IntegrationRow).where(
                    or_(IntegrationRow.lab_id == lab_id, IntegrationRow.calendar_id == calendar_id)
                )
            ).all():
                session.delete(existing)
            session.flush()

            row = IntegrationRow(
                lab_id=lab_id,
                provider=provider,
                calendar_id=calendar_id,
                sync_enabled=sync_enabled,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._integration_from_row(row)

    async def set_calendar_integration(
        self,
        lab_id: str,
        calendar_id: str,
        provider: str = "google",
        sync_enabled: bool = True
    ) -> LabCalendarIntegration:
        """Bind an external calendar to a lab, replacing any previous binding of either."""
        integration = await asyncio.to_thread(
            self._set_calendar_integration, lab_id, calendar_id, provider, sync_enabled
        )
        logger.info("calendar_integration_configured", lab_id=lab_id, calendar_id=calendar_id)
        return integration

    def _get_calendar_integration(self, lab_id: str) -> Optional[LabCalendarIntegration]:
        with self.SessionLocal() as session:
            row = session.scalars(
                select(IntegrationRow).where(IntegrationRow.lab_id == lab_id)
            ).first()
            return self._integration_from_row(row) if row else None

    async def get_calendar_integration(self, lab_id: str) -> Optional[LabCalendarIntegration]:
        return await asyncio.to_thread(self._get_calendar_integration, lab_id)

    def _delete_calendar_integration(self, lab_id: str) -> bool:
        with self.SessionLocal() as session:
            rows = session.scalars(
                select(IntegrationRow).where(IntegrationRow.lab_id == lab_id)
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return bool(rows)

    async def delete_calendar_integration(self, lab_id: str) -> bool:
        return await asyncio.to_thread(self._delete_calendar_integration, lab_id)

    def _get_lab_id_for_calendar(self, calendar_id: str) -> Optional[str]:
        with self.SessionLocal() as session:
            return session.scalars(
                select(IntegrationRow.lab_id).where(
                    IntegrationRow.calendar_id == calendar_id,
                    IntegrationRow.sync_enabled.is_(True),
                )
            ).first()

    async def get_lab_id_for_calendar(self, calendar_id: str) -> Optional[str]:
        """Lab that owns the given external calendar, if one is configured."""
        return await asyncio.to_thread(self._get_lab_id_for_calendar, calendar_id)

    # ==================== Calendar events ====================

    def _get_event(self, event_id: str) -> Optional[CalendarEvent]:
        with self.SessionLocal() as session:
            row = session.get(CalendarEventRow, event_id)
            return self._event_from_row(row) if row else None

    async def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        return await asyncio.to_thread(self._get_event, event_id)

    def _get_event_by_external_id(self, external_id: str) -> Optional[CalendarEvent]:
        with self.SessionLocal() as session:
            row = session.scalars(
                select(CalendarEventRow).where(CalendarEventRow.google_calendar_id == external_id)
            ).first()
            return self._event_from_row(row) if row else None

    async def get_event_by_external_id(self, external_id: str) -> Optional[CalendarEvent]:
        return await asyncio.to_thread(self._get_event_by_external_id, external_id)

    def _list_events(self, lab_id: Optional[str], start: Optional[datetime],
                     end: Optional[datetime], unbound_only: bool) -> List[CalendarEvent]:
        query = select(CalendarEventRow)
        if lab_id:
            query = query.where(CalendarEventRow.lab_id == lab_id)
        if start:
            query = query.where(CalendarEventRow.start_date >= to_db_datetime(start))
        if end:
            query = query.where(CalendarEventRow.start_date <= to_db_datetime(end))
        if unbound_only:
            query = query.where(CalendarEventRow.google_calendar_id.is_(None))

        with self.SessionLocal() as session:
            rows = session.scalars(query.order_by(CalendarEventRow.start_date)).all()
            return [self._event_from_row(r) for r in rows]

    async def list_events(
        self,
        lab_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        unbound_only: bool = False
    ) -> List[CalendarEvent]:
        """Events filtered by lab and start-date range, ordered by start."""
        return await asyncio.to_thread(self._list_events, lab_id, start, end, unbound_only)

    def _list_events_pending_push(self, now: datetime, limit: int) -> List[CalendarEvent]:
        query = (
            select(CalendarEventRow)
            .where(
                or_(
                    CalendarEventRow.google_calendar_id.is_(None),
                    CalendarEventRow.needs_sync.is_(True),
                ),
                CalendarEventRow.start_date >= to_db_datetime(now),
            )
            .order_by(CalendarEventRow.start_date)
            .limit(limit)
        )
        with self.SessionLocal() as session:
            return [self._event_from_row(r) for r in session.scalars(query).all()]

    async def list_events_pending_push(self, now: datetime, limit: int) -> List[CalendarEvent]:
        """Unbound or dirty events starting at/after ``now``, capped at ``limit``."""
        return await asyncio.to_thread(self._list_events_pending_push, now, limit)

    def _create_event(self, values: Dict[str, Any]) -> CalendarEvent:
        with self.SessionLocal() as session:
            row = CalendarEventRow()
            self._apply_event_values(row, values)
            session.add(row)
            session.commit()
            return self._event_from_row(row)

    async def create_event(self, values: Dict[str, Any]) -> CalendarEvent:
        """Insert an event; ``values`` uses CalendarEvent field names."""
        return await asyncio.to_thread(self._create_event, values)

    def _update_event(self, event_id: str, values: Dict[str, Any]) -> Optional[CalendarEvent]:
        with self.SessionLocal() as session:
            row = session.get(CalendarEventRow, event_id)
            if row is None:
                return None
            self._apply_event_values(row, values)
            session.commit()
            return self._event_from_row(row)

    async def update_event(self, event_id: str, values: Dict[str, Any]) -> Optional[CalendarEvent]:
        """Update the given fields; returns None when the event does not exist."""
        return await asyncio.to_thread(self._update_event, event_id, values)

    def _delete_event(self, event_id: str) -> Optional[CalendarEvent]:
        with self.SessionLocal() as session:
            row = session.get(CalendarEventRow, event_id)
            if row is None:
                return None
            event = self._event_from_row(row)
            session.delete(row)
            session.commit()
            return event

    async def delete_event(self, event_id: str) -> Optional[CalendarEvent]:
        """Delete and return the removed event."""
        return await asyncio.to_thread(self._delete_event, event_id)

    # ==================== Sync logs ====================

    def _add_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        with self.SessionLocal() as session:
            row = SyncLogRow(
                sync_type=entry.sync_type,
                status=entry.status,
                duration_ms=entry.duration_ms,
                error_message=entry.error_message,
                events_created=entry.events_created,
                events_updated=entry.events_updated,
                events_skipped=entry.events_skipped,
                events_pushed=entry.events_pushed,
                events_failed=entry.events_failed,
                log_metadata=dict(entry.metadata),
            )
            if entry.created_at:
                row.created_at = to_db_datetime(entry.created_at)
            session.add(row)
            session.commit()
            return self._sync_log_from_row(row)

    async def add_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append a sync log entry."""
        return await asyncio.to_thread(self._add_sync_log, entry)

    def _list_sync_logs(self, limit: int) -> List[SyncLogEntry]:
        with self.SessionLocal() as session:
            rows = session.scalars(
                select(SyncLogRow).order_by(SyncLogRow.created_at.desc(), SyncLogRow.id.desc()).limit(limit)
            ).all()
            return [self._sync_log_from_row(r) for r in rows]

    async def list_sync_logs(self, limit: int = 20) -> List[SyncLogEntry]:
        """Most recent sync log entries first."""
        return await asyncio.to_thread(self._list_sync_logs, limit)
