"""
Main calendar synchronization service.

Reconciles local lab calendar events with a Google calendar: pull remote
changes (last write wins), then push local events that are new or dirty.
"""

import uuid
from datetime import datetime, timedelta
from time import time
from typing import Optional, Dict, Any

import structlog

from labsync.models.calendar_sync import (
    BulkSyncResult,
    CalendarEvent,
    CalendarEventDraft,
    PullStats,
    PushStats,
    SyncLogEntry,
    SyncStatus,
)
from labsync.services.event_store import EventStore
from labsync.services.google_calendar_service import (
    GoogleCalendarService,
    extract_lab_tag,
    remote_edit_url,
)
from labsync.utils.datetime_utils import isoformat_utc, parse_timestamp, utc_now

logger = structlog.get_logger()

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


def new_correlation_id(prefix: str = "sync") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class CalendarSyncService:
    """Service for synchronizing lab calendar events with Google Calendar."""

    def __init__(
        self,
        store: EventStore,
        google_service: GoogleCalendarService,
        calendar_id: Optional[str] = None,
        push_batch_size: int = 50,
        pull_days_back: int = 7,
        pull_days_forward: int = 30,
        webhook_lookback_minutes: int = 60
    ):
        """
        Initialize sync service.

        Args:
            store: Local event store
            google_service: Google Calendar client
            calendar_id: Google calendar used for lab lookup (default: the client's calendar)
            push_batch_size: Max events pushed per pass
            pull_days_back: Periodic pull window start, in days before now
            pull_days_forward: Periodic pull window end, in days after now
            webhook_lookback_minutes: Window fetched when a change notification arrives
        """
        self.store = store
        self.google_service = google_service
        self.calendar_id = calendar_id or google_service.calendar_id
        self.push_batch_size = push_batch_size
        self.pull_days_back = pull_days_back
        self.pull_days_forward = pull_days_forward
        self.webhook_lookback_minutes = webhook_lookback_minutes

    @classmethod
    def from_settings(cls, store: EventStore, google_service: GoogleCalendarService, settings) -> "CalendarSyncService":
        return cls(
            store=store,
            google_service=google_service,
            calendar_id=settings.google_calendar_id,
            push_batch_size=settings.sync_push_batch_size,
            pull_days_back=settings.sync_pull_days_back,
            pull_days_forward=settings.sync_pull_days_forward,
            webhook_lookback_minutes=settings.webhook_lookback_minutes,
        )

    # ==================== Bidirectional pass ====================

    async def perform_bidirectional_sync(self, correlation_id: Optional[str] = None) -> SyncLogEntry:
        """
        Run one full pull-then-push pass.

        Never raises: failures are recorded as an error sync log entry.

        Returns:
            The sync log entry written for this pass
        """
        correlation_id = correlation_id or new_correlation_id()
        start_time = time()
        logger.info("calendar_sync_started", correlation_id=correlation_id)

        try:
            now = utc_now()
            pull_stats = await self.pull_from_google(
                start_date=now - timedelta(days=self.pull_days_back),
                end_date=now + timedelta(days=self.pull_days_forward),
                correlation_id=correlation_id
            )
            push_stats = await self.push_to_google(correlation_id)

            entry = SyncLogEntry(
                status=SyncStatus.SUCCESS,
                duration_ms=int((time() - start_time) * 1000),
                events_created=pull_stats.created,
                events_updated=pull_stats.updated,
                events_skipped=pull_stats.skipped,
                events_pushed=push_stats.synced,
                events_failed=push_stats.failed,
                metadata={
                    "timestamp": utc_now().isoformat(),
                    "correlationId": correlation_id,
                    "remoteEvents": pull_stats.total,
                }
            )
            logger.info("calendar_sync_completed",
                       correlation_id=correlation_id,
                       pull=pull_stats.model_dump(),
                       push=push_stats.model_dump(),
                       duration_ms=entry.duration_ms)

        except Exception as e:
            logger.error("calendar_sync_failed",
                        correlation_id=correlation_id,
                        error=str(e),
                        exc_info=True)
            entry = SyncLogEntry(
                status=SyncStatus.ERROR,
                duration_ms=int((time() - start_time) * 1000),
                error_message=str(e),
                metadata={
                    "timestamp": utc_now().isoformat(),
                    "correlationId": correlation_id,
                }
            )

        return await self._write_sync_log(entry)

    async def _write_sync_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        try:
            return await self.store.add_sync_log(entry)
        except Exception as e:
            logger.error("sync_log_write_failed",
                        correlation_id=entry.metadata.get("correlationId"),
                        status=entry.status,
                        error=str(e),
                        exc_info=True)
            return entry

    # ==================== Pull: Google → Local ====================

    async def pull_from_google(
        self,
        start_date: datetime,
        end_date: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
        allow_default_lab: bool = True
    ) -> PullStats:
        """
        Import remote changes into the local store.

        Args:
            start_date: Window start
            end_date: Window end (client default when None)
            correlation_id: Log correlation tag
            allow_default_lab: Fall back to any existing lab for untagged new events

        Returns:
            Pull counters

        Raises:
            GoogleCalendarError: If the remote fetch fails
        """
        remote_events = await self.google_service.fetch_remote_events(start_date, end_date, correlation_id)
        stats = PullStats(total=len(remote_events))

        for remote_event in remote_events:
            outcome = await self._reconcile_remote_event(remote_event, correlation_id, allow_default_lab)
            if outcome == CREATED:
                stats.created += 1
            elif outcome == UPDATED:
                stats.updated += 1
            else:
                stats.skipped += 1

        logger.info("google_pull_completed",
                   correlation_id=correlation_id,
                   total=stats.total,
                   created=stats.created,
                   updated=stats.updated,
                   skipped=stats.skipped)
        return stats

    async def _reconcile_remote_event(
        self,
        remote_event: Dict[str, Any],
        correlation_id: Optional[str],
        allow_default_lab: bool
    ) -> str:
        draft = self.google_service.convert_remote_to_local(remote_event)
        if draft is None or not draft.google_calendar_id:
            return SKIPPED

        try:
            existing = await self.store.get_event_by_external_id(draft.google_calendar_id)
            if existing:
                return await self._apply_remote_update(existing, draft, remote_event, correlation_id)

            lab_id = await self._resolve_lab_id(remote_event, allow_default_lab)
            if not lab_id:
                logger.debug("google_event_no_lab",
                           correlation_id=correlation_id,
                           external_id=draft.google_calendar_id)
                return SKIPPED

            await self._create_from_remote(draft, lab_id, correlation_id)
            return CREATED

        except Exception as e:
            logger.error("google_event_reconcile_failed",
                        correlation_id=correlation_id,
                        external_id=draft.google_calendar_id,
                        error=str(e),
                        exc_info=True)
            return SKIPPED

    async def _apply_remote_update(
        self,
        existing: CalendarEvent,
        draft: CalendarEventDraft,
        remote_event: Dict[str, Any],
        correlation_id: Optional[str]
    ) -> str:
        remote_updated = parse_timestamp(remote_event.get("updated"))

        # Equal timestamps keep the local copy
        if remote_updated is None or remote_updated <= existing.updated_at:
            return SKIPPED

        now = utc_now()
        metadata = {**existing.metadata, **draft.metadata, "lastSyncedFromGoogle": now.isoformat()}
        await self.store.update_event(existing.id, {
            "title": draft.title,
            "description": draft.description,
            "start_date": draft.start_date,
            "end_date": draft.end_date,
            "location": draft.location,
            "all_day": draft.all_day,
            "metadata": metadata,
            "updated_at": now,
        })

        logger.info("event_updated_from_google",
                   correlation_id=correlation_id,
                   event_id=existing.id,
                   external_id=draft.google_calendar_id)
        return UPDATED

    async def _create_from_remote(
        self,
        draft: CalendarEventDraft,
        lab_id: str,
        correlation_id: Optional[str]
    ) -> CalendarEvent:
        now = utc_now()
        event = await self.store.create_event({
            "lab_id": lab_id,
            "title": draft.title,
            "description": draft.description,
            "event_type": draft.event_type,
            "start_date": draft.start_date,
            "end_date": draft.end_date,
            "all_day": draft.all_day,
            "location": draft.location,
            "created_by": None,
            "google_calendar_id": draft.google_calendar_id,
            "google_calendar_url": draft.google_calendar_url or remote_edit_url(draft.google_calendar_id),
            "needs_sync": False,
            "metadata": {**draft.metadata, "createdFromGoogle": True, "syncedAt": now.isoformat()},
            "updated_at": now,
        })

        logger.info("event_imported_from_google",
                   correlation_id=correlation_id,
                   event_id=event.id,
                   lab_id=lab_id,
                   external_id=draft.google_calendar_id)
        return event

    async def _resolve_lab_id(self, remote_event: Dict[str, Any], allow_default_lab: bool) -> Optional[str]:
        """Lab for a new remote event: description tag, calendar mapping, then any lab."""
        tagged = extract_lab_tag(remote_event.get("description"))
        if tagged and await self.store.lab_exists(tagged):
            return tagged

        mapped = await self.store.get_lab_id_for_calendar(self.calendar_id)
        if mapped:
            return mapped

        if allow_default_lab:
            return await self.store.get_default_lab_id()
        return None

    # ==================== Push: Local → Google ====================

    async def push_to_google(self, correlation_id: Optional[str] = None) -> PushStats:
        """
        Push unbound or dirty upcoming events, at most one batch per call.

        Returns:
            Push counters
        """
        pending = await self.store.list_events_pending_push(utc_now(), self.push_batch_size)
        stats = PushStats()

        for event in pending:
            if await self._push_event(event, correlation_id):
                stats.synced += 1
            else:
                stats.failed += 1

        logger.info("google_push_completed",
                   correlation_id=correlation_id,
                   pending=len(pending),
                   synced=stats.synced,
                   failed=stats.failed)
        return stats

    async def _push_event(
        self,
        event: CalendarEvent,
        correlation_id: Optional[str],
        extra_metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Push one event and record the binding. Failures leave the record untouched."""
        try:
            external_id = await self.google_service.push_local_to_remote(event, correlation_id)
            if not external_id:
                return False

            now = utc_now()
            metadata = {**event.metadata, "lastSyncedToGoogle": now.isoformat(), **(extra_metadata or {})}
            await self.store.update_event(event.id, {
                "google_calendar_id": external_id,
                "google_calendar_url": remote_edit_url(external_id),
                "needs_sync": False,
                "metadata": metadata,
                "updated_at": now,
            })
            return True

        except Exception as e:
            logger.error("event_push_failed",
                        correlation_id=correlation_id,
                        event_id=event.id,
                        error=str(e),
                        exc_info=True)
            return False

    # ==================== Event hooks ====================

    async def on_event_created(self, event_id: str) -> bool:
        """
        Push a newly created local event right away.

        Returns:
            True if the event is now bound to a Google event
        """
        correlation_id = new_correlation_id("created")
        try:
            event = await self.store.get_event(event_id)
        except Exception as e:
            logger.error("event_lookup_failed", event_id=event_id, error=str(e), exc_info=True)
            return False

        if not event:
            logger.warning("calendar_event_not_found", event_id=event_id, hook="created")
            return False

        now = utc_now().isoformat()
        pushed = await self._push_event(event, correlation_id, {"syncedToGoogle": True, "syncedAt": now})
        logger.info("event_created_hook", event_id=event_id, pushed=pushed, correlation_id=correlation_id)
        return pushed

    async def on_event_updated(self, event_id: str) -> bool:
        """
        Mark a local event dirty; the next pass pushes it.

        Returns:
            True if the event was found and flagged
        """
        event = await self.store.get_event(event_id)
        if not event:
            logger.warning("calendar_event_not_found", event_id=event_id, hook="updated")
            return False

        now = utc_now()
        await self.store.update_event(event_id, {
            "needs_sync": True,
            "metadata": {**event.metadata, "lastModified": now.isoformat()},
            "updated_at": now,
        })
        logger.info("event_marked_for_sync", event_id=event_id)
        return True

    async def on_event_deleted(self, external_id: Optional[str]) -> None:
        """Local deletes are not propagated to Google; the remote event is left in place."""
        # TODO: propagate deletes once the product decides whether the remote copy should go too
        logger.info("event_delete_not_propagated", external_id=external_id)

    # ==================== Webhook / manual / bulk ====================

    async def reconcile_recent_changes(
        self,
        correlation_id: Optional[str] = None,
        lookback: Optional[timedelta] = None
    ) -> PullStats:
        """
        Pull recently changed remote events after a push notification.

        New events are only created when a lab is found by tag or calendar mapping.

        Raises:
            GoogleCalendarError: If the remote fetch fails
        """
        correlation_id = correlation_id or new_correlation_id("webhook")
        lookback = lookback or timedelta(minutes=self.webhook_lookback_minutes)
        return await self.pull_from_google(
            start_date=utc_now() - lookback,
            correlation_id=correlation_id,
            allow_default_lab=False
        )

    async def preview_pull(self, days_back: int = 7, correlation_id: Optional[str] = None) -> PullStats:
        """
        Count what a pull would do without writing anything.

        Returns:
            total/created/updated/skipped, where a known external ID counts as updated

        Raises:
            GoogleCalendarError: If the remote fetch fails
        """
        correlation_id = correlation_id or new_correlation_id("preview")
        remote_events = await self.google_service.fetch_remote_events(
            utc_now() - timedelta(days=days_back), None, correlation_id
        )
        stats = PullStats(total=len(remote_events))

        for remote_event in remote_events:
            draft = self.google_service.convert_remote_to_local(remote_event)
            if draft is None or not draft.google_calendar_id:
                stats.skipped += 1
            elif await self.store.get_event_by_external_id(draft.google_calendar_id):
                stats.updated += 1
            else:
                stats.created += 1

        return stats

    async def bulk_sync_lab(
        self,
        lab_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> BulkSyncResult:
        """
        Import unknown remote events into a lab, then push the lab's unbound events.

        Args:
            lab_id: Target lab
            start_date: Window start (default: now)
            end_date: Window end (default: 30 days after start)

        Raises:
            ValueError: If the lab does not exist
            GoogleCalendarError: If the remote fetch fails
        """
        if not await self.store.lab_exists(lab_id):
            raise ValueError(f"Lab {lab_id} not found")

        correlation_id = new_correlation_id("bulk")
        start_date = start_date or utc_now()
        end_date = end_date or start_date + timedelta(days=30)
        result = BulkSyncResult(lab_id=lab_id)

        logger.info("bulk_sync_started",
                   correlation_id=correlation_id,
                   lab_id=lab_id,
                   start_date=isoformat_utc(start_date),
                   end_date=isoformat_utc(end_date))

        for remote_event in await self.google_service.fetch_remote_events(start_date, end_date, correlation_id):
            draft = self.google_service.convert_remote_to_local(remote_event)
            if draft is None or not draft.google_calendar_id:
                result.skipped += 1
                continue

            try:
                if await self.store.get_event_by_external_id(draft.google_calendar_id):
                    result.skipped += 1
                    continue
                await self._create_from_remote(draft, lab_id, correlation_id)
                result.imported += 1
            except Exception as e:
                logger.error("bulk_import_event_failed",
                            correlation_id=correlation_id,
                            external_id=draft.google_calendar_id,
                            error=str(e),
                            exc_info=True)
                result.skipped += 1

        unbound = await self.store.list_events(lab_id=lab_id, start=start_date, end=end_date, unbound_only=True)
        for event in unbound:
            if await self._push_event(event, correlation_id):
                result.synced += 1
            else:
                result.failed += 1

        logger.info("bulk_sync_completed", correlation_id=correlation_id, **result.model_dump())
        return result
