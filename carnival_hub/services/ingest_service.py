"""
Imported carnival ingest.

Normalises events from an external provider (MySideline) into ownerless
Carnival rows, keyed on the provider's stable event id:

* no active carnival with that id: insert an ownerless, imported carnival
* an active ownerless carnival: refresh title, date, location and schedule
* an active carnival with an owner: leave it alone (owner edits win)

Each event is its own transaction, so a run that is cancelled or fails
part-way leaves everything before that point committed. Re-running the
same batch writes nothing.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

import httpx
from pydantic import ValidationError
from sqlalchemy import select

from carnival_hub.config import CoreSettings
from carnival_hub.database.models import Carnival, SyncLog, SyncStatus
from carnival_hub.database.store import Store, UnitOfWork
from carnival_hub.models.schemas import ExternalEvent, IngestResult
from carnival_hub.services.carnival_service import carnival_event
from carnival_hub.services.errors import ServiceError, invalid_from_validation
from carnival_hub.services.events import CarnivalImported, CarnivalUpdated
from carnival_hub.utils.datetime_utils import as_utc

logger = logging.getLogger(__name__)

MYSIDELINE_SYNC_TYPE = "mysideline"

# Fields refreshed on ownerless carnivals when the provider changes them
MUTABLE_FIELDS = ("title", "date", "location_address", "schedule_details")

# Fields copied from the event when a carnival is first imported
INSERT_FIELDS = (
    "title",
    "date",
    "end_date",
    "state",
    "location_address",
    "schedule_details",
    "organiser_contact_name",
    "organiser_contact_email",
    "organiser_contact_phone",
    "registration_link",
)

RawEvent = Union[ExternalEvent, Mapping[str, Any]]


class ExternalEventProvider(Protocol):
    """Source of external events."""

    name: str

    async def fetch_events(self) -> Sequence[RawEvent]: ...


class StaticEventProvider:
    """Serves a fixed list of events (tests, fixtures, manual imports)."""

    def __init__(self, events: Iterable[RawEvent], name: str = MYSIDELINE_SYNC_TYPE):
        self.name = name
        self._events = list(events)

    async def fetch_events(self) -> Sequence[RawEvent]:
        return list(self._events)


# MySideline feed keys -> ExternalEvent fields
_FEED_KEYS = {
    "mySidelineId": "external_event_id",
    "mySidelineEventId": "external_event_id",
    "id": "external_event_id",
    "title": "title",
    "name": "title",
    "date": "date",
    "startDate": "date",
    "endDate": "end_date",
    "state": "state",
    "locationAddress": "location_address",
    "venue": "location_address",
    "scheduleDetails": "schedule_details",
    "description": "schedule_details",
    "organiserContactName": "organiser_contact_name",
    "organiserContactEmail": "organiser_contact_email",
    "organiserContactPhone": "organiser_contact_phone",
    "registrationLink": "registration_link",
}


def normalise_feed_item(item: Mapping[str, Any]) -> dict:
    """Map a MySideline feed record onto ExternalEvent field names. First key wins."""
    normalised: dict = {}
    for key, value in item.items():
        field = _FEED_KEYS.get(key, key)
        if field not in normalised or normalised[field] in (None, ""):
            normalised[field] = value
    return normalised


class MySidelineFeedProvider:
    """
    Fetches the MySideline events feed over HTTP.

    The feed is a JSON array of events, or an object with an ``events`` array.
    """

    name = MYSIDELINE_SYNC_TYPE

    def __init__(self, feed_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self._feed_url = feed_url
        self._timeout = timeout
        self._client = client

    async def fetch_events(self) -> Sequence[RawEvent]:
        if self._client is not None:
            response = await self._client.get(self._feed_url, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._feed_url)
        response.raise_for_status()
        payload = response.json()

        items = payload.get("events", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ValueError("MySideline feed did not contain an event list")
        logger.info(f"Fetched {len(items)} event(s) from MySideline feed")
        return [normalise_feed_item(item) for item in items if isinstance(item, Mapping)]


class ImportedCarnivalIngest:
    """Writes external events into the carnival table and records each run in sync_logs."""

    def __init__(self, store: Store, settings: CoreSettings):
        self._store = store
        self._settings = settings
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # --- core ingest ---

    async def ingest(self, events: Iterable[RawEvent]) -> IngestResult:
        """
        Apply a batch of external events, one transaction per event.

        Events that fail validation are skipped and counted. A run over input
        that is already in the store writes nothing.

        Args:
            events: ExternalEvent instances or raw mappings

        Returns:
            IngestResult with created/updated/unchanged/skipped counts
        """
        result = IngestResult()
        seen = set()
        for raw in events:
            result.events_processed += 1
            try:
                event = raw if isinstance(raw, ExternalEvent) else ExternalEvent.model_validate(raw)
            except ValidationError as exc:
                result.events_skipped += 1
                reason = invalid_from_validation(exc).message
                result.errors.append(reason)
                logger.warning(f"Skipping invalid external event: {reason}")
                continue
            if event.external_event_id in seen:
                result.events_skipped += 1
                logger.warning(f"Skipping duplicate external event {event.external_event_id} in batch")
                continue
            seen.add(event.external_event_id)

            try:
                outcome = await self._apply(event)
            except ServiceError as exc:
                result.events_skipped += 1
                result.errors.append(f"{event.external_event_id}: {exc.message}")
                logger.warning(f"Failed to ingest external event {event.external_event_id}: {exc.message}")
                continue

            if outcome == "created":
                result.carnivals_created += 1
            elif outcome == "updated":
                result.carnivals_updated += 1
            else:
                result.events_unchanged += 1
        return result

    async def _apply(self, event: ExternalEvent) -> str:
        async with self._store.transaction() as uow:
            existing = await uow.find_active(Carnival, external_event_id=event.external_event_id)
            if existing is None:
                await self._insert(uow, event)
                return "created"
            if existing.created_by_user_id is not None:
                return "unchanged"
            return "updated" if await self._refresh(uow, existing, event) else "unchanged"

    async def _insert(self, uow: UnitOfWork, event: ExternalEvent) -> Carnival:
        values = {field: getattr(event, field) for field in INSERT_FIELDS}
        if values["state"] is not None:
            values["state"] = values["state"].value
        carnival = Carnival(
            **values,
            external_event_id=event.external_event_id,
            is_manually_entered=False,
            created_by_user_id=None,
            last_synced_at=uow.now,
            promotional_images=[],
            draw_files=[],
            is_active=True,
        )
        await uow.add(carnival)
        uow.emit(
            carnival_event(
                CarnivalImported, carnival, uow, external_event_id=event.external_event_id
            )
        )
        logger.info(f"Imported carnival {carnival.id} from external event {event.external_event_id}")
        return carnival

    async def _refresh(self, uow: UnitOfWork, carnival: Carnival, event: ExternalEvent) -> bool:
        changed = []
        for field in MUTABLE_FIELDS:
            value = getattr(event, field)
            if value is None:
                continue
            if getattr(carnival, field) != value:
                setattr(carnival, field, value)
                changed.append(field)
        if not changed:
            return False
        carnival.last_synced_at = uow.now
        await uow.flush()
        uow.emit(carnival_event(CarnivalUpdated, carnival, uow, changed_fields=changed))
        logger.info(f"Refreshed imported carnival {carnival.id}: {', '.join(changed)}")
        return True

    # --- sync runs ---

    async def should_run_sync(self, sync_type: str = MYSIDELINE_SYNC_TYPE, interval_hours: Optional[int] = None) -> bool:
        """True when no sync of this type has completed within the interval."""
        hours = interval_hours if interval_hours is not None else self._settings.ingest_interval_hours
        async with self._store.session() as session:
            result = await session.execute(
                select(SyncLog.completed_at)
                .where(
                    SyncLog.sync_type == sync_type,
                    SyncLog.status == SyncStatus.COMPLETED.value,
                )
                .order_by(SyncLog.completed_at.desc())
                .limit(1)
            )
            last_completed = result.scalar_one_or_none()
        if last_completed is None:
            return True
        age = self._store.clock.now() - as_utc(last_completed)
        return age >= timedelta(hours=hours)

    async def sync(self, provider: ExternalEventProvider, trigger_source: str = "scheduled") -> IngestResult:
        """
        Fetch from a provider and ingest, recording the run in sync_logs.

        Returns a no-op result when sync is disabled or a run is already in
        progress. Provider failures mark the run failed and are reported in
        the result. Cancellation marks the run failed and propagates.
        """
        if not self._settings.mysideline_sync_enabled:
            logger.info("MySideline sync is disabled via MYSIDELINE_SYNC_ENABLED configuration")
            return IngestResult(skipped_run=True)
        if self._running:
            logger.info("MySideline sync already running, skipping")
            return IngestResult(skipped_run=True)

        self._running = True
        try:
            log_id = await self._start_log(provider.name, trigger_source)
            try:
                events = await provider.fetch_events()
                result = await self.ingest(events)
            except asyncio.CancelledError:
                await self._finish_log_safely(log_id, SyncStatus.FAILED, error_message="cancelled")
                raise
            except (httpx.HTTPError, ValueError, ServiceError) as e:
                logger.error(f"{provider.name} sync failed: {e}", exc_info=True)
                await self._finish_log(log_id, SyncStatus.FAILED, error_message=str(e))
                return IngestResult(sync_log_id=log_id, errors=[str(e)])

            await self._finish_log(log_id, SyncStatus.COMPLETED, result=result)
            result.sync_log_id = log_id
            logger.info(
                f"{provider.name} sync completed: {result.events_processed} processed, "
                f"{result.carnivals_created} created, {result.carnivals_updated} updated, "
                f"{result.events_skipped} skipped"
            )
            return result
        finally:
            self._running = False

    async def _start_log(self, sync_type: str, trigger_source: str) -> int:
        async with self._store.transaction() as uow:
            log = await uow.add(
                SyncLog(
                    sync_type=sync_type,
                    status=SyncStatus.STARTED.value,
                    trigger_source=trigger_source,
                    started_at=uow.now,
                )
            )
            return log.id

    async def _finish_log(
        self,
        log_id: int,
        status: SyncStatus,
        result: Optional[IngestResult] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._store.transaction() as uow:
            log = await uow.get(SyncLog, log_id)
            if log is None:
                return
            log.status = status.value
            log.completed_at = uow.now
            log.error_message = error_message
            if result is not None:
                log.events_processed = result.events_processed
                log.carnivals_created = result.carnivals_created
                log.carnivals_updated = result.carnivals_updated
                log.events_skipped = result.events_skipped

    async def _finish_log_safely(self, log_id: int, status: SyncStatus, error_message: str) -> None:
        try:
            await self._finish_log(log_id, status, error_message=error_message)
        except Exception:
            logger.warning(f"Could not mark sync log {log_id} as {status.value}", exc_info=True)

    async def recent_logs(self, sync_type: str = MYSIDELINE_SYNC_TYPE, limit: int = 10) -> List[SyncLog]:
        async with self._store.session() as session:
            result = await session.execute(
                select(SyncLog)
                .where(SyncLog.sync_type == sync_type)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


class IngestScheduler:
    """
    Background worker that runs the ingest when the last sync is stale.

    Checks every ``poll_interval_seconds``; a sync only runs when the last
    completed one is older than the configured ingest interval.
    """

    def __init__(
        self,
        ingest: ImportedCarnivalIngest,
        provider: ExternalEventProvider,
        poll_interval_seconds: float = 3600,
    ):
        self._ingest = ingest
        self._provider = provider
        self._poll_interval_seconds = poll_interval_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the background ingest worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Carnival ingest worker started")

    async def stop(self) -> None:
        """Stop the worker and wait for it to finish."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            logger.info("Carnival ingest worker stopped")
        self._worker_task = None

    async def run_now(self, trigger_source: str = "manual") -> IngestResult:
        """On-demand sync, ignoring the staleness check."""
        return await self._ingest.sync(self._provider, trigger_source=trigger_source)

    async def tick(self) -> Optional[IngestResult]:
        """One scheduler step: sync if due, otherwise do nothing."""
        if not await self._ingest.should_run_sync(self._provider.name):
            logger.debug("Carnival ingest not due yet")
            return None
        return await self._ingest.sync(self._provider, trigger_source="scheduled")

    async def _poll_loop(self) -> None:
        """Main loop: run a tick, then sleep until the next poll or stop."""
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in carnival ingest worker: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
