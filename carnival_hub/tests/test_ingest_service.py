"""
Tests for the imported carnival ingest, its sync log and the scheduler.
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import select

from carnival_hub.config import CoreSettings
from carnival_hub.container import CarnivalHub
from carnival_hub.database.models import Carnival, SyncLog
from carnival_hub.services.events import CarnivalImported, CarnivalUpdated
from carnival_hub.services.ingest_service import (
    ImportedCarnivalIngest,
    IngestScheduler,
    MySidelineFeedProvider,
    StaticEventProvider,
    normalise_feed_item,
)
from carnival_hub.utils.datetime_utils import as_utc


def _event(external_id="MS-100", **overrides):
    values = {
        "external_event_id": external_id,
        "title": "Central Coast Masters Carnival",
        "date": "2025-07-19",
        "state": "NSW",
        "location_address": "Morrie Breen Oval, Kanwal",
        "organiser_contact_email": "Organiser@MySideline.example",
    }
    values.update(overrides)
    return values


@pytest.fixture
def captured(store):
    events = []

    async def listener(batch):
        events.extend(batch)

    store.add_listener(listener)
    return events


async def _imported(store, external_id):
    async with store.session() as session:
        result = await session.execute(
            select(Carnival).where(Carnival.external_event_id == external_id, Carnival.is_active.is_(True))
        )
        return result.scalar_one_or_none()


async def _logs(store):
    async with store.session() as session:
        result = await session.execute(select(SyncLog).order_by(SyncLog.id))
        return list(result.scalars().all())


# ============================================================================
# ingest
# ============================================================================


@pytest.mark.asyncio
async def test_new_event_creates_ownerless_carnival(hub, store, clock, captured, mail_sender):
    await hub.subscriptions.subscribe({"email": "fan@example.com", "states": ["NSW"]})

    result = await hub.ingest.ingest([_event()])

    assert (result.carnivals_created, result.carnivals_updated, result.events_unchanged) == (1, 0, 0)
    carnival = await _imported(store, "MS-100")
    assert carnival.created_by_user_id is None
    assert carnival.is_manually_entered is False
    assert carnival.date == date(2025, 7, 19)
    assert carnival.organiser_contact_email == "organiser@mysideline.example"
    assert as_utc(carnival.last_synced_at) == clock.now()
    assert [type(e) for e in captured] == [CarnivalImported]
    assert mail_sender.sent == []


@pytest.mark.asyncio
async def test_rerunning_the_same_batch_writes_nothing(hub, store, clock, captured):
    batch = [_event("MS-1"), _event("MS-2", title="Hunter Valley Masters")]
    await hub.ingest.ingest(batch)
    first_sync = (await _imported(store, "MS-1")).last_synced_at
    captured.clear()
    clock.advance(hours=1)

    again = await hub.ingest.ingest(batch)

    assert (again.carnivals_created, again.carnivals_updated, again.events_unchanged) == (0, 0, 2)
    assert captured == []
    assert (await _imported(store, "MS-1")).last_synced_at == first_sync


@pytest.mark.asyncio
async def test_changed_event_refreshes_ownerless_carnival(hub, store, clock, captured):
    await hub.ingest.ingest([_event()])
    captured.clear()
    clock.advance(days=1)

    result = await hub.ingest.ingest(
        [_event(title="Central Coast Masters Carnival 2025", location_address=None, date="26/07/2025")]
    )

    assert result.carnivals_updated == 1
    carnival = await _imported(store, "MS-100")
    assert carnival.title == "Central Coast Masters Carnival 2025"
    assert carnival.date == date(2025, 7, 26)
    assert carnival.location_address == "Morrie Breen Oval, Kanwal"
    assert as_utc(carnival.last_synced_at) == clock.now()
    [event] = captured
    assert isinstance(event, CarnivalUpdated)
    assert sorted(event.changed_fields) == ["date", "title"]


@pytest.mark.asyncio
async def test_owned_carnival_is_left_alone(hub, store, make_delegate, make_carnival):
    _, owner_id = await make_delegate("Host Masters", "host@example.com")
    carnival_id = await make_carnival("Owner's Title", owner_id=owner_id, external_event_id="MS-100")

    result = await hub.ingest.ingest([_event(title="Feed Title")])

    assert result.events_unchanged == 1
    assert (await _imported(store, "MS-100")).id == carnival_id
    assert (await _imported(store, "MS-100")).title == "Owner's Title"


@pytest.mark.asyncio
async def test_archived_import_does_not_block_reimport(hub, store, make_carnival):
    archived_id = await make_carnival("Old Listing", external_event_id="MS-100", is_active=False)

    result = await hub.ingest.ingest([_event()])

    assert result.carnivals_created == 1
    assert (await _imported(store, "MS-100")).id != archived_id


@pytest.mark.asyncio
async def test_invalid_and_duplicate_events_are_skipped(hub, store):
    result = await hub.ingest.ingest(
        [
            _event("MS-1"),
            _event("MS-1", title="Same id again"),
            _event("MS-2", title=""),
            _event("MS-3", date="31/02/2025"),
            _event("MS-4", state="XYZ"),
            {"title": "No id"},
            _event("MS-5", date="19/07/2025"),
        ]
    )

    assert result.events_processed == 7
    assert result.carnivals_created == 2
    assert result.events_skipped == 5
    assert len(result.errors) == 4
    assert (await _imported(store, "MS-5")).date == date(2025, 7, 19)
    assert (await _imported(store, "MS-1")).title == "Central Coast Masters Carnival"


def test_normalise_feed_item_maps_camel_case_keys():
    item = normalise_feed_item(
        {"mySidelineId": 42, "name": "Gold Coast Masters", "startDate": "2025-08-02", "venue": "Pizzey Park"}
    )
    assert item == {
        "external_event_id": 42,
        "title": "Gold Coast Masters",
        "date": "2025-08-02",
        "location_address": "Pizzey Park",
    }


# ============================================================================
# sync runs
# ============================================================================


@pytest.mark.asyncio
async def test_sync_records_completed_log(hub, store, clock):
    result = await hub.ingest.sync(StaticEventProvider([_event("MS-1"), _event("MS-2", title="")]), "manual")

    assert result.sync_log_id is not None
    [log] = await _logs(store)
    assert log.id == result.sync_log_id
    assert log.status == "completed"
    assert log.trigger_source == "manual"
    assert (log.events_processed, log.carnivals_created, log.events_skipped) == (2, 1, 1)
    assert as_utc(log.completed_at) == clock.now()
    assert hub.ingest.is_running is False


@pytest.mark.asyncio
async def test_sync_disabled_is_a_noop(store, clock):
    settings = CoreSettings(database_url="sqlite+aiosqlite://", mysideline_sync_enabled=False)
    ingest = ImportedCarnivalIngest(store, settings)

    result = await ingest.sync(StaticEventProvider([_event()]))

    assert result.skipped_run is True
    assert await _logs(store) == []


@pytest.mark.asyncio
async def test_feed_provider_reads_mysideline_json(hub, store):
    def handler(request):
        assert request.url.path == "/feed"
        return httpx.Response(
            200,
            json={
                "events": [
                    {"mySidelineEventId": "77", "title": "Ipswich Masters", "date": "09/08/2025", "state": "qld"},
                ]
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        provider = MySidelineFeedProvider("https://mysideline.test/feed", client=client)
        result = await hub.ingest.sync(provider)

    assert result.carnivals_created == 1
    carnival = await _imported(store, "77")
    assert carnival.state == "QLD"
    assert carnival.date == date(2025, 8, 9)


@pytest.mark.asyncio
async def test_feed_failure_marks_log_failed(hub, store):
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        provider = MySidelineFeedProvider("https://mysideline.test/feed", client=client)
        result = await hub.ingest.sync(provider)

    assert result.carnivals_created == 0
    assert result.errors
    [log] = await _logs(store)
    assert log.status == "failed"
    assert "503" in log.error_message


@pytest.mark.asyncio
async def test_cancelled_sync_marks_log_failed(hub, store):
    provider = MagicMock()
    provider.name = "mysideline"
    provider.fetch_events = AsyncMock(side_effect=asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await hub.ingest.sync(provider)

    [log] = await _logs(store)
    assert log.status == "failed"
    assert log.error_message == "cancelled"
    assert hub.ingest.is_running is False


@pytest.mark.asyncio
async def test_should_run_sync_follows_interval(hub, clock):
    assert await hub.ingest.should_run_sync(interval_hours=24) is True
    await hub.ingest.sync(StaticEventProvider([]))

    clock.advance(hours=23)
    assert await hub.ingest.should_run_sync(interval_hours=24) is False
    clock.advance(hours=1)
    assert await hub.ingest.should_run_sync(interval_hours=24) is True


# ============================================================================
# scheduler
# ============================================================================


@pytest.mark.asyncio
async def test_scheduler_tick_runs_only_when_due(hub, store, clock):
    scheduler = IngestScheduler(hub.ingest, StaticEventProvider([_event()]))

    first = await scheduler.tick()
    assert first.carnivals_created == 1
    assert await scheduler.tick() is None

    clock.advance(hours=24)
    second = await scheduler.tick()
    assert second.events_unchanged == 1

    manual = await scheduler.run_now()
    assert manual.events_unchanged == 1
    assert [log.trigger_source for log in await _logs(store)] == ["scheduled", "scheduled", "manual"]


@pytest.mark.asyncio
async def test_scheduler_start_and_stop():
    ingest = MagicMock()
    ingest.should_run_sync = AsyncMock(return_value=False)
    scheduler = IngestScheduler(ingest, StaticEventProvider([]), poll_interval_seconds=3600)

    scheduler.start()
    assert scheduler.running is True
    for _ in range(100):
        if ingest.should_run_sync.await_count:
            break
        await asyncio.sleep(0)

    await scheduler.stop()

    assert scheduler.running is False
    ingest.should_run_sync.assert_awaited_with("mysideline")
    ingest.sync.assert_not_called()


@pytest.mark.asyncio
async def test_recent_logs_newest_first(hub, clock):
    await hub.ingest.sync(StaticEventProvider([]), "scheduled")
    clock.advance(hours=1)
    await hub.ingest.sync(StaticEventProvider([]), "manual")

    logs = await hub.ingest.recent_logs(limit=5)

    assert [log.trigger_source for log in logs] == ["manual", "scheduled"]
    assert await hub.ingest.recent_logs(sync_type="other") == []


@pytest.mark.asyncio
async def test_hub_builds_scheduler_only_with_feed_url(engine, clock, mail_sender):
    without = CarnivalHub(engine, CoreSettings(database_url="sqlite+aiosqlite://"), clock=clock, mail_sender=mail_sender)
    assert without.ingest_scheduler() is None

    settings = CoreSettings(database_url="sqlite+aiosqlite://", mysideline_feed_url="https://mysideline.test/feed")
    with_feed = CarnivalHub(engine, settings, clock=clock, mail_sender=mail_sender)
    scheduler = with_feed.ingest_scheduler(poll_interval_seconds=60)
    assert isinstance(scheduler, IngestScheduler)
    assert scheduler.running is False
