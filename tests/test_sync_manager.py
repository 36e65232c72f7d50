from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nomadnote.models import EntityKind, Note, Trip
from nomadnote.sync.connectivity import ConnectivityMonitor
from nomadnote.sync.manager import SyncConfig, SyncManager, SyncManagerError, SyncState

CREATED = "2025-01-01T00:00:00Z"


def trip_payload(trip_id: str = "t1", **extra) -> dict:
    return {
        "id": trip_id,
        "name": "Patagonia",
        "destination": "Chile",
        "startDate": "2025-11-01",
        "endDate": "2025-11-20",
        "createdAt": CREATED,
        "updatedAt": CREATED,
        **extra,
    }


def item_payload(item_id: str, trip_id: str = "t1", order: int = 0) -> dict:
    return {
        "id": item_id,
        "tripId": trip_id,
        "date": "2025-11-02",
        "title": f"Stop {item_id}",
        "order": order,
        "createdAt": CREATED,
        "updatedAt": CREATED,
    }


def note_payload(note_id: str, trip_id: str = "t1") -> dict:
    return {"id": note_id, "tripId": trip_id, "content": "pack gloves", "createdAt": CREATED, "updatedAt": CREATED}


@pytest.mark.asyncio
async def test_drain_pushes_in_enqueue_order(manager, outbox, gateway, remote) -> None:
    manager.queue("trip", "create", trip_payload())
    manager.queue("itinerary", "create", item_payload("i1"))
    manager.queue("itinerary", "update", item_payload("i1", order=3))

    result = await manager.sync_all()

    assert result.pushed == 3
    assert result.failed == 0
    pushes = [call for call in gateway.calls if call[0] == "upsert"]
    assert pushes == [("upsert", "trip", "t1"), ("upsert", "itinerary", "i1"), ("upsert", "itinerary", "i1")]
    assert outbox.size() == 0
    assert remote.tables[EntityKind.ITINERARY]["i1"].order == 3


@pytest.mark.asyncio
async def test_offline_edits_reach_remote_after_reconnect(app, connectivity, remote) -> None:
    connectivity.set_online(False)
    trip = await app.trips.create(name="Patagonia", destination="Chile", start_date="2025-11-01", end_date="2025-11-20")
    item = await app.itinerary.create(trip_id=trip.id, date="2025-11-02", title="Torres del Paine")

    assert app.outbox.size() == 2
    assert remote.tables[EntityKind.TRIP] == {}
    assert (await app.sync.sync_all()).skipped == "offline"
    assert remote.tables[EntityKind.TRIP] == {}

    connectivity.set_online(True)
    result = await app.sync.sync_all()

    assert result.pushed == 2
    assert app.outbox.size() == 0
    assert trip.id in remote.tables[EntityKind.TRIP]
    assert remote.tables[EntityKind.ITINERARY][item.id].trip_id == trip.id
    assert await app.itinerary.list(trip.id) == [item]


@pytest.mark.asyncio
async def test_failed_entry_stays_queued_and_later_entries_continue(manager, outbox, gateway, remote) -> None:
    gateway.fail.add(("upsert", EntityKind.NOTE))
    manager.queue("trip", "create", trip_payload())
    note_entry = manager.queue("note", "create", note_payload("n1"))
    manager.queue("itinerary", "create", item_payload("i1"))

    result = await manager.sync_all()

    assert result.pushed == 2
    assert result.failed == 1
    (remaining,) = outbox.get_all()
    assert remaining.id == note_entry.id
    assert remaining.attempts == 1
    assert remaining.last_error == "service unavailable"
    assert "i1" in remote.tables[EntityKind.ITINERARY]

    gateway.fail.clear()
    retry = await manager.sync_all()
    assert retry.pushed == 1
    assert outbox.size() == 0
    assert "n1" in remote.tables[EntityKind.NOTE]


@pytest.mark.asyncio
async def test_rejected_child_is_retried_every_cycle(manager, outbox) -> None:
    manager.queue("expense", "create", {"id": "e1", "tripId": "ghost", "category": "food", "amount": 4})

    first = await manager.sync_all()
    second = await manager.sync_all()

    assert first.failed == second.failed == 1
    (entry,) = outbox.get_all()
    assert entry.attempts == 2
    assert "does not exist" in entry.last_error


@pytest.mark.asyncio
async def test_acknowledged_record_is_written_locally(manager, local_store, remote) -> None:
    remote.upsert(EntityKind.TRIP, trip_payload(createdAt="2024-06-01T00:00:00Z"))
    manager.queue("trip", "update", trip_payload(name="Renamed", createdAt="2025-03-03T00:00:00Z"))

    await manager.sync_all()

    stored = local_store.trips.get("t1")
    assert stored.name == "Renamed"
    assert stored.created_at == "2024-06-01T00:00:00Z"


@pytest.mark.asyncio
async def test_delete_entry_removes_remote_and_local(manager, local_store, remote) -> None:
    remote.upsert(EntityKind.TRIP, trip_payload())
    remote.upsert(EntityKind.NOTE, note_payload("n1"))
    manager.queue("trip", "delete", {"id": "t1"})
    manager.queue("note", "delete", {"id": "never-existed"})

    result = await manager.sync_all()

    assert result.pushed == 2
    assert remote.tables[EntityKind.TRIP] == {}
    assert remote.tables[EntityKind.NOTE] == {}
    assert local_store.trips.get("t1") is None


@pytest.mark.asyncio
async def test_pull_mirrors_remote_state(manager, local_store, remote) -> None:
    remote.upsert(EntityKind.TRIP, trip_payload())
    remote.upsert(EntityKind.ITINERARY, item_payload("i1"))
    remote.upsert(EntityKind.NOTE, note_payload("n1"))

    result = await manager.sync_all()

    assert result.pulled == 3
    assert [trip.id for trip in local_store.trips.get_all()] == ["t1"]
    assert [item.id for item in local_store.itinerary.get_by_parent("t1")] == ["i1"]
    assert isinstance(local_store.notes.get("n1"), Note)


@pytest.mark.asyncio
async def test_pull_skips_failed_collections(manager, local_store, gateway, remote, caplog) -> None:
    remote.upsert(EntityKind.TRIP, trip_payload())
    remote.upsert(EntityKind.ITINERARY, item_payload("i1"))
    remote.upsert(EntityKind.EXPENSE, {"id": "e1", "tripId": "t1", "category": "food", "amount": 3})
    gateway.fail.add(("fetch_by_parent", EntityKind.EXPENSE))

    result = await manager.sync_all()

    assert result.error is None
    assert local_store.itinerary.get("i1") is not None
    assert local_store.expenses.get("e1") is None
    assert "Error syncing expense for trip t1" in caplog.text


@pytest.mark.asyncio
async def test_trip_listing_failure_still_refreshes_local_trips(manager, local_store, gateway, remote, caplog) -> None:
    local_store.trips.set(Trip.from_payload(trip_payload()))
    remote.upsert(EntityKind.TRIP, trip_payload())
    remote.upsert(EntityKind.NOTE, note_payload("n1"))
    gateway.fail.add(("fetch_all", EntityKind.TRIP))

    await manager.sync_all()

    assert "Error syncing trips" in caplog.text
    assert local_store.notes.get("n1") is not None


@pytest.mark.asyncio
async def test_pull_keeps_local_rows_missing_remotely(manager, local_store) -> None:
    local_store.trips.set(Trip.from_payload(trip_payload("local-only")))
    await manager.sync_all()
    assert local_store.trips.get("local-only") is not None


@pytest.mark.asyncio
async def test_concurrent_sync_is_skipped(manager, gateway) -> None:
    manager.queue("trip", "create", trip_payload())
    gateway.block = asyncio.Event()

    first = asyncio.create_task(manager.sync_all())
    while not gateway.calls:
        await asyncio.sleep(0)
    assert manager.state is SyncState.SYNCING

    second = await manager.sync_all()
    assert second.skipped == "in_progress"
    assert len(gateway.calls) == 1

    gateway.block.set()
    result = await first
    assert result.pushed == 1
    assert manager.state is SyncState.IDLE


@pytest.mark.asyncio
async def test_unconfigured_manager_never_touches_remote(local_store, outbox, gateway, connectivity) -> None:
    manager = SyncManager(local_store, outbox, SyncConfig(), gateway=gateway, connectivity=connectivity)
    manager.queue("trip", "create", trip_payload())

    result = await manager.sync_all()

    assert result.skipped == "not_configured"
    assert gateway.calls == []
    assert outbox.size() == 1
    assert manager.request_sync() is None
    with pytest.raises(SyncManagerError) as excinfo:
        await manager.sync_now()
    assert excinfo.value.reason == "not_configured"


@pytest.mark.asyncio
async def test_offline_manager_skips(manager, connectivity, gateway) -> None:
    connectivity.set_online(False)

    assert (await manager.sync_all()).skipped == "offline"
    assert manager.request_sync() is None
    with pytest.raises(SyncManagerError) as excinfo:
        await manager.sync_now()
    assert excinfo.value.reason == "offline"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_unexpected_error_resets_state(manager, gateway) -> None:
    gateway.fetch_all = AsyncMock(side_effect=RuntimeError("boom"))

    result = await manager.sync_all()

    assert result.error == "boom"
    assert manager.state is SyncState.IDLE
    assert manager.status()["last_error"] == "boom"


@pytest.mark.asyncio
async def test_status_reports_progress(manager) -> None:
    manager.queue("trip", "create", trip_payload())
    status = manager.status()
    assert status["state"] == "idle"
    assert status["configured"] is True
    assert status["online"] is True
    assert status["running"] is False
    assert status["outbox_size"] == 1
    assert status["last_result"] is None

    await manager.sync_all()
    status = manager.status()
    assert status["outbox_size"] == 0
    assert status["last_sync_at"] is not None
    assert status["last_result"]["pushed"] == 1


@pytest.mark.asyncio
async def test_reconnect_triggers_sync(local_store, outbox, gateway, remote) -> None:
    connectivity = ConnectivityMonitor(online=False)
    manager = SyncManager(
        local_store,
        outbox,
        SyncConfig(api_url="https://api.example", interval=3600),
        gateway=gateway,
        connectivity=connectivity,
    )
    manager.queue("trip", "create", trip_payload())
    await manager.async_start()
    assert manager.status()["running"] is True

    connectivity.set_online(True)
    await connectivity.wait_idle()

    assert outbox.size() == 0
    assert "t1" in remote.tables[EntityKind.TRIP]

    await manager.async_stop()
    assert manager.status()["running"] is False
    connectivity.set_online(False)
    manager.queue("trip", "update", trip_payload(name="later"))
    connectivity.set_online(True)
    await connectivity.wait_idle()
    assert outbox.size() == 1


@pytest.mark.asyncio
async def test_start_without_url_does_not_schedule(local_store, outbox) -> None:
    manager = SyncManager(local_store, outbox)
    await manager.async_start()
    assert manager.status()["running"] is False
    await manager.async_stop()


@pytest.mark.asyncio
async def test_owned_session_is_closed(local_store, outbox, gateway) -> None:
    session = MagicMock()
    session.close = AsyncMock()
    with (
        patch("nomadnote.sync.manager.ClientSession", return_value=session),
        patch("nomadnote.sync.manager.RemoteGateway", return_value=gateway) as gateway_cls,
    ):
        manager = SyncManager(local_store, outbox, SyncConfig(api_url="https://api.example", request_timeout=5))
        await manager.sync_all()
        await manager.async_stop()

    gateway_cls.assert_called_once_with(session, "https://api.example", timeout=5)
    session.close.assert_awaited()


def test_config_from_options_and_env() -> None:
    config = SyncConfig.from_options({"api_url": " https://api.example ", "sync_interval": 1, "request_timeout": "x"})
    assert config.api_url == "https://api.example"
    assert config.interval == 5
    assert config.request_timeout == 15.0
    assert config.configured

    env = {"NOMADNOTE_API_URL": "https://env.example", "NOMADNOTE_SYNC_INTERVAL": "60"}
    config = SyncConfig.from_env(env)
    assert config.api_url == "https://env.example"
    assert config.interval == 60

    assert not SyncConfig.from_env({}).configured


@pytest.mark.asyncio
async def test_replayed_entries_are_idempotent(manager, remote) -> None:
    for _ in range(2):
        manager.queue("trip", "create", trip_payload())
        manager.queue("note", "create", note_payload("n1"))
        manager.queue("note", "delete", {"id": "n1"})
        await manager.sync_all()

    assert list(remote.tables[EntityKind.TRIP]) == ["t1"]
    assert remote.tables[EntityKind.NOTE] == {}


@pytest.mark.asyncio
async def test_failed_create_holds_back_later_update(manager, outbox, gateway, remote, local_store) -> None:
    gateway.fail_next["upsert"] = 1
    manager.queue("trip", "create", trip_payload(name="A"))
    manager.queue("trip", "update", trip_payload(name="B"))
    manager.queue("note", "create", note_payload("n1", trip_id="other"))

    first = await manager.sync_all()

    assert first.pushed == 0
    assert first.failed == 3
    assert [call[:2] for call in gateway.calls if call[0] == "upsert"] == [("upsert", "trip"), ("upsert", "note")]
    entries = outbox.get_all()
    assert [entry.data.get("name") for entry in entries[:2]] == ["A", "B"]
    assert entries[1].attempts == 0

    second = await manager.sync_all()

    assert second.pushed == 2
    assert remote.tables[EntityKind.TRIP]["t1"].name == "B"
    assert local_store.trips.get("t1").name == "B"


@pytest.mark.asyncio
async def test_acknowledged_trip_delete_removes_local_children(manager, local_store, remote) -> None:
    manager.queue("trip", "create", trip_payload())
    manager.queue("itinerary", "create", item_payload("i1"))
    manager.queue("trip", "delete", {"id": "t1"})

    result = await manager.sync_all()

    assert result.pushed == 3
    assert remote.tables[EntityKind.ITINERARY] == {}
    assert local_store.itinerary.get("i1") is None


@pytest.mark.asyncio
async def test_request_sync_runs_in_background(manager, outbox, gateway, remote) -> None:
    manager.queue("trip", "create", trip_payload())
    gateway.block = asyncio.Event()

    task = manager.request_sync()

    assert task is not None
    assert outbox.size() == 1
    await asyncio.sleep(0)
    assert manager.syncing
    gateway.block.set()
    await manager.wait_idle()
    assert task.done()
    assert outbox.size() == 0
    assert "t1" in remote.tables[EntityKind.TRIP]


@pytest.mark.asyncio
async def test_async_stop_waits_for_scheduled_sync(manager, outbox) -> None:
    manager.queue("trip", "create", trip_payload())
    manager.request_sync()

    await manager.async_stop()

    assert outbox.size() == 0
