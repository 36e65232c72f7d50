"""Wire the sync engine and domain stores together once per process."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from aiohttp import ClientSession

from .stores import ExpenseStore, ItineraryStore, NoteStore, TripStore
from .sync.connectivity import ConnectivityMonitor
from .sync.gateway import RemoteGateway
from .sync.local_store import LocalStore
from .sync.manager import SyncConfig, SyncManager
from .sync.outbox import Outbox


@dataclass(slots=True)
class NomadNote:
    store: LocalStore
    outbox: Outbox
    sync: SyncManager
    trips: TripStore
    itinerary: ItineraryStore
    expenses: ExpenseStore
    notes: NoteStore

    @classmethod
    def open(
        cls,
        path: str | Path,
        config: SyncConfig | None = None,
        *,
        connectivity: ConnectivityMonitor | None = None,
        gateway: RemoteGateway | None = None,
        session: ClientSession | None = None,
    ) -> NomadNote:
        store = LocalStore(path)
        outbox = Outbox(store)
        sync = SyncManager(
            store,
            outbox,
            config,
            gateway=gateway,
            connectivity=connectivity,
            session=session,
        )
        return cls(
            store=store,
            outbox=outbox,
            sync=sync,
            trips=TripStore(store, sync),
            itinerary=ItineraryStore(store, sync),
            expenses=ExpenseStore(store, sync),
            notes=NoteStore(store, sync),
        )

    async def async_close(self) -> None:
        await self.sync.async_stop()
        self.store.close()
