"""Per-kind domain stores: optimistic local writes followed by an outbox entry.

Each mutation is applied to the local store first, then queued for the
remote store, then an opportunistic sync is scheduled in the background.
A local storage failure raises before anything is queued.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, ClassVar, Generic

from .models import (
    CHILD_KINDS,
    ENTITY_TYPES,
    EntityKind,
    EntityT,
    Expense,
    ItineraryItem,
    Note,
    Trip,
    apply_changes,
    generate_id,
    utcnow_iso,
)
from .sync.local_store import LocalStore
from .sync.manager import SyncManager
from .sync.outbox import SyncAction


class DomainStore(Generic[EntityT]):
    """Shared create/update/delete flow for one entity kind."""

    kind: ClassVar[EntityKind]

    def __init__(self, store: LocalStore, sync: SyncManager) -> None:
        self._store = store
        self._sync = sync
        self._table = store.table(self.kind)
        self._record_type = ENTITY_TYPES[self.kind]

    async def get(self, entity_id: str) -> EntityT | None:
        return self._table.get(entity_id)  # type: ignore[return-value]

    async def create(self, **values: Any) -> EntityT:
        now = utcnow_iso()
        values.setdefault("id", generate_id())
        values["created_at"] = now
        values["updated_at"] = now
        entity = self._validated(self._record_type(**values))
        await self._commit(entity, SyncAction.CREATE)
        return entity

    async def update(self, entity_id: str, **changes: Any) -> EntityT | None:
        current = self._table.get(entity_id)
        if current is None:
            return None
        changes.pop("created_at", None)
        changes["updated_at"] = utcnow_iso()
        entity = self._validated(apply_changes(current, changes))
        await self._commit(entity, SyncAction.UPDATE)
        return entity

    async def delete(self, entity_id: str) -> None:
        self._table.delete(entity_id)
        self._sync.queue(self.kind, SyncAction.DELETE, {"id": entity_id})
        self._sync.request_sync()

    # ------------------------------------------------------------------
    async def _commit(self, entity: EntityT, action: SyncAction) -> None:
        self._table.set(entity)
        self._sync.queue(self.kind, action, entity.to_dict())
        self._sync.request_sync()

    def _validated(self, entity: EntityT) -> EntityT:
        return self._record_type.from_payload(entity.to_dict())  # type: ignore[return-value]


class TripStore(DomainStore[Trip]):
    kind = EntityKind.TRIP

    async def list(self) -> list[Trip]:
        return self._table.get_all()  # type: ignore[return-value]

    async def delete(self, entity_id: str) -> None:
        """Delete a trip together with its itinerary items, expenses and notes.

        Only the trip delete is queued; the remote store cascades on its own.
        """

        self._table.delete(entity_id)
        for kind in CHILD_KINDS:
            self._store.table(kind).delete_by_parent(entity_id)
        self._sync.queue(self.kind, SyncAction.DELETE, {"id": entity_id})
        self._sync.request_sync()


class ItineraryStore(DomainStore[ItineraryItem]):
    kind = EntityKind.ITINERARY

    async def list(self, trip_id: str) -> list[ItineraryItem]:
        return self._table.get_by_parent(trip_id)  # type: ignore[return-value]

    async def create(self, **values: Any) -> ItineraryItem:
        if values.get("order") is None and values.get("trip_id"):
            # Append to the end of the day.
            siblings = [item for item in self._table.get_by_parent(values["trip_id"]) if item.date == values.get("date")]
            values["order"] = len(siblings)
        return await super().create(**values)

    async def reorder(self, items: Sequence[ItineraryItem]) -> list[ItineraryItem]:
        """Persist ``items`` in the given order, renumbering ``order`` densely from 0."""

        now = utcnow_iso()
        reordered = [
            self._validated(apply_changes(item, {"order": index, "updated_at": now}))
            for index, item in enumerate(items)
        ]
        for item in reordered:
            self._table.set(item)
        for item in reordered:
            self._sync.queue(self.kind, SyncAction.UPDATE, item.to_dict())
        if reordered:
            self._sync.request_sync()
        return reordered


class ExpenseStore(DomainStore[Expense]):
    kind = EntityKind.EXPENSE

    async def list(self, trip_id: str) -> list[Expense]:
        return self._table.get_by_parent(trip_id)  # type: ignore[return-value]


class NoteStore(DomainStore[Note]):
    kind = EntityKind.NOTE

    async def list(self, trip_id: str) -> list[Note]:
        return self._table.get_by_parent(trip_id)  # type: ignore[return-value]
