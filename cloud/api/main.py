from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from nomadnote.const import REMOTE_COLLECTIONS
from nomadnote.models import (
    CHILD_KINDS,
    Entity,
    EntityKind,
    EntityValidationError,
    parse_entity,
    sort_entities,
)

_LOGGER = logging.getLogger(__name__)

_LABELS = {
    EntityKind.TRIP: "trip",
    EntityKind.ITINERARY: "itinerary item",
    EntityKind.EXPENSE: "expense",
    EntityKind.NOTE: "note",
}


class RemoteStoreError(ValueError):
    """Raised when a write would violate the relational schema."""


class RemoteState:
    """In-memory reference implementation of the relational remote store."""

    def __init__(self) -> None:
        self.tables: dict[EntityKind, dict[str, Entity]] = {kind: {} for kind in EntityKind}

    # ------------------------------------------------------------------
    def list(self, kind: EntityKind, trip_id: str | None = None) -> list[dict[str, Any]]:
        rows = list(self.tables[kind].values())
        if trip_id is not None:
            rows = [row for row in rows if row.parent_id == trip_id]
        return [row.to_dict() for row in sort_entities(kind, rows)]

    def upsert(self, kind: EntityKind, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Insert or replace a row keyed by ``id`` and return the stored record.

        ``createdAt`` of an existing row is kept, as an ``ON CONFLICT DO
        UPDATE`` that skips the column would.
        """

        record = parse_entity(kind, payload)
        if kind is not EntityKind.TRIP and record.parent_id not in self.tables[EntityKind.TRIP]:
            raise RemoteStoreError(f"trip {record.parent_id} does not exist")
        existing = self.tables[kind].get(record.id)
        if existing is not None:
            record.created_at = existing.created_at
        self.tables[kind][record.id] = record
        return record.to_dict()

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        self.tables[kind].pop(entity_id, None)
        if kind is EntityKind.TRIP:
            for child_kind in CHILD_KINDS:
                table = self.tables[child_kind]
                for child_id in [cid for cid, child in table.items() if child.parent_id == entity_id]:
                    del table[child_id]


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app() -> FastAPI:
    app = FastAPI()
    state = RemoteState()
    app.state.state = state

    def register(kind: EntityKind) -> None:
        collection = REMOTE_COLLECTIONS[kind.value]
        label = _LABELS[kind]

        async def handle_upsert(request: Request) -> Any:
            try:
                payload = await request.json()
            except ValueError:
                return _error("Request body must be JSON", 400)
            try:
                return state.upsert(kind, payload)
            except (EntityValidationError, RemoteStoreError) as err:
                _LOGGER.warning("Error upserting %s: %s", label, err)
                return _error(f"Failed to save {label}: {err}", 400)

        async def handle_delete(entity_id: str) -> dict[str, Any]:
            state.delete(kind, entity_id)
            return {"success": True}

        app.add_api_route(f"/api/{collection}", handle_upsert, methods=["POST"])
        app.add_api_route(f"/api/{collection}/{{entity_id}}", handle_delete, methods=["DELETE"])

        if kind is EntityKind.TRIP:

            async def handle_list_trips() -> list[dict[str, Any]]:
                return state.list(kind)

            app.add_api_route("/api/trips", handle_list_trips, methods=["GET"])
        else:

            async def handle_list_children(trip_id: str) -> list[dict[str, Any]]:
                return state.list(kind, trip_id)

            app.add_api_route(f"/api/trips/{{trip_id}}/{collection}", handle_list_children, methods=["GET"])

    for kind in EntityKind:
        register(kind)

    @app.get("/health")
    async def handle_health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now(tz=UTC).isoformat()}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=3000)


if __name__ == "__main__":
    main()
