"""Typed client for the remote store's REST surface.

Every call returns a :class:`GatewayResult`.  Transport failures, HTTP errors
and malformed payloads are reported through ``error``; nothing raises across
this boundary.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..const import DEFAULT_REQUEST_TIMEOUT, REMOTE_COLLECTIONS
from ..models import Entity, EntityKind, EntityValidationError, coerce_kind, parse_entity

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class GatewayResult(Generic[T]):
    """Outcome of a remote call: either ``value`` or ``error`` is set."""

    value: T | None = None
    error: str | None = None
    status: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteGateway:
    """CRUD calls against ``/api/<collection>`` endpoints of the remote store."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = ClientTimeout(total=timeout)

    # ------------------------------------------------------------------
    async def fetch_all(self, kind: EntityKind | str) -> GatewayResult[list[Entity]]:
        entity_kind = _kind_or_none(kind)
        if entity_kind is not EntityKind.TRIP:
            return GatewayResult(error=f"listing {kind} requires a trip id")
        result = await self._request("GET", "/api/trips")
        return self._to_entities(entity_kind, result)

    async def fetch_by_parent(self, kind: EntityKind | str, trip_id: str) -> GatewayResult[list[Entity]]:
        entity_kind = _kind_or_none(kind)
        if entity_kind is None or entity_kind is EntityKind.TRIP:
            return GatewayResult(error=f"{kind} is not scoped by trip")
        collection = REMOTE_COLLECTIONS[entity_kind.value]
        result = await self._request("GET", f"/api/trips/{quote(trip_id, safe='')}/{collection}")
        return self._to_entities(entity_kind, result)

    async def upsert(self, kind: EntityKind | str, entity: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        entity_kind = _kind_or_none(kind)
        if entity_kind is None:
            return GatewayResult(error=f"unknown entity kind {kind}")
        body = entity if isinstance(entity, Mapping) else entity.to_dict()
        result = await self._request("POST", f"/api/{REMOTE_COLLECTIONS[entity_kind.value]}", payload=dict(body))
        if not result.ok:
            return GatewayResult(error=result.error, status=result.status)
        try:
            stored = parse_entity(entity_kind, result.value)
        except EntityValidationError as err:
            return GatewayResult(error=str(err), status=result.status)
        return GatewayResult(value=stored, status=result.status)

    async def delete(self, kind: EntityKind | str, entity_id: str) -> GatewayResult[bool]:
        entity_kind = _kind_or_none(kind)
        if entity_kind is None:
            return GatewayResult(error=f"unknown entity kind {kind}")
        collection = REMOTE_COLLECTIONS[entity_kind.value]
        result = await self._request("DELETE", f"/api/{collection}/{quote(entity_id, safe='')}")
        if not result.ok:
            return GatewayResult(error=result.error, status=result.status)
        return GatewayResult(value=True, status=result.status)

    async def health(self) -> GatewayResult[dict[str, Any]]:
        result = await self._request("GET", "/health")
        if result.ok and not isinstance(result.value, Mapping):
            return GatewayResult(error="unexpected health payload", status=result.status)
        return result

    # ------------------------------------------------------------------
    async def fetch_trips(self) -> GatewayResult[list[Entity]]:
        return await self.fetch_all(EntityKind.TRIP)

    async def fetch_itinerary(self, trip_id: str) -> GatewayResult[list[Entity]]:
        return await self.fetch_by_parent(EntityKind.ITINERARY, trip_id)

    async def fetch_expenses(self, trip_id: str) -> GatewayResult[list[Entity]]:
        return await self.fetch_by_parent(EntityKind.EXPENSE, trip_id)

    async def fetch_notes(self, trip_id: str) -> GatewayResult[list[Entity]]:
        return await self.fetch_by_parent(EntityKind.NOTE, trip_id)

    async def upsert_trip(self, trip: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        return await self.upsert(EntityKind.TRIP, trip)

    async def upsert_itinerary_item(self, item: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        return await self.upsert(EntityKind.ITINERARY, item)

    async def upsert_expense(self, expense: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        return await self.upsert(EntityKind.EXPENSE, expense)

    async def upsert_note(self, note: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        return await self.upsert(EntityKind.NOTE, note)

    async def delete_trip(self, trip_id: str) -> GatewayResult[bool]:
        return await self.delete(EntityKind.TRIP, trip_id)

    async def delete_itinerary_item(self, item_id: str) -> GatewayResult[bool]:
        return await self.delete(EntityKind.ITINERARY, item_id)

    async def delete_expense(self, expense_id: str) -> GatewayResult[bool]:
        return await self.delete(EntityKind.EXPENSE, expense_id)

    async def delete_note(self, note_id: str) -> GatewayResult[bool]:
        return await self.delete(EntityKind.NOTE, note_id)

    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
    ) -> GatewayResult[Any]:
        url = f"{self.base_url}{path}"
        headers = {"Accept": "application/json"}
        try:
            async with self.session.request(
                method,
                url,
                json=payload,
                headers=headers,
                timeout=self.timeout,
            ) as resp:
                status = resp.status
                raw = await resp.read()
        except (ClientError, asyncio.TimeoutError) as err:
            message = str(err) or type(err).__name__
            _LOGGER.debug("%s %s failed: %s", method, url, message)
            return GatewayResult(error=message)

        text = raw.decode("utf-8", errors="replace")
        body: Any = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError:
                # Non-JSON error pages fall back to the status line below.
                if status < 400:
                    return GatewayResult(error=f"invalid JSON from {method} {path}", status=status)
        if status >= 400:
            message = None
            if isinstance(body, Mapping):
                message = body.get("error") or body.get("detail")
            return GatewayResult(error=str(message or f"HTTP {status}"), status=status)
        return GatewayResult(value=body, status=status)

    def _to_entities(self, kind: EntityKind, result: GatewayResult[Any]) -> GatewayResult[list[Entity]]:
        if not result.ok:
            return GatewayResult(error=result.error, status=result.status)
        if not isinstance(result.value, list):
            return GatewayResult(error=f"expected a list of {kind.value} records", status=result.status)
        try:
            entities = [parse_entity(kind, item) for item in result.value]
        except EntityValidationError as err:
            return GatewayResult(error=str(err), status=result.status)
        return GatewayResult(value=entities, status=result.status)


def _kind_or_none(kind: EntityKind | str) -> EntityKind | None:
    try:
        return coerce_kind(kind)
    except EntityValidationError:
        return None
