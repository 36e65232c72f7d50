import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from cloud.api.main import RemoteState, RemoteStoreError
from nomadnote.app import NomadNote
from nomadnote.models import Entity, EntityKind, EntityValidationError, coerce_kind, parse_entity
from nomadnote.sync.connectivity import ConnectivityMonitor
from nomadnote.sync.gateway import GatewayResult
from nomadnote.sync.local_store import LocalStore
from nomadnote.sync.manager import SyncConfig, SyncManager
from nomadnote.sync.outbox import Outbox

API_URL = "https://api.nomadnote.example"


class InMemoryGateway:
    """Gateway stand-in that talks to :class:`RemoteState` without HTTP.

    ``fail`` holds ``(method, kind)`` pairs (``kind`` may be ``None`` for any
    kind) that should return an error instead of reaching the remote state;
    ``fail_next`` fails only the next N calls of a method.
    """

    def __init__(self, remote: RemoteState) -> None:
        self.remote = remote
        self.calls: list[tuple[str, str, str | None]] = []
        self.fail: set[tuple[str, EntityKind | None]] = set()
        self.fail_next: dict[str, int] = {}
        self.block: asyncio.Event | None = None

    def _failing(self, method: str, kind: EntityKind) -> bool:
        if self.fail_next.get(method):
            self.fail_next[method] -= 1
            return True
        return (method, kind) in self.fail or (method, None) in self.fail

    async def _enter(self, method: str, kind: EntityKind, ref: str | None) -> None:
        self.calls.append((method, kind.value, ref))
        if self.block is not None:
            await self.block.wait()

    async def fetch_all(self, kind) -> GatewayResult[list[Entity]]:
        kind = coerce_kind(kind)
        await self._enter("fetch_all", kind, None)
        if self._failing("fetch_all", kind):
            return GatewayResult(error="service unavailable", status=503)
        return GatewayResult(value=[parse_entity(kind, row) for row in self.remote.list(kind)], status=200)

    async def fetch_by_parent(self, kind, trip_id: str) -> GatewayResult[list[Entity]]:
        kind = coerce_kind(kind)
        await self._enter("fetch_by_parent", kind, trip_id)
        if self._failing("fetch_by_parent", kind):
            return GatewayResult(error="service unavailable", status=503)
        rows = self.remote.list(kind, trip_id)
        return GatewayResult(value=[parse_entity(kind, row) for row in rows], status=200)

    async def upsert(self, kind, entity: Entity | Mapping[str, Any]) -> GatewayResult[Entity]:
        kind = coerce_kind(kind)
        payload = entity if isinstance(entity, Mapping) else entity.to_dict()
        await self._enter("upsert", kind, str(payload.get("id")))
        if self._failing("upsert", kind):
            return GatewayResult(error="service unavailable", status=503)
        try:
            stored = self.remote.upsert(kind, payload)
        except (EntityValidationError, RemoteStoreError) as err:
            return GatewayResult(error=str(err), status=400)
        return GatewayResult(value=parse_entity(kind, stored), status=200)

    async def delete(self, kind, entity_id: str) -> GatewayResult[bool]:
        kind = coerce_kind(kind)
        await self._enter("delete", kind, entity_id)
        if self._failing("delete", kind):
            return GatewayResult(error="service unavailable", status=503)
        self.remote.delete(kind, entity_id)
        return GatewayResult(value=True, status=200)

    async def health(self) -> GatewayResult[dict[str, Any]]:
        if ("health", None) in self.fail:
            return GatewayResult(error="unreachable")
        return GatewayResult(value={"status": "ok"}, status=200)


@pytest.fixture
def remote() -> RemoteState:
    return RemoteState()


@pytest.fixture
def gateway(remote: RemoteState) -> InMemoryGateway:
    return InMemoryGateway(remote)


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def local_store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "nomadnote.db")


@pytest.fixture
def outbox(local_store: LocalStore) -> Outbox:
    return Outbox(local_store)


@pytest.fixture
def manager(local_store, outbox, gateway, connectivity) -> SyncManager:
    return SyncManager(
        local_store,
        outbox,
        SyncConfig(api_url=API_URL),
        gateway=gateway,
        connectivity=connectivity,
    )


@pytest.fixture
def app(tmp_path: Path, gateway, connectivity) -> NomadNote:
    return NomadNote.open(
        tmp_path / "app.db",
        SyncConfig(api_url=API_URL),
        gateway=gateway,
        connectivity=connectivity,
    )
