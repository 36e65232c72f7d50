"""Drive outbox drains and pull-refreshes against the remote store."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from aiohttp import ClientSession

from ..const import (
    CONF_API_URL,
    CONF_REQUEST_TIMEOUT,
    CONF_SYNC_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    ENV_API_URL,
    ENV_REQUEST_TIMEOUT,
    ENV_SYNC_INTERVAL,
    MIN_SYNC_INTERVAL,
)
from ..models import CHILD_KINDS, EntityKind
from .connectivity import ConnectivityMonitor
from .gateway import RemoteGateway
from .local_store import LocalStore
from .outbox import Outbox, OutboxEntry, SyncAction

_LOGGER = logging.getLogger(__name__)


class SyncManagerError(RuntimeError):
    """Raised when the sync manager is used in an unsupported way."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


@dataclass(slots=True)
class SyncConfig:
    """Remote endpoint settings.  Without an API URL the engine stays offline-only."""

    api_url: str = ""
    interval: int = DEFAULT_SYNC_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> SyncConfig:
        api_url = str(options.get(CONF_API_URL, "") or "").strip()
        interval_raw = options.get(CONF_SYNC_INTERVAL, DEFAULT_SYNC_INTERVAL)
        try:
            interval = max(MIN_SYNC_INTERVAL, int(interval_raw))
        except (TypeError, ValueError):
            interval = DEFAULT_SYNC_INTERVAL
        timeout_raw = options.get(CONF_REQUEST_TIMEOUT, DEFAULT_REQUEST_TIMEOUT)
        try:
            timeout = float(timeout_raw)
        except (TypeError, ValueError):
            timeout = DEFAULT_REQUEST_TIMEOUT
        if timeout <= 0:
            timeout = DEFAULT_REQUEST_TIMEOUT
        return cls(api_url=api_url, interval=interval, request_timeout=timeout)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SyncConfig:
        env = os.environ if environ is None else environ
        options: dict[str, Any] = {CONF_API_URL: env.get(ENV_API_URL, "")}
        if env.get(ENV_SYNC_INTERVAL):
            options[CONF_SYNC_INTERVAL] = env[ENV_SYNC_INTERVAL]
        if env.get(ENV_REQUEST_TIMEOUT):
            options[CONF_REQUEST_TIMEOUT] = env[ENV_REQUEST_TIMEOUT]
        return cls.from_options(options)

    @property
    def configured(self) -> bool:
        return bool(self.api_url)


@dataclass(slots=True)
class SyncResult:
    """Counters for a single ``sync_all`` call."""

    pushed: int = 0
    failed: int = 0
    pulled: int = 0
    skipped: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pushed": self.pushed,
            "failed": self.failed,
            "pulled": self.pulled,
            "skipped": self.skipped,
            "error": self.error,
        }


class SyncManager:
    """Single sync engine instance shared by the domain stores."""

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        config: SyncConfig | None = None,
        *,
        gateway: RemoteGateway | None = None,
        connectivity: ConnectivityMonitor | None = None,
        session: ClientSession | None = None,
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.config = config or SyncConfig()
        self.connectivity = connectivity or ConnectivityMonitor()
        self._gateway = gateway
        self._session = session
        self._owns_session = False
        self._state = SyncState.IDLE
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None
        self._offline_mode_logged = False
        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None
        self.last_result: SyncResult | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def syncing(self) -> bool:
        return self._state is SyncState.SYNCING

    # ------------------------------------------------------------------
    def queue(
        self,
        type: EntityKind | str,
        action: SyncAction | str,
        data: Mapping[str, Any],
    ) -> OutboxEntry:
        """Record a local mutation in the outbox, regardless of connectivity."""

        return self.outbox.add(type, action, data)

    def request_sync(self) -> asyncio.Task | None:
        """Schedule an opportunistic sync after a local mutation.

        The cycle runs as a background task so the caller returns at once.
        Nothing is scheduled while offline or unconfigured.
        """

        if not (self.config.configured and self.connectivity.online):
            return None
        task = asyncio.create_task(self.sync_all())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for syncs scheduled by :meth:`request_sync`."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def sync_now(self) -> SyncResult:
        """Run a cycle on explicit request, raising when it cannot run at all."""

        if not self.config.configured:
            raise SyncManagerError("remote sync is not configured", reason="not_configured")
        if not self.connectivity.online:
            raise SyncManagerError("device is offline", reason="offline")
        return await self.sync_all()

    async def sync_all(self) -> SyncResult:
        """Drain the outbox, then pull authoritative state.

        Only one cycle runs at a time: a call made while a cycle is in flight
        returns immediately without touching the remote store.
        """

        if not self.config.configured:
            if not self._offline_mode_logged:
                _LOGGER.debug("API URL not configured; running in offline-only mode")
                self._offline_mode_logged = True
            return SyncResult(skipped="not_configured")
        if not self.connectivity.online:
            return SyncResult(skipped="offline")
        if self._state is SyncState.SYNCING:
            return SyncResult(skipped="in_progress")

        self._state = SyncState.SYNCING
        result = SyncResult()
        try:
            gateway = self._ensure_gateway()
            await self._drain(gateway, result)
            await self._pull(gateway, result)
            self.last_sync_at = datetime.now(tz=UTC)
            self.last_error = None
        except Exception as err:
            _LOGGER.exception("Sync error: %s", err)
            result.error = str(err)
            self.last_error = str(err)
        finally:
            self._state = SyncState.IDLE
        self.last_result = result
        return result

    # ------------------------------------------------------------------
    async def _drain(self, gateway: RemoteGateway, result: SyncResult) -> None:
        # Entities with a failed entry this cycle keep their later entries queued.
        blocked: set[tuple[EntityKind, str]] = set()
        for entry in self.outbox.get_all():
            key = (entry.type, entry.entity_id)
            if key in blocked:
                result.failed += 1
                _LOGGER.debug(
                    "Holding %s %s %s behind an earlier failure",
                    entry.action.value,
                    entry.type.value,
                    entry.entity_id,
                )
                continue
            try:
                error = await self._apply_entry(gateway, entry)
            except sqlite3.Error as err:
                error = f"local store error: {err}"
            if error is None:
                self.outbox.remove(entry.id)
                result.pushed += 1
                continue
            result.failed += 1
            _LOGGER.warning(
                "Failed to sync %s %s %s (entry %s): %s",
                entry.action.value,
                entry.type.value,
                entry.entity_id,
                entry.id,
                error,
            )
            self.outbox.mark_attempt(entry.id, error)
            blocked.add(key)

    async def _apply_entry(self, gateway: RemoteGateway, entry: OutboxEntry) -> str | None:
        table = self.store.table(entry.type)
        if entry.action is SyncAction.DELETE:
            deleted = await gateway.delete(entry.type, entry.entity_id)
            if not deleted.ok:
                return deleted.error
            table.delete(entry.entity_id)
            if entry.type is EntityKind.TRIP:
                # Mirror the remote cascade for children acknowledged earlier in the drain.
                for kind in CHILD_KINDS:
                    self.store.table(kind).delete_by_parent(entry.entity_id)
            return None
        stored = await gateway.upsert(entry.type, entry.data)
        if not stored.ok or stored.value is None:
            return stored.error or "empty upsert response"
        table.set(stored.value)
        return None

    async def _pull(self, gateway: RemoteGateway, result: SyncResult) -> None:
        trips = await gateway.fetch_all(EntityKind.TRIP)
        if not trips.ok:
            _LOGGER.warning("Error syncing trips: %s", trips.error)
        else:
            for trip in trips.value or []:
                self.store.trips.set(trip)
                result.pulled += 1

        for trip in self.store.trips.get_all():
            for kind in CHILD_KINDS:
                children = await gateway.fetch_by_parent(kind, trip.id)
                if not children.ok:
                    _LOGGER.warning("Error syncing %s for trip %s: %s", kind.value, trip.id, children.error)
                    continue
                table = self.store.table(kind)
                for child in children.value or []:
                    table.set(child)
                    result.pulled += 1

    def _ensure_gateway(self) -> RemoteGateway:
        if self._gateway is None:
            if self._session is None:
                self._session = ClientSession()
                self._owns_session = True
            self._gateway = RemoteGateway(
                self._session,
                self.config.api_url,
                timeout=self.config.request_timeout,
            )
        return self._gateway

    # ------------------------------------------------------------------
    async def async_start(self) -> None:
        """Sync on every offline-to-online transition and on a fixed interval."""

        if self._task and not self._task.done():
            return
        if self._unsubscribe is None:
            self._unsubscribe = self.connectivity.on_online(self.sync_all)
        if not self.config.configured:
            _LOGGER.info("Sync disabled: no API URL configured")
            return
        self._task = asyncio.create_task(self.run_forever())

    async def async_stop(self) -> None:
        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.wait_idle()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._gateway = None
            self._owns_session = False

    async def run_forever(self) -> None:
        while True:
            try:
                if self.connectivity.online:
                    await self.sync_all()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive logging
                _LOGGER.exception("Unexpected sync error: %s", err)
            await asyncio.sleep(self.config.interval)

    def status(self) -> dict[str, Any]:
        """Runtime state for offline banners and syncing indicators."""

        return {
            "state": self._state.value,
            "syncing": self.syncing,
            "online": self.connectivity.online,
            "configured": self.config.configured,
            "running": self._task is not None and not self._task.done(),
            "outbox_size": self.outbox.size(),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error": self.last_error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
