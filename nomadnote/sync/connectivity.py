"""Online/offline signal for the sync manager."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .gateway import RemoteGateway

_LOGGER = logging.getLogger(__name__)

OnlineListener = Callable[[], Awaitable[None] | None]


class ConnectivityMonitor:
    """Track whether the device believes it is online.

    Listeners registered with :meth:`on_online` run only on an
    offline-to-online transition.
    """

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._listeners: list[OnlineListener] = []
        self._pending: set[asyncio.Task] = set()
        self.last_change_at: datetime | None = None

    @property
    def online(self) -> bool:
        return self._online

    def on_online(self, listener: OnlineListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if was_online == online:
            return
        self.last_change_at = datetime.now(tz=UTC)
        _LOGGER.info("Connectivity changed: %s", "online" if online else "offline")
        if online:
            for listener in list(self._listeners):
                self._notify(listener)

    async def probe(self, gateway: RemoteGateway) -> bool:
        """Ask the remote health endpoint and record the outcome."""

        result = await gateway.health()
        if not result.ok:
            _LOGGER.debug("Health probe failed: %s", result.error)
        self.set_online(result.ok)
        return result.ok

    async def wait_idle(self) -> None:
        """Wait for listener coroutines started by :meth:`set_online`."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _notify(self, listener: OnlineListener) -> None:
        try:
            result = listener()
        except Exception as err:  # pragma: no cover - defensive logging
            _LOGGER.warning("Online listener raised error: %s", err, exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(self._run_listener(result))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _run_listener(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as err:
            _LOGGER.warning("Online listener raised error: %s", err, exc_info=True)
