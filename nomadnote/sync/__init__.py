"""Offline-first sync engine: local store, outbox, remote gateway and manager."""

from .connectivity import ConnectivityMonitor
from .gateway import GatewayResult, RemoteGateway
from .local_store import EntityTable, LocalStore
from .manager import SyncConfig, SyncManager, SyncManagerError, SyncResult, SyncState
from .outbox import Outbox, OutboxEntry, SyncAction

__all__ = [
    "ConnectivityMonitor",
    "EntityTable",
    "GatewayResult",
    "LocalStore",
    "Outbox",
    "OutboxEntry",
    "RemoteGateway",
    "SyncAction",
    "SyncConfig",
    "SyncManager",
    "SyncManagerError",
    "SyncResult",
    "SyncState",
]
