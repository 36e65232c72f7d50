"""Durable, timestamp-ordered log of mutations awaiting remote confirmation."""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..models import EntityKind, coerce_kind, generate_id
from .local_store import LocalStore


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(slots=True)
class OutboxEntry:
    """A queued mutation.  ``data`` is a full snapshot, or ``{"id": ...}`` for deletes."""

    id: str
    type: EntityKind
    action: SyncAction
    data: dict[str, Any]
    timestamp: int
    attempts: int = 0
    last_error: str | None = None

    @property
    def entity_id(self) -> str:
        return str(self.data.get("id", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "action": self.action.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class Outbox:
    """Outbox table stored next to the entity snapshots of a :class:`LocalStore`."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._ensure_schema()
        self._last_timestamp = self._max_timestamp()

    def _ensure_schema(self) -> None:
        with self._store.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS outbox (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    action TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    ts INTEGER NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    last_error TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_outbox_ts ON outbox(ts);
                """
            )
            conn.commit()

    def _max_timestamp(self) -> int:
        with self._store.connection() as conn:
            row = conn.execute("SELECT MAX(ts) AS ts FROM outbox").fetchone()
        if not row or row["ts"] is None:
            return 0
        return int(row["ts"])

    def _next_timestamp(self) -> int:
        # Strictly increasing, even for several enqueues within one millisecond.
        now_ms = time.time_ns() // 1_000_000
        self._last_timestamp = max(now_ms, self._last_timestamp + 1)
        return self._last_timestamp

    # ------------------------------------------------------------------
    def add(
        self,
        type: EntityKind | str,
        action: SyncAction | str,
        data: Mapping[str, Any],
    ) -> OutboxEntry:
        kind = coerce_kind(type)
        sync_action = SyncAction(action)
        if not data.get("id"):
            raise ValueError("outbox entries require an entity id")
        snapshot = {"id": data["id"]} if sync_action is SyncAction.DELETE else dict(data)
        entry = OutboxEntry(
            id=generate_id(),
            type=kind,
            action=sync_action,
            data=snapshot,
            timestamp=self._next_timestamp(),
        )
        with self._store.connection() as conn:
            conn.execute(
                "INSERT INTO outbox(id, type, action, payload, ts) VALUES(?, ?, ?, ?, ?)",
                (
                    entry.id,
                    kind.value,
                    sync_action.value,
                    json.dumps(snapshot, separators=(",", ":")),
                    entry.timestamp,
                ),
            )
            conn.commit()
        return entry

    def get_all(self) -> list[OutboxEntry]:
        with self._store.connection() as conn:
            rows = conn.execute(
                "SELECT id, type, action, payload, ts, attempts, last_error FROM outbox ORDER BY ts ASC, rowid ASC"
            ).fetchall()
        return [
            OutboxEntry(
                id=row["id"],
                type=EntityKind(row["type"]),
                action=SyncAction(row["action"]),
                data=json.loads(row["payload"]),
                timestamp=int(row["ts"]),
                attempts=int(row["attempts"] or 0),
                last_error=row["last_error"],
            )
            for row in rows
        ]

    def remove(self, entry_id: str) -> None:
        with self._store.connection() as conn:
            conn.execute("DELETE FROM outbox WHERE id = ?", (entry_id,))
            conn.commit()

    def clear(self) -> None:
        with self._store.connection() as conn:
            conn.execute("DELETE FROM outbox")
            conn.commit()

    def mark_attempt(self, entry_id: str, error: str | None) -> None:
        with self._store.connection() as conn:
            conn.execute(
                "UPDATE outbox SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, entry_id),
            )
            conn.commit()

    def size(self) -> int:
        with self._store.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM outbox").fetchone()
        if not row:
            return 0
        return int(row["total"] or 0)
