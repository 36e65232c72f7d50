"""Embedded per-device persistence for entity snapshots."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..const import TABLE_NAMES
from ..models import ENTITY_TYPES, Entity, EntityKind, coerce_kind, sort_entities


class LocalStore:
    """SQLite database holding one snapshot table per entity kind.

    Values are whole-record JSON snapshots keyed by entity id; writing an id
    replaces the previous snapshot.  The outbox lives in the same file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._is_memory = str(path) == ":memory:"
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._tables = {kind: EntityTable(self, kind) for kind in EntityKind}
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            if self._shared_conn is None:
                self._shared_conn = sqlite3.connect(":memory:")
                self._shared_conn.row_factory = sqlite3.Row
            yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        statements = []
        for table in TABLE_NAMES.values():
            statements.append(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    trip_id TEXT,
                    payload TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_{table}_trip_id ON {table}(trip_id);
                """
            )
        with self.connection() as conn:
            conn.executescript("\n".join(statements))
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    def table(self, kind: EntityKind | str) -> EntityTable:
        return self._tables[coerce_kind(kind)]

    @property
    def trips(self) -> EntityTable:
        return self._tables[EntityKind.TRIP]

    @property
    def itinerary(self) -> EntityTable:
        return self._tables[EntityKind.ITINERARY]

    @property
    def expenses(self) -> EntityTable:
        return self._tables[EntityKind.EXPENSE]

    @property
    def notes(self) -> EntityTable:
        return self._tables[EntityKind.NOTE]


class EntityTable:
    """Key-value view over the snapshots of a single entity kind."""

    def __init__(self, store: LocalStore, kind: EntityKind) -> None:
        self._store = store
        self.kind = kind
        self.name = TABLE_NAMES[kind.value]
        self._record_type = ENTITY_TYPES[kind]

    def get_all(self) -> list[Entity]:
        """Every snapshot of this kind; child rows whose trip is gone are left out."""

        query = f"SELECT payload FROM {self.name}"
        if self.kind is not EntityKind.TRIP:
            trips = TABLE_NAMES[EntityKind.TRIP.value]
            query += f" WHERE trip_id IN (SELECT id FROM {trips})"
        with self._store.connection() as conn:
            rows = conn.execute(query).fetchall()
        return sort_entities(self.kind, [self._load(row["payload"]) for row in rows])

    def get_by_parent(self, parent_id: str) -> list[Entity]:
        with self._store.connection() as conn:
            rows = conn.execute(
                f"SELECT payload FROM {self.name} WHERE trip_id = ?",
                (parent_id,),
            ).fetchall()
        return sort_entities(self.kind, [self._load(row["payload"]) for row in rows])

    def get(self, entity_id: str) -> Entity | None:
        with self._store.connection() as conn:
            row = conn.execute(
                f"SELECT payload FROM {self.name} WHERE id = ?",
                (entity_id,),
            ).fetchone()
        if not row:
            return None
        return self._load(row["payload"])

    def set(self, entity: Entity) -> None:
        if not isinstance(entity, self._record_type):
            raise TypeError(f"{self.name} table cannot store {type(entity).__name__}")
        with self._store.connection() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {self.name}(id, trip_id, payload) VALUES(?, ?, ?)",
                (entity.id, entity.parent_id, json.dumps(entity.to_dict(), separators=(",", ":"))),
            )
            conn.commit()

    def delete(self, entity_id: str) -> None:
        with self._store.connection() as conn:
            conn.execute(f"DELETE FROM {self.name} WHERE id = ?", (entity_id,))
            conn.commit()

    def delete_by_parent(self, parent_id: str) -> int:
        """Delete every snapshot belonging to ``parent_id``.

        Matches are listed first and removed one by one, so an interrupted
        cascade can leave orphans behind.  :meth:`get_all` skips them; only a
        lookup by id or by the deleted parent still finds them.
        """

        doomed = self.get_by_parent(parent_id)
        for entity in doomed:
            self.delete(entity.id)
        return len(doomed)

    def count(self) -> int:
        with self._store.connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM {self.name}").fetchone()
        return int(row["total"]) if row else 0

    def _load(self, raw: str) -> Entity:
        return self._record_type.from_payload(json.loads(raw))
