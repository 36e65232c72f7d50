"""Typed entity records shared by the local store, outbox and remote gateway.

Payloads crossing the remote boundary are validated with :mod:`voluptuous`
before they become records.  The wire format uses camelCase keys; snake_case
spellings are accepted as a fallback because the relational backend returns
raw column names.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, TypeVar

import voluptuous as vol

from .const import DEFAULT_CURRENCY


class EntityKind(str, Enum):
    """Entity kinds mirrored between the device and the remote store."""

    TRIP = "trip"
    ITINERARY = "itinerary"
    EXPENSE = "expense"
    NOTE = "note"


class EntityValidationError(ValueError):
    """Raised when a payload does not match the shape of its entity kind."""

    def __init__(self, kind: str, message: str, *, path: list[Any] | None = None) -> None:
        super().__init__(f"invalid {kind} payload: {message}")
        self.kind = kind
        self.path = list(path or [])


def utcnow_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def generate_id() -> str:
    return uuid.uuid4().hex


_ID = vol.All(str, vol.Length(min=1))
_TEXT = vol.All(vol.Coerce(str))
_OPTIONAL_TEXT = vol.Any(None, vol.Coerce(str))
_TIMESTAMP = vol.All(vol.Coerce(str), vol.Length(min=1))


def _wire_name(attr: str) -> str:
    head, *rest = attr.split("_")
    return head + "".join(part.title() for part in rest)


class _Record:
    """Behaviour shared by every entity dataclass."""

    __slots__ = ()

    KIND: ClassVar[EntityKind]
    SCHEMA: ClassVar[vol.Schema]
    DEFAULTS: ClassVar[Mapping[str, Any]] = {}

    @property
    def parent_id(self) -> str | None:
        return getattr(self, "trip_id", None)

    def to_dict(self) -> dict[str, Any]:
        return {_wire_name(f.name): getattr(self, f.name) for f in fields(self)}  # type: ignore[arg-type]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]):
        if not isinstance(payload, Mapping):
            raise EntityValidationError(cls.KIND.value, f"expected an object, got {type(payload).__name__}")
        normalized: dict[str, Any] = {}
        for field in fields(cls):  # type: ignore[arg-type]
            wire = _wire_name(field.name)
            for key in (wire, field.name):
                value = payload.get(key)
                if value is not None:
                    normalized[wire] = value
                    break
        for wire, default in cls.DEFAULTS.items():
            if wire not in normalized:
                normalized[wire] = default() if callable(default) else default
        try:
            validated = cls.SCHEMA(normalized)
        except vol.Invalid as err:
            raise EntityValidationError(cls.KIND.value, str(err), path=err.path) from err
        return cls(**{field.name: validated.get(_wire_name(field.name)) for field in fields(cls)})  # type: ignore[arg-type]


_TIMESTAMP_DEFAULTS = {"createdAt": utcnow_iso, "updatedAt": utcnow_iso}


@dataclass(slots=True)
class Trip(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.TRIP
    SCHEMA: ClassVar[vol.Schema] = vol.Schema(
        {
            vol.Required("id"): _ID,
            vol.Required("name"): _TEXT,
            vol.Required("destination"): _TEXT,
            vol.Required("startDate"): _TEXT,
            vol.Required("endDate"): _TEXT,
            vol.Optional("coverPhoto"): _OPTIONAL_TEXT,
            vol.Required("createdAt"): _TIMESTAMP,
            vol.Required("updatedAt"): _TIMESTAMP,
            vol.Optional("userId"): _OPTIONAL_TEXT,
        }
    )
    DEFAULTS: ClassVar[Mapping[str, Any]] = _TIMESTAMP_DEFAULTS

    id: str
    name: str
    destination: str
    start_date: str
    end_date: str
    cover_photo: str | None = None
    created_at: str = ""
    updated_at: str = ""
    user_id: str | None = None


@dataclass(slots=True)
class ItineraryItem(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.ITINERARY
    SCHEMA: ClassVar[vol.Schema] = vol.Schema(
        {
            vol.Required("id"): _ID,
            vol.Required("tripId"): _ID,
            vol.Required("date"): _TEXT,
            vol.Optional("time"): _OPTIONAL_TEXT,
            vol.Required("title"): _TEXT,
            vol.Optional("location"): _OPTIONAL_TEXT,
            vol.Optional("notes"): _OPTIONAL_TEXT,
            vol.Required("order"): vol.All(vol.Coerce(int), vol.Range(min=0)),
            vol.Required("createdAt"): _TIMESTAMP,
            vol.Required("updatedAt"): _TIMESTAMP,
        }
    )
    DEFAULTS: ClassVar[Mapping[str, Any]] = {**_TIMESTAMP_DEFAULTS, "order": 0}

    id: str
    trip_id: str
    date: str
    time: str | None = None
    title: str = ""
    location: str | None = None
    notes: str | None = None
    order: int = 0
    created_at: str = ""
    updated_at: str = ""


@dataclass(slots=True)
class Expense(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.EXPENSE
    SCHEMA: ClassVar[vol.Schema] = vol.Schema(
        {
            vol.Required("id"): _ID,
            vol.Required("tripId"): _ID,
            vol.Required("category"): _TEXT,
            vol.Required("amount"): vol.Coerce(float),
            vol.Required("currency"): vol.All(str, vol.Length(min=1)),
            vol.Optional("note"): _OPTIONAL_TEXT,
            vol.Required("createdAt"): _TIMESTAMP,
            vol.Required("updatedAt"): _TIMESTAMP,
        }
    )
    DEFAULTS: ClassVar[Mapping[str, Any]] = {**_TIMESTAMP_DEFAULTS, "currency": DEFAULT_CURRENCY}

    id: str
    trip_id: str
    category: str
    amount: float
    currency: str = DEFAULT_CURRENCY
    note: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(slots=True)
class Note(_Record):
    KIND: ClassVar[EntityKind] = EntityKind.NOTE
    SCHEMA: ClassVar[vol.Schema] = vol.Schema(
        {
            vol.Required("id"): _ID,
            vol.Required("tripId"): _ID,
            vol.Optional("date"): _OPTIONAL_TEXT,
            vol.Required("content"): _TEXT,
            vol.Required("createdAt"): _TIMESTAMP,
            vol.Required("updatedAt"): _TIMESTAMP,
        }
    )
    DEFAULTS: ClassVar[Mapping[str, Any]] = _TIMESTAMP_DEFAULTS

    id: str
    trip_id: str
    date: str | None = None
    content: str = ""
    created_at: str = ""
    updated_at: str = ""


Entity = Trip | ItineraryItem | Expense | Note
EntityT = TypeVar("EntityT", Trip, ItineraryItem, Expense, Note)

ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    EntityKind.TRIP: Trip,
    EntityKind.ITINERARY: ItineraryItem,
    EntityKind.EXPENSE: Expense,
    EntityKind.NOTE: Note,
}

# Child kinds removed together with their trip
CHILD_KINDS: tuple[EntityKind, ...] = (EntityKind.ITINERARY, EntityKind.EXPENSE, EntityKind.NOTE)


def coerce_kind(kind: EntityKind | str) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError as err:
        raise EntityValidationError(str(kind), "unknown entity kind") from err


def parse_entity(kind: EntityKind | str, payload: Mapping[str, Any]) -> Entity:
    """Validate ``payload`` and return the typed record for ``kind``."""

    entity_kind = coerce_kind(kind)
    return ENTITY_TYPES[entity_kind].from_payload(payload)


def apply_changes(entity: EntityT, changes: Mapping[str, Any]) -> EntityT:
    """Return a copy of ``entity`` with ``changes`` applied.

    Unknown attribute names raise :class:`TypeError`.
    """

    if "id" in changes and changes["id"] != entity.id:
        raise TypeError("entity id cannot be changed")
    return replace(entity, **changes)


def sort_entities(kind: EntityKind, entities: list[Entity]) -> list[Entity]:
    """Order ``entities`` the way listings of ``kind`` are presented."""

    if kind is EntityKind.ITINERARY:
        return sorted(entities, key=lambda item: (item.trip_id, item.order))  # type: ignore[union-attr]
    if kind is EntityKind.EXPENSE:
        return sorted(entities, key=lambda item: _timestamp_key(item.created_at), reverse=True)
    return sorted(entities, key=lambda item: _timestamp_key(item.updated_at), reverse=True)


def _timestamp_key(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()
