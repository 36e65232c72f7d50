"""Local-first storage and remote synchronization for NomadNote trips."""

from .app import NomadNote
from .models import (
    Entity,
    EntityKind,
    EntityValidationError,
    Expense,
    ItineraryItem,
    Note,
    Trip,
    parse_entity,
)
from .stores import ExpenseStore, ItineraryStore, NoteStore, TripStore

__all__ = [
    "Entity",
    "EntityKind",
    "EntityValidationError",
    "Expense",
    "ExpenseStore",
    "ItineraryItem",
    "ItineraryStore",
    "NomadNote",
    "Note",
    "NoteStore",
    "Trip",
    "TripStore",
    "parse_entity",
]
