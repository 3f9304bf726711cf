"""Persistence layer for the event journal."""

from sentinel_shield.persistence.journal import EventJournal, merge_events
from sentinel_shield.persistence.store import JournalStore, MemoryStore, SQLiteStore, create_store

__all__ = [
    "EventJournal",
    "merge_events",
    "JournalStore",
    "MemoryStore",
    "SQLiteStore",
    "create_store",
]
