"""
Key-value storage for the event journal.

Each key holds one JSON array of serialized ThreatEvents.
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import structlog

from sentinel_shield.errors import PersistenceError

logger = structlog.get_logger()


class JournalStore(ABC):
    """Abstract journal storage."""

    @abstractmethod
    def initialize(self) -> None:
        pass

    @abstractmethod
    def load(self, key: str) -> list[dict[str, Any]]:
        """Entries stored under key, empty if none."""

    @abstractmethod
    def save(self, key: str, entries: list[dict[str, Any]]) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        pass


class MemoryStore(JournalStore):
    """Process-local store used when persistence is disabled."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def initialize(self) -> None:
        pass

    def load(self, key: str) -> list[dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw else []

    def save(self, key: str, entries: list[dict[str, Any]]) -> None:
        self._data[key] = json.dumps(entries)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class SQLiteStore(JournalStore):
    """SQLite-backed store. Every failure surfaces as PersistenceError."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def initialize(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.db_path.parent}: {e}") from e

        with self._connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS journal_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
            """)
            conn.commit()
        logger.info("journal_store_initialized", path=str(self.db_path))

    def load(self, key: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM journal_entries WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return []
        try:
            entries = json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt journal entry '{key}': {e}") from e
        if not isinstance(entries, list):
            raise PersistenceError(f"Journal entry '{key}' is not a list")
        return entries

    def save(self, key: str, entries: list[dict[str, Any]]) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO journal_entries (key, value, updated_at) VALUES (?, ?, ?)",
                (key, json.dumps(entries), datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM journal_entries WHERE key = ?", (key,))
            conn.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT key FROM journal_entries WHERE key LIKE ? ORDER BY key",
                (prefix + "%",),
            ).fetchall()
        return [row["key"] for row in rows]


def create_store(db_path: str | None) -> JournalStore:
    if not db_path:
        return MemoryStore()
    return SQLiteStore(db_path)
