from __future__ import annotations

from collections import defaultdict
from typing import Iterable

import structlog

from sentinel_shield.config import JournalConfig
from sentinel_shield.data.adapters import event_from_journal
from sentinel_shield.errors import PersistenceError
from sentinel_shield.events import ActionTaken, ThreatEvent, ThreatLevel
from sentinel_shield.persistence.store import JournalStore, MemoryStore


logger = structlog.get_logger()


_ACTION_RANK = {
    ActionTaken.NONE: 0,
    ActionTaken.ALERT: 1,
    ActionTaken.PAUSE_TRIGGERED: 2,
}


def merge_events(*sources: Iterable[ThreatEvent], limit: int | None = None) -> list[ThreatEvent]:
    """Union sources into one newest-first list unique by id.

    The first occurrence of an id keeps its place; a later occurrence can
    only raise its ``action_taken``. Ties on timestamp keep first-seen order.
    """
    by_id: dict[str, ThreatEvent] = {}
    for source in sources:
        for event in source:
            seen = by_id.get(event.id)
            if seen is None:
                by_id[event.id] = event
            elif _ACTION_RANK[event.action_taken] > _ACTION_RANK[seen.action_taken]:
                by_id[event.id] = seen.with_action(event.action_taken)

    merged = sorted(by_id.values(), key=lambda e: e.timestamp, reverse=True)
    if limit is not None:
        del merged[limit:]
    return merged


class EventJournal:
    """Deduplicated, capacity-bounded event history.

    The live view holds at most ``max_live_events``; the persisted history is
    capped independently at ``max_persisted_events``. Storage failures are
    logged and never propagate; in-memory state stays authoritative.
    """

    def __init__(self, store: JournalStore | None = None, config: JournalConfig | None = None):
        self.store = store or MemoryStore()
        self.config = config or JournalConfig()
        self._live: list[ThreatEvent] = []
        self._persisted: dict[str, list[ThreatEvent]] = defaultdict(list)
        self._loaded = False
        self._stats = {"added": 0, "duplicates": 0, "persist_failures": 0}

    def _key(self, contract_address: str | None = None) -> str:
        if self.config.per_contract and contract_address:
            return f"{self.config.storage_key}:{contract_address.lower()}"
        return self.config.storage_key

    def load(self) -> int:
        """Load persisted history once; later calls are no-ops."""
        if self._loaded:
            return 0
        self._loaded = True

        try:
            self.store.initialize()
            keys = self.store.keys(self.config.storage_key)
            loaded = 0
            for key in keys:
                entries = (event_from_journal(entry) for entry in self.store.load(key))
                self._persisted[key] = merge_events(
                    (e for e in entries if e is not None),
                    limit=self.config.max_persisted_events,
                )
                loaded += len(self._persisted[key])
        except PersistenceError as e:
            logger.warning("journal_load_failed", error=str(e))
            return 0

        logger.info("journal_loaded", events=loaded, keys=len(keys))
        return loaded

    def merge(self, events: Iterable[ThreatEvent]) -> list[ThreatEvent]:
        """Merge external events into the live view and return the visible list."""
        for event in events:
            self.add(event)
        return self.events

    def add(self, event: ThreatEvent) -> bool:
        """Add one event. Returns False if its id was already known."""
        known = self.get(event.id)
        if known is not None:
            self._stats["duplicates"] += 1
            if _ACTION_RANK[event.action_taken] > _ACTION_RANK[known.action_taken]:
                self.set_action(event.id, event.action_taken)
            return False

        self._stats["added"] += 1
        self._live = merge_events([event], self._live, limit=self.config.max_live_events)

        key = self._key(event.contract_address)
        self._persisted[key] = merge_events(
            [event], self._persisted[key], limit=self.config.max_persisted_events
        )
        self._persist(key)
        return True

    def set_action(self, event_id: str, action: ActionTaken) -> ThreatEvent | None:
        self._live = [self._with_action(e, event_id, action) for e in self._live]
        for key, events in self._persisted.items():
            if any(e.id == event_id for e in events):
                self._persisted[key] = [self._with_action(e, event_id, action) for e in events]
                self._persist(key)
        return self.get(event_id)

    @staticmethod
    def _with_action(event: ThreatEvent, event_id: str, action: ActionTaken) -> ThreatEvent:
        return event.with_action(action) if event.id == event_id else event

    def get(self, event_id: str) -> ThreatEvent | None:
        for event in self._live:
            if event.id == event_id:
                return event
        for events in self._persisted.values():
            for event in events:
                if event.id == event_id:
                    return event
        return None

    def clear(self, contract_address: str | None = None) -> None:
        if contract_address is None:
            self._live = []
            keys = list(self._persisted)
            self._persisted.clear()
        else:
            target = contract_address.lower()
            self._live = [e for e in self._live if e.contract_address.lower() != target]
            keys = []
            for key, events in self._persisted.items():
                kept = [e for e in events if e.contract_address.lower() != target]
                if len(kept) != len(events):
                    self._persisted[key] = kept
                    keys.append(key)

        for key in keys:
            try:
                if self._persisted.get(key):
                    self.store.save(key, [e.to_dict() for e in self._persisted[key]])
                else:
                    self.store.delete(key)
            except PersistenceError as e:
                self._stats["persist_failures"] += 1
                logger.warning("journal_clear_failed", key=key, error=str(e))
        logger.info("journal_cleared", contract=contract_address)

    def _persist(self, key: str) -> None:
        try:
            self.store.save(key, [e.to_dict() for e in self._persisted[key]])
        except PersistenceError as e:
            self._stats["persist_failures"] += 1
            logger.warning("journal_persist_failed", key=key, error=str(e))

    @property
    def events(self) -> list[ThreatEvent]:
        """Live entries merged with persisted history, newest first."""
        return merge_events(self._live, *self._persisted.values(), limit=self.config.max_live_events)

    def view(
        self,
        limit: int | None = None,
        level: ThreatLevel | None = None,
        contract_address: str | None = None,
    ) -> list[ThreatEvent]:
        events = merge_events(self._live, *self._persisted.values())
        if level is not None:
            events = [e for e in events if e.level is level]
        if contract_address:
            target = contract_address.lower()
            events = [e for e in events if e.contract_address.lower() == target]
        return events[: limit if limit is not None else self.config.max_live_events]

    def __len__(self) -> int:
        return len(self.events)

    def get_stats(self) -> dict[str, int]:
        return {**self._stats, "live": len(self._live)}
