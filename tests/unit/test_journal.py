from __future__ import annotations

import pytest

from sentinel_shield.config import JournalConfig
from sentinel_shield.errors import PersistenceError
from sentinel_shield.events import ActionTaken, EventOrigin, ThreatEvent, ThreatLevel
from sentinel_shield.persistence.journal import EventJournal, merge_events
from sentinel_shield.persistence.store import MemoryStore, SQLiteStore

from conftest import CONTRACT, SENDER


OTHER = "0x" + "d" * 40


def make_event(
    event_id: str,
    timestamp: int,
    action: ActionTaken = ActionTaken.ALERT,
    contract: str = CONTRACT,
    level: ThreatLevel = ThreatLevel.HIGH,
) -> ThreatEvent:
    return ThreatEvent(
        id=event_id,
        timestamp=timestamp,
        level=level,
        contract_address=contract,
        transaction_hash="0x" + "e" * 64,
        origin_address=SENDER,
        details="test",
        confidence=0.8,
        action_taken=action,
    )


class BrokenStore(MemoryStore):
    """Store whose writes always fail."""

    def save(self, key, entries):
        raise PersistenceError("disk full")


class TestMergeEvents:
    def test_unique_by_id_and_newest_first(self):
        a = [make_event("1", 100), make_event("2", 300)]
        b = [make_event("2", 300), make_event("3", 200)]

        merged = merge_events(a, b)

        assert [e.id for e in merged] == ["2", "3", "1"]

    def test_merge_is_idempotent(self):
        events = [make_event(str(i), i * 10) for i in range(5)]
        once = merge_events(events)
        assert merge_events(once, events) == once

    def test_later_occurrence_can_only_raise_action(self):
        alerted = make_event("x", 100, ActionTaken.ALERT)
        paused = alerted.with_action(ActionTaken.PAUSE_TRIGGERED)

        assert merge_events([alerted], [paused])[0].action_taken is ActionTaken.PAUSE_TRIGGERED
        assert merge_events([paused], [alerted])[0].action_taken is ActionTaken.PAUSE_TRIGGERED

    def test_first_occurrence_keeps_origin(self):
        local = make_event("x", 100)
        remote = local.with_origin(EventOrigin.REMOTE).with_action(ActionTaken.PAUSE_TRIGGERED)

        merged = merge_events([local], [remote])[0]

        assert merged.origin is EventOrigin.CHAIN
        assert merged.action_taken is ActionTaken.PAUSE_TRIGGERED

    def test_limit_drops_oldest(self):
        events = [make_event(str(i), i) for i in range(10)]
        assert [e.id for e in merge_events(events, limit=3)] == ["9", "8", "7"]


class TestEventJournal:
    @pytest.fixture
    def journal(self):
        """Memory-backed journal with a small live capacity."""
        return EventJournal(MemoryStore(), JournalConfig(max_live_events=3, max_persisted_events=5))

    def test_add_rejects_duplicate_id(self, journal):
        assert journal.add(make_event("a", 1))
        assert not journal.add(make_event("a", 1))
        assert len(journal) == 1
        assert journal.get_stats()["duplicates"] == 1

    def test_duplicate_upgrades_action(self, journal):
        journal.add(make_event("a", 1, ActionTaken.ALERT))
        journal.add(make_event("a", 1, ActionTaken.PAUSE_TRIGGERED))
        assert journal.get("a").action_taken is ActionTaken.PAUSE_TRIGGERED

    def test_duplicate_never_downgrades_action(self, journal):
        journal.add(make_event("a", 1, ActionTaken.PAUSE_TRIGGERED))
        journal.add(make_event("a", 1, ActionTaken.NONE))
        assert journal.get("a").action_taken is ActionTaken.PAUSE_TRIGGERED

    def test_live_capacity_keeps_newest(self, journal):
        for i in range(6):
            journal.add(make_event(str(i), i))

        assert [e.id for e in journal.events] == ["5", "4", "3"]
        assert len(journal.view(limit=10)) == 5

    def test_set_action_replaces_everywhere(self, journal):
        journal.add(make_event("a", 1))

        updated = journal.set_action("a", ActionTaken.PAUSE_TRIGGERED)

        assert updated.action_taken is ActionTaken.PAUSE_TRIGGERED
        stored = journal.store.load(journal.config.storage_key)
        assert stored[0]["actionTaken"] == "PAUSE_TRIGGERED"

    def test_set_action_unknown_id(self, journal):
        assert journal.set_action("missing", ActionTaken.ALERT) is None

    def test_merge_external_events(self, journal):
        journal.add(make_event("a", 1))
        visible = journal.merge([make_event("a", 1), make_event("b", 2)])
        assert [e.id for e in visible] == ["b", "a"]

    def test_view_filters(self, journal):
        journal.add(make_event("a", 1, level=ThreatLevel.CRITICAL))
        journal.add(make_event("b", 2, contract=OTHER))

        assert [e.id for e in journal.view(level=ThreatLevel.CRITICAL)] == ["a"]
        assert [e.id for e in journal.view(contract_address=OTHER.upper().replace("0X", "0x"))] == ["b"]

    def test_clear_one_contract(self, journal):
        journal.add(make_event("a", 1))
        journal.add(make_event("b", 2, contract=OTHER))

        journal.clear(CONTRACT)

        assert [e.id for e in journal.events] == ["b"]

    def test_clear_all(self, journal):
        journal.add(make_event("a", 1))
        journal.clear()
        assert len(journal) == 0
        assert journal.store.keys() == []

    def test_store_failure_is_not_fatal(self):
        journal = EventJournal(BrokenStore())

        assert journal.add(make_event("a", 1))

        assert journal.get("a") is not None
        assert journal.get_stats()["persist_failures"] == 1

    def test_non_object_entries_are_skipped(self):
        store = MemoryStore()
        store.save("sentinel_event_logs", [7, make_event("a", 1).to_dict(), "junk"])

        journal = EventJournal(store)

        assert journal.load() == 1
        assert journal.get("a") is not None


class TestJournalPersistence:
    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "journal.db")

    def test_reload_from_sqlite(self, db_path):
        first = EventJournal(SQLiteStore(db_path))
        first.load()
        first.add(make_event("a", 1))
        first.add(make_event("b", 2, ActionTaken.PAUSE_TRIGGERED))

        second = EventJournal(SQLiteStore(db_path))
        assert second.load() == 2

        events = second.events
        assert [e.id for e in events] == ["b", "a"]
        assert events[0].action_taken is ActionTaken.PAUSE_TRIGGERED
        assert not second.add(make_event("a", 1))

    def test_load_runs_once(self, db_path):
        journal = EventJournal(SQLiteStore(db_path))
        journal.load()
        journal.add(make_event("a", 1))
        assert journal.load() == 0

    def test_per_contract_keys(self, db_path):
        config = JournalConfig(per_contract=True)
        journal = EventJournal(SQLiteStore(db_path), config)
        journal.load()
        journal.add(make_event("a", 1))
        journal.add(make_event("b", 2, contract=OTHER))

        keys = journal.store.keys(config.storage_key)

        assert keys == sorted([f"{config.storage_key}:{CONTRACT}", f"{config.storage_key}:{OTHER}"])
        reloaded = EventJournal(SQLiteStore(db_path), config)
        assert reloaded.load() == 2

    def test_corrupt_entries_are_skipped(self, db_path):
        store = SQLiteStore(db_path)
        store.initialize()
        store.save("sentinel_event_logs", [make_event("a", 1).to_dict(), {"id": "broken"}])

        journal = EventJournal(SQLiteStore(db_path))

        assert journal.load() == 1
        assert journal.get("a").origin is EventOrigin.JOURNAL
