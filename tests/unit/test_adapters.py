from __future__ import annotations

from hexbytes import HexBytes
from web3 import Web3

from sentinel_shield.data.adapters import (
    MessageType,
    ServerMessage,
    event_from_analysis,
    event_from_journal,
    event_from_message,
    event_from_pause_log,
    event_from_registration_log,
    event_from_remote_threat,
)
from sentinel_shield.events import ActionTaken, EventOrigin, EventType, ThreatLevel
from sentinel_shield.models.heuristics import AttackerRegistry, ObservedTransaction, TransactionAnalyzer, ContractContext

from conftest import ATTACKER, CONTRACT, SENDER


class TestServerMessage:
    def test_unknown_type_is_ignored(self):
        assert ServerMessage.parse({"type": "HEARTBEAT"}) is None

    def test_init_fields(self):
        message = ServerMessage.parse({"type": "INIT", "contracts": [CONTRACT], "lastBlock": "12"})
        assert message.type is MessageType.INIT
        assert message.contracts == [CONTRACT]
        assert message.last_block == 12
        assert event_from_message(message) is None


class TestRemoteThreat:
    def test_action_label_mapping(self):
        event = event_from_remote_threat({
            "id": "t1",
            "timestamp": 1700000000000,
            "level": "critical",
            "contractAddress": CONTRACT,
            "txHash": "0xabc",
            "from": ATTACKER,
            "action": "PAUSED",
            "confidence": 0.9,
        })
        assert event.level is ThreatLevel.CRITICAL
        assert event.action_taken is ActionTaken.PAUSE_TRIGGERED
        assert event.origin is EventOrigin.REMOTE

    def test_explicit_action_wins(self):
        event = event_from_remote_threat({"id": "t1", "actionTaken": "ALERT", "action": "PAUSED"})
        assert event.action_taken is ActionTaken.ALERT

    def test_missing_id_is_dropped(self):
        assert event_from_remote_threat({"level": "HIGH"}) is None


class TestMessageEvents:
    def test_pause_triggered(self):
        message = ServerMessage.parse({
            "type": "PAUSE_TRIGGERED",
            "contractAddress": CONTRACT,
            "txHash": "0xfeed",
            "sentinel": SENDER,
        })
        event = event_from_message(message)
        assert event.id == "pause-0xfeed"
        assert event.event_type is EventType.PAUSE_TRIGGERED
        assert event.action_taken is ActionTaken.PAUSE_TRIGGERED

    def test_ids_without_tx_hash_use_contract_and_time(self):
        message = ServerMessage.parse({"type": "PAUSE_LIFTED", "contractAddress": CONTRACT, "timestamp": 5})
        event = event_from_message(message)
        assert event.id == f"lift-{CONTRACT}-5"
        assert event.level is ThreatLevel.INFO

    def test_registration_requires_contract(self):
        assert event_from_message(ServerMessage.parse({"type": "REGISTRATION"})) is None
        event = event_from_message(ServerMessage.parse({"type": "REGISTRATION", "contractAddress": CONTRACT}))
        assert event.event_type is EventType.REGISTRATION


class TestChainEvents:
    def test_analysis_event(self):
        tx = ObservedTransaction("0xabc", SENDER, CONTRACT, Web3.to_wei(600, "ether"), "0x")
        analysis = TransactionAnalyzer(AttackerRegistry()).analyze(tx, None, ContractContext(CONTRACT))

        event = event_from_analysis(tx, analysis, CONTRACT)

        assert event.id == f"0xabc-{analysis.timestamp}"
        assert event.value_transferred == "600.0000"
        assert event.score == 50
        assert event.factors == ("VERY_LARGE_TRANSFER",)
        assert event.event_type is EventType.SUSPICIOUS_TX

    def test_registration_log(self):
        event = event_from_registration_log({
            "transactionHash": HexBytes("0x" + "12" * 32),
            "args": {"contractAddr": CONTRACT, "owner": SENDER, "stake": Web3.to_wei(1, "ether")},
        })
        assert event.id == "reg-0x" + "12" * 32
        assert event.origin_address == SENDER
        assert "1 native units" in event.details

    def test_pause_log(self):
        event = event_from_pause_log({
            "transactionHash": "0xbeef",
            "args": {"target": CONTRACT, "sentinel": SENDER},
        })
        assert event.id == "pause-0xbeef"
        assert event.contract_address == CONTRACT


class TestJournalEntries:
    def test_round_trip_marks_origin(self):
        tx = ObservedTransaction("0xabc", SENDER, CONTRACT, 0, "0x")
        analysis = TransactionAnalyzer(AttackerRegistry([SENDER])).analyze(tx, None, ContractContext(CONTRACT))
        original = event_from_analysis(tx, analysis, CONTRACT)

        restored = event_from_journal(original.to_dict())

        assert restored.origin is EventOrigin.JOURNAL
        assert restored.with_origin(EventOrigin.CHAIN) == original

    def test_bad_entry_is_skipped(self):
        assert event_from_journal({"id": "x", "timestamp": 1, "level": "SEVERE"}) is None

    def test_non_object_entry_is_skipped(self):
        assert event_from_journal(7) is None
        assert event_from_journal(["x"]) is None


class TestMalformedFields:
    """A bad field degrades to a default instead of losing the message."""

    def test_non_numeric_last_block(self):
        message = ServerMessage.parse({"type": "INIT", "contracts": [CONTRACT], "lastBlock": "latest"})
        assert message.last_block is None
        assert message.contracts == [CONTRACT]

    def test_hex_last_block(self):
        assert ServerMessage.parse({"type": "INIT", "lastBlock": "0x1a"}).last_block == 26

    def test_contracts_must_be_a_list(self):
        assert ServerMessage.parse({"type": "INIT", "contracts": CONTRACT}).contracts == []

    def test_iso_timestamp_on_threat(self):
        event = event_from_remote_threat({"id": "t1", "timestamp": "2024-01-01T00:00:00Z"})
        assert event.timestamp == 1704067200000

    def test_unparseable_timestamp_falls_back_to_now(self):
        event = event_from_remote_threat({"id": "t1", "timestamp": "yesterday"})
        assert event.timestamp > 1704067200000

    def test_null_confidence(self):
        event = event_from_remote_threat({"id": "t1", "confidence": None})
        assert event.confidence == 0.0

    def test_iso_timestamp_on_message(self):
        message = ServerMessage.parse({
            "type": "PAUSE_LIFTED",
            "contractAddress": CONTRACT,
            "timestamp": "2024-01-01T00:00:00+00:00",
        })
        assert event_from_message(message).id == f"lift-{CONTRACT}-1704067200000"
