"""
Event source adapters.

Normalizes the three event origins into ThreatEvent:
- chain observation (analyzed transactions and registry/guardian logs)
- the remote monitoring service (websocket envelopes)
- the local persisted journal
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

import structlog
from hexbytes import HexBytes
from web3 import Web3

from sentinel_shield.events import (
    ActionTaken,
    EventOrigin,
    EventType,
    ThreatEvent,
    ThreatLevel,
    now_ms,
)
from sentinel_shield.models.heuristics import FraudAnalysis, ObservedTransaction


logger = structlog.get_logger()


class MessageType(Enum):
    INIT = "INIT"
    THREAT_DETECTED = "THREAT_DETECTED"
    REGISTRATION = "REGISTRATION"
    PAUSE_TRIGGERED = "PAUSE_TRIGGERED"
    PAUSE_LIFTED = "PAUSE_LIFTED"


# Remote service action labels
_REMOTE_ACTIONS = {
    "PAUSED": ActionTaken.PAUSE_TRIGGERED,
    "ALERTED": ActionTaken.ALERT,
    "LOGGED": ActionTaken.NONE,
}


@dataclass
class ServerMessage:
    """Inbound envelope from the remote monitoring service."""

    type: MessageType
    contract_address: str | None = None
    threat: dict[str, Any] | None = None
    contracts: list[Any] = field(default_factory=list)
    last_block: int | None = None
    tx_hash: str | None = None
    vuln_hash: str | None = None
    sentinel: str | None = None
    timestamp: int | None = None

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> ServerMessage | None:
        try:
            msg_type = MessageType(data.get("type"))
        except ValueError:
            logger.debug("unknown_message_type", type=data.get("type"))
            return None

        contracts = data.get("contracts")
        return cls(
            type=msg_type,
            contract_address=data.get("contractAddress"),
            threat=data.get("threat") if isinstance(data.get("threat"), dict) else None,
            contracts=list(contracts) if isinstance(contracts, list) else [],
            last_block=_as_int(data.get("lastBlock")),
            tx_hash=data.get("txHash"),
            vuln_hash=data.get("vulnHash"),
            sentinel=data.get("sentinel"),
            timestamp=_timestamp_ms(data["timestamp"]) if data.get("timestamp") is not None else None,
        )


def _as_int(raw: Any) -> int | None:
    """Integer or hex-string field; anything else reads as missing."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        pass
    try:
        return int(str(raw), 0)
    except ValueError:
        return None


def _as_float(raw: Any, default: float = 0.0) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _timestamp_ms(raw: Any) -> int:
    """Epoch millis from a number or an ISO-8601 string, else now."""
    value = _as_int(raw)
    if value is not None:
        return value
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return now_ms()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return now_ms()


def _level(raw: Any, default: ThreatLevel = ThreatLevel.INFO) -> ThreatLevel:
    try:
        return ThreatLevel(str(raw).upper())
    except ValueError:
        return default


def _event_type(raw: Any, default: EventType) -> EventType:
    try:
        return EventType(raw)
    except ValueError:
        return default


def event_from_remote_threat(threat: Mapping[str, Any]) -> ThreatEvent | None:
    """Convert a THREAT_DETECTED payload into a ThreatEvent."""
    event_id = threat.get("id")
    if not event_id:
        logger.debug("remote_threat_missing_id")
        return None

    action = threat.get("actionTaken")
    if action is not None:
        try:
            action_taken = ActionTaken(action)
        except ValueError:
            action_taken = ActionTaken.NONE
    else:
        action_taken = _REMOTE_ACTIONS.get(str(threat.get("action", "")).upper(), ActionTaken.NONE)

    return ThreatEvent(
        id=str(event_id),
        timestamp=_timestamp_ms(threat.get("timestamp")),
        level=_level(threat.get("level")),
        contract_address=threat.get("contractAddress", ""),
        transaction_hash=threat.get("txHash", ""),
        origin_address=threat.get("from", ""),
        details=threat.get("details", ""),
        confidence=_as_float(threat.get("confidence")),
        action_taken=action_taken,
        value_transferred=threat.get("value"),
        origin=EventOrigin.REMOTE,
        event_type=_event_type(threat.get("type"), EventType.SUSPICIOUS_TX),
    )


def _message_event_id(prefix: str, tx_hash: str, contract_address: str, timestamp: int) -> str:
    if tx_hash:
        return f"{prefix}-{tx_hash}"
    return f"{prefix}-{contract_address.lower()}-{timestamp}"


def event_from_message(message: ServerMessage) -> ThreatEvent | None:
    """Convert any event-bearing server message. INIT carries no event."""
    if message.type is MessageType.THREAT_DETECTED:
        return event_from_remote_threat(message.threat) if message.threat else None

    if message.type is MessageType.INIT or not message.contract_address:
        return None

    tx_hash = message.tx_hash or ""
    timestamp = message.timestamp or now_ms()

    if message.type is MessageType.PAUSE_TRIGGERED:
        return ThreatEvent(
            id=_message_event_id("pause", tx_hash, message.contract_address, timestamp),
            timestamp=timestamp,
            level=ThreatLevel.CRITICAL,
            contract_address=message.contract_address,
            transaction_hash=tx_hash,
            origin_address=message.sentinel or "",
            details="Emergency pause executed by sentinel node",
            confidence=1.0,
            action_taken=ActionTaken.PAUSE_TRIGGERED,
            origin=EventOrigin.REMOTE,
            event_type=EventType.PAUSE_TRIGGERED,
        )

    if message.type is MessageType.PAUSE_LIFTED:
        return ThreatEvent(
            id=_message_event_id("lift", tx_hash, message.contract_address, timestamp),
            timestamp=timestamp,
            level=ThreatLevel.INFO,
            contract_address=message.contract_address,
            transaction_hash=tx_hash,
            origin_address=message.sentinel or "",
            details="Pause lifted by contract owner",
            confidence=1.0,
            origin=EventOrigin.REMOTE,
            event_type=EventType.PAUSE_LIFTED,
        )

    return ThreatEvent(
        id=_message_event_id("reg", tx_hash, message.contract_address, timestamp),
        timestamp=timestamp,
        level=ThreatLevel.INFO,
        contract_address=message.contract_address,
        transaction_hash=tx_hash,
        origin_address="",
        details="Contract registered for protection",
        confidence=1.0,
        origin=EventOrigin.REMOTE,
        event_type=EventType.REGISTRATION,
    )


def event_from_analysis(
    tx: ObservedTransaction,
    analysis: FraudAnalysis,
    contract_address: str,
) -> ThreatEvent:
    """Build the event for an analyzed transaction that crossed the LOW band."""
    value = tx.value_native
    event_type = (
        EventType.EXPLOIT_ATTEMPT
        if analysis.level in (ThreatLevel.CRITICAL, ThreatLevel.HIGH)
        else EventType.SUSPICIOUS_TX
    )
    details = "; ".join(f.description for f in analysis.factors) or "No factors"
    return ThreatEvent(
        id=f"{tx.hash}-{analysis.timestamp}",
        timestamp=analysis.timestamp,
        level=analysis.level,
        contract_address=contract_address,
        transaction_hash=tx.hash,
        origin_address=tx.from_address,
        details=details,
        confidence=analysis.confidence,
        value_transferred=f"{value:.4f}" if value > 0 else None,
        origin=EventOrigin.CHAIN,
        event_type=event_type,
        score=analysis.score,
        factors=tuple(analysis.factor_types),
    )


def _log_tx_hash(log: Mapping[str, Any]) -> str:
    raw = log.get("transactionHash")
    if isinstance(raw, (bytes, bytearray)):
        return HexBytes(raw).to_0x_hex()
    return str(raw or "")


def event_from_registration_log(log: Mapping[str, Any]) -> ThreatEvent:
    """Decoded ``ContractRegistered(contractAddr, owner, stake)`` log."""
    args = log.get("args") or {}
    stake = Web3.from_wei(int(args.get("stake", 0)), "ether")
    tx_hash = _log_tx_hash(log)
    return ThreatEvent(
        id=f"reg-{tx_hash}",
        timestamp=now_ms(),
        level=ThreatLevel.INFO,
        contract_address=args.get("contractAddr", ""),
        transaction_hash=tx_hash,
        origin_address=args.get("owner", ""),
        details=f"Contract registered with {stake} native units stake",
        confidence=1.0,
        origin=EventOrigin.CHAIN,
        event_type=EventType.REGISTRATION,
    )


def event_from_pause_log(log: Mapping[str, Any]) -> ThreatEvent:
    """Decoded ``EmergencyPauseTriggered(target, vulnHash, expiresAt, sentinel)`` log."""
    args = log.get("args") or {}
    tx_hash = _log_tx_hash(log)
    return ThreatEvent(
        id=f"pause-{tx_hash}",
        timestamp=now_ms(),
        level=ThreatLevel.CRITICAL,
        contract_address=args.get("target", ""),
        transaction_hash=tx_hash,
        origin_address=args.get("sentinel", ""),
        details="Emergency pause executed on chain",
        confidence=1.0,
        action_taken=ActionTaken.PAUSE_TRIGGERED,
        origin=EventOrigin.CHAIN,
        event_type=EventType.PAUSE_TRIGGERED,
    )


def event_from_journal(entry: Any) -> ThreatEvent | None:
    """Rehydrate a persisted entry; unreadable entries are skipped."""
    if not isinstance(entry, Mapping):
        logger.warning("journal_entry_skipped", error="not an object", entry_type=type(entry).__name__)
        return None
    try:
        return ThreatEvent.from_dict(dict(entry)).with_origin(EventOrigin.JOURNAL)
    except (KeyError, ValueError, TypeError) as e:
        logger.warning("journal_entry_skipped", error=str(e), entry_id=entry.get("id"))
        return None
