"""
Data model shared by every pipeline stage.

A ThreatEvent is immutable. The only field that changes after creation is
``action_taken``, and it changes by replacement (``with_action``), never by
mutation.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ThreatLevel(Enum):
    """Severity of a detected condition."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"
    NONE = "NONE"       # Analysis result below the event threshold

    @property
    def priority(self) -> int:
        return _LEVEL_PRIORITY[self]


_LEVEL_PRIORITY = {
    ThreatLevel.NONE: 0,
    ThreatLevel.INFO: 1,
    ThreatLevel.LOW: 2,
    ThreatLevel.MEDIUM: 3,
    ThreatLevel.HIGH: 4,
    ThreatLevel.CRITICAL: 5,
}


class ActionTaken(Enum):
    NONE = "NONE"
    ALERT = "ALERT"
    PAUSE_TRIGGERED = "PAUSE_TRIGGERED"


class ResponseAction(Enum):
    MONITOR = "MONITOR"
    ALERT = "ALERT"
    PAUSE = "PAUSE"


class EventOrigin(Enum):
    """Which adapter produced the event."""
    CHAIN = "chain"         # Direct chain observation (analyzer or log watcher)
    REMOTE = "remote"       # Remote monitoring service
    JOURNAL = "journal"     # Replayed from local persisted history


class EventType(Enum):
    EXPLOIT_ATTEMPT = "EXPLOIT_ATTEMPT"
    SUSPICIOUS_TX = "SUSPICIOUS_TX"
    PAUSE_TRIGGERED = "PAUSE_TRIGGERED"
    PAUSE_LIFTED = "PAUSE_LIFTED"
    SCAN_COMPLETE = "SCAN_COMPLETE"
    REGISTRATION = "REGISTRATION"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ThreatEvent:
    """One detected suspicious or malicious on-chain occurrence."""

    id: str
    timestamp: int  # epoch millis
    level: ThreatLevel
    contract_address: str
    transaction_hash: str
    origin_address: str
    details: str
    confidence: float
    action_taken: ActionTaken = ActionTaken.NONE
    value_transferred: str | None = None
    origin: EventOrigin = EventOrigin.CHAIN
    event_type: EventType = EventType.SUSPICIOUS_TX
    score: int | None = None
    factors: tuple[str, ...] = ()

    def with_action(self, action: ActionTaken) -> ThreatEvent:
        return replace(self, action_taken=action)

    def with_origin(self, origin: EventOrigin) -> ThreatEvent:
        return replace(self, origin=origin)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "type": self.event_type.value,
            "contractAddress": self.contract_address,
            "txHash": self.transaction_hash,
            "from": self.origin_address,
            "details": self.details,
            "confidence": self.confidence,
            "actionTaken": self.action_taken.value,
            "value": self.value_transferred,
            "origin": self.origin.value,
            "score": self.score,
            "factors": list(self.factors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreatEvent:
        return cls(
            id=data["id"],
            timestamp=int(data["timestamp"]),
            level=ThreatLevel(data["level"]),
            contract_address=data.get("contractAddress", ""),
            transaction_hash=data.get("txHash", ""),
            origin_address=data.get("from", ""),
            details=data.get("details", ""),
            confidence=float(data.get("confidence", 0.0)),
            action_taken=ActionTaken(data.get("actionTaken", ActionTaken.NONE.value)),
            value_transferred=data.get("value"),
            origin=EventOrigin(data.get("origin", EventOrigin.JOURNAL.value)),
            event_type=EventType(data.get("type", EventType.SUSPICIOUS_TX.value)),
            score=data.get("score"),
            factors=tuple(data.get("factors") or ()),
        )


@dataclass
class MonitoredContract:
    """A contract under protection.

    ``is_paused`` is only ever written from an on-chain read.
    """

    address: str
    owner: str = ""
    registered_at: int = field(default_factory=now_ms)
    is_paused: bool = False
    total_events: int = 0
    last_activity: int = field(default_factory=now_ms)
    risk_score: int | None = None

    def record_event(self, event: ThreatEvent) -> None:
        self.total_events += 1
        self.last_activity = max(self.last_activity, event.timestamp)
        if event.score is not None:
            self.risk_score = max(self.risk_score or 0, event.score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "owner": self.owner,
            "registeredAt": self.registered_at,
            "isPaused": self.is_paused,
            "totalEvents": self.total_events,
            "lastActivity": self.last_activity,
            "riskScore": self.risk_score,
        }


class ConnectionStatus(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.IDLE
    reconnect_attempts: int = 0
    last_connect_attempt_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reconnect_attempts": self.reconnect_attempts,
            "last_connect_attempt_at": self.last_connect_attempt_at,
        }
