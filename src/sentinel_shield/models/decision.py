from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sentinel_shield.errors import ConfigurationError
from sentinel_shield.events import ResponseAction, ThreatLevel


# Score at or above which a contract is paused automatically.
AUTO_PAUSE_THRESHOLD = 85


@dataclass(frozen=True)
class ThresholdPolicy:
    """Score boundaries on the 0-100 fraud scale.

    Bands, highest first:
        score >= critical      CRITICAL / PAUSE
        score >= auto_pause    HIGH     / PAUSE
        score >= high          HIGH     / ALERT
        score >= medium        MEDIUM   / ALERT
        score >= low           LOW      / MONITOR
        otherwise              no event
    """

    critical: int = 90
    auto_pause: int = AUTO_PAUSE_THRESHOLD
    high: int = 75
    medium: int = 50
    low: int = 30
    name: str = "default"

    def __post_init__(self) -> None:
        bounds = [0, self.low, self.medium, self.high, self.auto_pause, self.critical, 100]
        if any(a > b for a, b in zip(bounds, bounds[1:])):
            raise ConfigurationError(
                f"Threshold policy '{self.name}' is not ordered: "
                f"low={self.low} medium={self.medium} high={self.high} "
                f"auto_pause={self.auto_pause} critical={self.critical}"
            )
        if self.low <= 0:
            raise ConfigurationError("low threshold must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "critical": self.critical,
            "auto_pause": self.auto_pause,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
        }


DEFAULT_POLICY = ThresholdPolicy()


@dataclass(frozen=True)
class Decision:
    level: ThreatLevel
    action: ResponseAction

    @property
    def emits_event(self) -> bool:
        return self.level is not ThreatLevel.NONE

    @property
    def should_pause(self) -> bool:
        return self.action is ResponseAction.PAUSE


class DecisionEngine:
    def __init__(self, policy: ThresholdPolicy | None = None):
        self.policy = policy or DEFAULT_POLICY

    def decide(self, score: int) -> Decision:
        p = self.policy
        if score >= p.critical:
            return Decision(ThreatLevel.CRITICAL, ResponseAction.PAUSE)
        if score >= p.auto_pause:
            return Decision(ThreatLevel.HIGH, ResponseAction.PAUSE)
        if score >= p.high:
            return Decision(ThreatLevel.HIGH, ResponseAction.ALERT)
        if score >= p.medium:
            return Decision(ThreatLevel.MEDIUM, ResponseAction.ALERT)
        if score >= p.low:
            return Decision(ThreatLevel.LOW, ResponseAction.MONITOR)
        return Decision(ThreatLevel.NONE, ResponseAction.MONITOR)
