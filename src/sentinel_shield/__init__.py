"""Sentinel Shield: smart-contract threat detection and autonomous pause."""

from sentinel_shield.config import ShieldConfig
from sentinel_shield.events import ActionTaken, ThreatEvent, ThreatLevel

__version__ = "0.1.0"

__all__ = ["ShieldConfig", "ActionTaken", "ThreatEvent", "ThreatLevel", "__version__"]
