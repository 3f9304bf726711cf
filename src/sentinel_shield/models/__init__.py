"""Heuristic scoring and score-to-action decisions."""

from .decision import AUTO_PAUSE_THRESHOLD, DecisionEngine, ThresholdPolicy
from .heuristics import AttackerRegistry, TransactionAnalyzer

__all__ = [
    "AUTO_PAUSE_THRESHOLD",
    "DecisionEngine",
    "ThresholdPolicy",
    "AttackerRegistry",
    "TransactionAnalyzer",
]
