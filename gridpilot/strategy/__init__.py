"""Regime classification and strategy planning."""

from gridpilot.strategy.engine import (
    EntryPlan,
    ExitPlan,
    StrategyBundle,
    StrategyEngine,
    StrategyPlan,
)
from gridpilot.strategy.regime import RegimeClassification, RegimeClassifier, RegimeType
from gridpilot.strategy.scoring import ConfidenceScore

__all__ = [
    "ConfidenceScore",
    "EntryPlan",
    "ExitPlan",
    "RegimeClassification",
    "RegimeClassifier",
    "RegimeType",
    "StrategyBundle",
    "StrategyEngine",
    "StrategyPlan",
]
