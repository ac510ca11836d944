"""Risk management module: sizing, equity telemetry and the risk governor."""

from gridpilot.risk.equity import (
    RiskGovernorSnapshot,
    compute_fee_burn_pct,
    percent_drawdown,
    record_fee_telemetry,
)
from gridpilot.risk.governor import (
    RiskGovernor,
    RiskGovernorDecision,
    RiskState,
    TrendSignal,
    evaluate_risk_governor,
)
from gridpilot.risk.sizing import PositionSize, PositionSizer, SizeRejection, floor_to_step

__all__ = [
    "PositionSize",
    "PositionSizer",
    "RiskGovernor",
    "RiskGovernorDecision",
    "RiskGovernorSnapshot",
    "RiskState",
    "SizeRejection",
    "TrendSignal",
    "compute_fee_burn_pct",
    "evaluate_risk_governor",
    "floor_to_step",
    "percent_drawdown",
    "record_fee_telemetry",
]
