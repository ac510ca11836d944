"""Grid trading: ladder construction, buy-pause guards and order reconciliation."""

from gridpilot.grid.guards import (
    GuardReading,
    TrendGuardReading,
    evaluate_liquidity_guard,
    evaluate_trend_guard,
    update_buy_pause,
)
from gridpilot.grid.levels import (
    AutoRange,
    GridBuildError,
    build_grid_state,
    clamp_levels_by_min_step,
    compute_auto_range,
    geometric_grid,
    percentile,
)
from gridpilot.grid.models import (
    BreakoutAction,
    GridOrder,
    GridPerformance,
    GridState,
    GridStatus,
    PauseReason,
)
from gridpilot.grid.performance import FillRecord, apply_fill, ensure_performance, revalue
from gridpilot.grid.reconciler import ActionError, ActionType, GridReconciler, ReconcileResult
from gridpilot.grid.tuning import GridTuning, TuningLedger, TuningOutcome, apply_grid_tuning

__all__ = [
    "ActionError",
    "ActionType",
    "AutoRange",
    "BreakoutAction",
    "FillRecord",
    "GridBuildError",
    "GridOrder",
    "GridPerformance",
    "GridReconciler",
    "GridState",
    "GridStatus",
    "GridTuning",
    "GuardReading",
    "PauseReason",
    "ReconcileResult",
    "TrendGuardReading",
    "TuningLedger",
    "TuningOutcome",
    "apply_fill",
    "apply_grid_tuning",
    "build_grid_state",
    "clamp_levels_by_min_step",
    "compute_auto_range",
    "ensure_performance",
    "evaluate_liquidity_guard",
    "evaluate_trend_guard",
    "geometric_grid",
    "percentile",
    "revalue",
    "update_buy_pause",
]
