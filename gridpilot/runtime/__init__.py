"""Runtime wiring: tick context, per-key locks, services and the scheduler."""

from gridpilot.runtime.context import GRID_OVERRIDES_KEY, TUNING_LEDGER_KEY, TickContext
from gridpilot.runtime.grid_service import GridCommandResult, GridService
from gridpilot.runtime.locks import KeyedLocks
from gridpilot.runtime.scheduler import Scheduler, TickReport
from gridpilot.runtime.strategy_service import StrategyService

__all__ = [
    "GRID_OVERRIDES_KEY",
    "GridCommandResult",
    "GridService",
    "KeyedLocks",
    "Scheduler",
    "StrategyService",
    "TUNING_LEDGER_KEY",
    "TickContext",
    "TickReport",
]
