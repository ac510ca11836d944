"""Explicit runtime context shared by the scheduler, services and operator API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError

from gridpilot.config.settings import GridConfig, Settings
from gridpilot.connectors.advisory import Advisor, NullAdvisor
from gridpilot.connectors.exchange import ExchangeClient
from gridpilot.grid.models import GridState, GridStatus
from gridpilot.grid.tuning import TuningLedger
from gridpilot.monitoring.metrics import Metrics
from gridpilot.risk.equity import RiskGovernorSnapshot
from gridpilot.risk.governor import RiskGovernorDecision
from gridpilot.runtime.locks import KeyedLocks
from gridpilot.storage.state_store import PersistedState, StateStore
from gridpilot.strategy.engine import StrategyBundle

log = structlog.get_logger(__name__)

GRID_OVERRIDES_KEY = "grid_overrides"
TUNING_LEDGER_KEY = "tuning_ledger"


@dataclass
class TickContext:
    """Owns the mutable runtime state; decision logic receives what it needs from here."""

    settings: Settings
    exchange: ExchangeClient
    store: StateStore
    state: PersistedState
    grid_config: GridConfig
    metrics: Metrics | None = None
    advisor: Advisor = field(default_factory=NullAdvisor)
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    bundles: dict[str, StrategyBundle] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_tick_at: datetime | None = None

    @classmethod
    def create(
        cls,
        settings: Settings,
        exchange: ExchangeClient,
        store: StateStore,
        metrics: Metrics | None = None,
        advisor: Advisor | None = None,
    ) -> TickContext:
        """Load persisted state and apply any persisted grid overrides."""
        state = store.load(settings.risk.home_asset)
        grid_config = settings.grid
        overrides = state.meta.get(GRID_OVERRIDES_KEY) or {}
        if overrides:
            try:
                grid_config = GridConfig.model_validate({**settings.grid.model_dump(), **overrides})
            except ValidationError as exc:
                log.warning("grid_overrides_invalid", error=str(exc))
        return cls(
            settings=settings,
            exchange=exchange,
            store=store,
            state=state,
            grid_config=grid_config,
            metrics=metrics,
            advisor=advisor or NullAdvisor(),
        )

    @property
    def trading_enabled(self) -> bool:
        allowed, _ = self.settings.trading_gate()
        return allowed

    @property
    def governor_snapshot(self) -> RiskGovernorSnapshot:
        if self.state.governor is None:
            self.state.governor = RiskGovernorSnapshot(home_asset=self.settings.risk.home_asset)
        return self.state.governor

    def decision(self, now: datetime | None = None) -> RiskGovernorDecision:
        """Last governor decision, or a NORMAL default when none has been made yet."""
        snapshot = self.governor_snapshot
        if snapshot.decision is not None:
            return snapshot.decision
        return RiskGovernorDecision.default(now or datetime.now(timezone.utc))

    def running_grids(self) -> list[GridState]:
        return [g for g in self.state.grids.values() if g.status == GridStatus.RUNNING]

    @property
    def tuning_ledger(self) -> TuningLedger | None:
        return TuningLedger.from_dict(self.state.meta.get(TUNING_LEDGER_KEY))

    def apply_grid_overrides(
        self,
        grid_config: GridConfig,
        applied: dict[str, float],
        ledger: TuningLedger | None,
    ) -> None:
        self.grid_config = grid_config
        overrides = dict(self.state.meta.get(GRID_OVERRIDES_KEY) or {})
        overrides.update(applied)
        self.state.meta[GRID_OVERRIDES_KEY] = overrides
        if ledger is not None:
            self.state.meta[TUNING_LEDGER_KEY] = ledger.to_dict()

    def persist(self) -> None:
        try:
            self.store.save(self.state)
        except OSError as exc:
            log.error("state_persist_failed", path=str(self.store.path), error=str(exc))
