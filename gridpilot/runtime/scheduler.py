"""Tick scheduler: governor first, then strategies and grids concurrently."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from gridpilot.grid.performance import FillRecord
from gridpilot.grid.reconciler import ReconcileResult
from gridpilot.monitoring.logging import symbol_context
from gridpilot.risk.equity import record_fee_telemetry
from gridpilot.risk.governor import RiskGovernor, RiskGovernorDecision
from gridpilot.runtime.context import TickContext
from gridpilot.runtime.grid_service import GridService
from gridpilot.runtime.strategy_service import StrategyService

log = structlog.get_logger(__name__)


@dataclass
class TickReport:
    at: datetime
    decision: RiskGovernorDecision
    strategies_refreshed: list[str] = field(default_factory=list)
    strategy_errors: dict[str, str] = field(default_factory=dict)
    grid_results: list[ReconcileResult] = field(default_factory=list)
    grids_skipped_reason: str | None = None
    duration_sec: float = 0.0

    @property
    def fills(self) -> list[FillRecord]:
        return [f for r in self.grid_results for f in r.fills]

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "decision": self.decision.to_dict(),
            "strategies_refreshed": list(self.strategies_refreshed),
            "strategy_errors": dict(self.strategy_errors),
            "grids": [r.grid.symbol for r in self.grid_results],
            "grids_skipped_reason": self.grids_skipped_reason,
            "fills": len(self.fills),
            "duration_sec": self.duration_sec,
        }


class Scheduler:
    """Drive one tick at a time over the shared context."""

    def __init__(
        self,
        context: TickContext,
        governor: RiskGovernor,
        strategies: StrategyService,
        grids: GridService,
    ) -> None:
        self._context = context
        self._governor = governor
        self._strategies = strategies
        self._grids = grids

    async def run_tick(self, now: datetime | None = None) -> TickReport:
        now = now or datetime.now(timezone.utc)
        started = time.perf_counter()
        ctx = self._context

        # Governor first; strategies and grids read its decision.
        async with ctx.locks.hold("governor"):
            ctx.state.governor = await self._governor.tick(ctx.governor_snapshot, now)
        decision = ctx.decision(now)
        report = TickReport(at=now, decision=decision)

        grid_task = self._grid_work(decision, now, report)
        strategy_tasks = [
            self._strategy_work(symbol, decision, now, report)
            for symbol in self._due_strategies(now)
        ]
        await asyncio.gather(grid_task, *strategy_tasks)

        fills = report.fills
        if fills:
            ctx.state.governor = record_fee_telemetry(
                ctx.governor_snapshot,
                now,
                fees=sum(f.fee_estimate for f in fills),
                notional=sum(f.notional for f in fills),
                fills=len(fills),
                window_minutes=ctx.settings.governor.fee_window_minutes,
            )

        ctx.last_tick_at = now
        if ctx.settings.scheduler.persist_every_tick:
            ctx.persist()
        report.duration_sec = time.perf_counter() - started
        if ctx.metrics is not None:
            ctx.metrics.tick_duration_seconds.observe(report.duration_sec)
        log.info(
            "scheduler_tick",
            state=decision.state.value,
            strategies=len(report.strategies_refreshed),
            grids=len(report.grid_results),
            fills=len(fills),
            duration_sec=round(report.duration_sec, 3),
        )
        return report

    def _due_strategies(self, now: datetime) -> list[str]:
        refresh = self._context.settings.strategy.refresh_seconds
        due = []
        for symbol in self._context.settings.strategy.symbols:
            bundle = self._context.bundles.get(symbol)
            if bundle is None or bundle.created_at is None:
                due.append(symbol)
            elif (now - bundle.created_at).total_seconds() >= refresh:
                due.append(symbol)
        return due

    async def _strategy_work(
        self,
        symbol: str,
        decision: RiskGovernorDecision,
        now: datetime,
        report: TickReport,
    ) -> None:
        with symbol_context("strategy", symbol):
            async with self._context.locks.hold(f"strategy:{symbol}"):
                try:
                    await self._strategies.refresh(symbol, decision, now)
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    log.warning("strategy_refresh_failed", error=message)
                    report.strategy_errors[symbol] = message
                    return
        report.strategies_refreshed.append(symbol)

    async def _grid_work(
        self, decision: RiskGovernorDecision, now: datetime, report: TickReport
    ) -> None:
        ctx = self._context
        if not ctx.grid_config.enabled:
            report.grids_skipped_reason = "grid_disabled"
            return
        allowed, reasons = ctx.settings.trading_gate()
        if not allowed:
            report.grids_skipped_reason = ",".join(reasons)
            return
        try:
            await self._grids.ensure_configured(now)
            report.grid_results = await self._grids.tick_all(decision, now)
        except Exception as exc:
            log.warning("grid_work_failed", error=str(exc) or type(exc).__name__)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Tick every ``scheduler.tick_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        interval = self._context.settings.scheduler.tick_seconds
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_tick()
            except Exception as exc:
                log.error("scheduler_tick_failed", error=str(exc) or type(exc).__name__)
            remaining = max(0.0, interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
