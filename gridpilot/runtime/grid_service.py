"""Grid lifecycle: start, stop and per-tick reconciliation of running grids."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

import structlog

from gridpilot.grid.levels import GridBuildError, build_grid_state
from gridpilot.grid.models import GridState, GridStatus
from gridpilot.grid.performance import apply_fill
from gridpilot.grid.reconciler import GridReconciler, ReconcileResult
from gridpilot.models import Balance
from gridpilot.monitoring.logging import symbol_context
from gridpilot.risk.governor import RiskGovernorDecision
from gridpilot.runtime.context import TickContext

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GridCommandResult:
    ok: bool
    error: str | None = None
    grid: GridState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "grid": self.grid.to_dict() if self.grid else None,
        }


def _free(balances: list[Balance], asset: str) -> float:
    for balance in balances:
        if balance.asset.upper() == asset.upper():
            return max(0.0, balance.free)
    return 0.0


class GridService:
    """Own grid lifecycle transitions; each grid symbol is a single-writer key."""

    def __init__(self, context: TickContext, reconciler: GridReconciler) -> None:
        self._context = context
        self._reconciler = reconciler

    @property
    def _timeout(self) -> float:
        return self._context.settings.scheduler.fetch_timeout_sec

    @staticmethod
    def _lock_key(symbol: str) -> str:
        return f"grid:{symbol.upper()}"

    async def start_grid(self, symbol: str, now: datetime | None = None) -> GridCommandResult:
        """Build and register a running grid, sized from the remaining allocation budget."""
        now = now or datetime.now(timezone.utc)
        symbol = symbol.upper()
        config = self._context.grid_config
        if not config.enabled:
            return GridCommandResult(ok=False, error="Grid trading is disabled (grid.enabled=false)")

        async with self._context.locks.hold(self._lock_key(symbol)):
            grids = self._context.state.grids
            existing = grids.get(symbol)
            if existing is not None and existing.is_running:
                return GridCommandResult(ok=True, grid=existing)

            running = self._context.running_grids()
            if len(running) >= config.max_active_grids:
                return GridCommandResult(
                    ok=False,
                    error=f"Max active grids reached ({config.max_active_grids}). Stop another grid first.",
                )

            exchange = self._context.exchange
            home = self._context.settings.risk.home_asset
            try:
                balances = await asyncio.wait_for(exchange.get_balances(), self._timeout)
            except Exception as exc:
                return GridCommandResult(ok=False, error=f"Failed to fetch balances: {exc}")

            budget = _free(balances, home) * config.max_alloc_pct / 100
            allocated = sum(g.allocation_home for g in running)
            remaining = max(0.0, budget - allocated)
            if remaining <= 0:
                return GridCommandResult(
                    ok=False,
                    error=f"No remaining grid allocation (cap {config.max_alloc_pct}% of free {home}).",
                )

            try:
                info = await asyncio.wait_for(exchange.get_symbol_info(symbol), self._timeout)
                candles = await asyncio.wait_for(
                    exchange.get_klines(symbol, config.kline_interval, config.kline_limit), self._timeout
                )
                grid = build_grid_state(info, candles, remaining, config, home, now)
            except GridBuildError as exc:
                log.warning("grid_start_rejected", symbol=symbol, error=str(exc))
                return GridCommandResult(ok=False, error=str(exc))
            except Exception as exc:
                log.warning("grid_start_failed", symbol=symbol, error=str(exc) or type(exc).__name__)
                return GridCommandResult(ok=False, error=str(exc) or type(exc).__name__)

            grids[symbol] = grid
            log.info(
                "grid_started",
                symbol=symbol,
                lower=grid.lower_price,
                upper=grid.upper_price,
                levels=grid.levels,
                allocation=grid.allocation_home,
            )
            return GridCommandResult(ok=True, grid=grid)

    async def stop_grid(self, symbol: str, now: datetime | None = None) -> GridCommandResult:
        """Cancel the grid's tracked orders and mark it stopped."""
        now = now or datetime.now(timezone.utc)
        symbol = symbol.upper()
        async with self._context.locks.hold(self._lock_key(symbol)):
            grid = self._context.state.grids.get(symbol)
            if grid is None:
                return GridCommandResult(ok=False, error=f"No grid found for {symbol}")
            perf = grid.performance
            if self._context.trading_enabled:
                risk = self._context.settings.risk
                for order in grid.orders_by_level.values():
                    try:
                        ack = await asyncio.wait_for(
                            self._context.exchange.cancel_order(symbol, order.order_id), self._timeout
                        )
                    except Exception as exc:
                        log.warning(
                            "grid_cancel_failed",
                            symbol=symbol,
                            order_id=order.order_id,
                            error=str(exc) or type(exc).__name__,
                        )
                        continue
                    if perf is not None:
                        perf, _ = apply_fill(perf, ack, risk.maker_fee_rate, risk.taker_fee_rate, now)
            stopped = replace(
                grid,
                status=GridStatus.STOPPED,
                orders_by_level={},
                performance=perf,
                updated_at=now,
                last_tick_at=now,
            )
            self._context.state.grids[symbol] = stopped
            log.info("grid_stopped", symbol=symbol)
            return GridCommandResult(ok=True, grid=stopped)

    async def ensure_configured(self, now: datetime | None = None) -> None:
        """Start configured grid symbols that have never run (stopped grids stay stopped)."""
        config = self._context.grid_config
        if not config.enabled:
            return
        for symbol in config.symbols[: config.max_active_grids]:
            if symbol in self._context.state.grids:
                continue
            if len(self._context.running_grids()) >= config.max_active_grids:
                break
            result = await self.start_grid(symbol, now)
            if not result.ok:
                log.warning("grid_autostart_failed", symbol=symbol, error=result.error)

    async def tick_all(
        self, decision: RiskGovernorDecision, now: datetime | None = None
    ) -> list[ReconcileResult]:
        """Reconcile every running grid concurrently, one writer per symbol."""
        now = now or datetime.now(timezone.utc)
        grids = self._context.running_grids()
        if not grids:
            return []
        self._reconciler.config = self._context.grid_config
        try:
            balances = await asyncio.wait_for(self._context.exchange.get_balances(), self._timeout)
        except Exception as exc:
            log.warning("grid_tick_balances_failed", error=str(exc) or type(exc).__name__)
            return []

        results = await asyncio.gather(
            *(self._tick_one(g.symbol, balances, decision, now) for g in grids)
        )
        return [r for r in results if r is not None]

    async def _tick_one(
        self,
        symbol: str,
        balances: list[Balance],
        decision: RiskGovernorDecision,
        now: datetime,
    ) -> ReconcileResult | None:
        with symbol_context("grid", symbol):
            async with self._context.locks.hold(self._lock_key(symbol)):
                grid = self._context.state.grids.get(symbol)
                if grid is None or not grid.is_running:
                    return None
                try:
                    rules = await asyncio.wait_for(
                        self._context.exchange.get_symbol_rules(symbol), self._timeout
                    )
                    result = await self._reconciler.reconcile(
                        grid, rules, balances, decision=decision, now=now
                    )
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    log.warning("grid_tick_failed", symbol=symbol, error=message)
                    self._context.state.grids[symbol] = replace(
                        grid, status=GridStatus.ERROR, last_error=message, updated_at=now, last_tick_at=now
                    )
                    return None
                self._context.state.grids[symbol] = result.grid
                return result
