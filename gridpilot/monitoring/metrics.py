"""Prometheus metrics definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

if TYPE_CHECKING:
    from gridpilot.grid.models import GridState
    from gridpilot.grid.reconciler import ReconcileResult
    from gridpilot.risk.governor import RiskGovernorDecision

_STATE_VALUES = {"NORMAL": 0, "CAUTION": 1, "HALT": 2}


class Metrics:
    """Expose core metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.tick_duration_seconds = Histogram(
            "tick_duration_seconds", "Scheduler tick duration", registry=r
        )
        self.rest_request_latency_ms = Histogram(
            "rest_request_latency_ms", "REST latency (ms)", registry=r
        )
        self.rest_error_total = Counter("rest_error_total", "REST errors", ["path"], registry=r)
        self.indicator_fetch_failures_total = Counter(
            "indicator_fetch_failures_total",
            "Indicator snapshots that fell back to neutral",
            ["interval"],
            registry=r,
        )

        # Risk governor
        self.risk_governor_state = Gauge(
            "risk_governor_state", "Risk state (0=NORMAL, 1=CAUTION, 2=HALT)", registry=r
        )
        self.entries_paused = Gauge("entries_paused", "New entries paused", registry=r)
        self.equity_home = Gauge("equity_home", "Account equity in home asset", registry=r)
        self.drawdown_daily_pct = Gauge("drawdown_daily_pct", "Drawdown vs daily baseline", registry=r)
        self.drawdown_rolling_pct = Gauge(
            "drawdown_rolling_pct", "Drawdown vs rolling peak", registry=r
        )
        self.fee_burn_pct = Gauge("fee_burn_pct", "Fees as percent of traded notional", registry=r)

        # Grids
        self.grid_buy_paused = Gauge(
            "grid_buy_paused", "Grid buy side paused", ["symbol"], registry=r
        )
        self.grid_pnl_home = Gauge("grid_pnl_home", "Grid PnL in home asset", ["symbol"], registry=r)
        self.grid_orders_placed_total = Counter(
            "grid_orders_placed_total", "Grid orders placed", ["symbol", "side"], registry=r
        )
        self.grid_orders_cancelled_total = Counter(
            "grid_orders_cancelled_total", "Grid orders cancelled", ["symbol", "side"], registry=r
        )
        self.grid_action_errors_total = Counter(
            "grid_action_errors_total",
            "Grid place/cancel failures",
            ["symbol", "action"],
            registry=r,
        )

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)

    def update_governor(
        self,
        decision: RiskGovernorDecision,
        equity: float | None = None,
        drawdown_daily: float | None = None,
        drawdown_rolling: float | None = None,
        fee_burn: float | None = None,
    ) -> None:
        self.risk_governor_state.set(_STATE_VALUES.get(decision.state.value, 0))
        self.entries_paused.set(1 if decision.entries_paused else 0)
        if equity is not None:
            self.equity_home.set(equity)
        if drawdown_daily is not None:
            self.drawdown_daily_pct.set(drawdown_daily)
        if drawdown_rolling is not None:
            self.drawdown_rolling_pct.set(drawdown_rolling)
        if fee_burn is not None:
            self.fee_burn_pct.set(fee_burn)

    def update_grid(self, grid: GridState) -> None:
        self.grid_buy_paused.labels(symbol=grid.symbol).set(1 if grid.buy_paused else 0)
        if grid.performance is not None:
            self.grid_pnl_home.labels(symbol=grid.symbol).set(grid.performance.pnl_home)

    def record_reconcile(self, result: ReconcileResult) -> None:
        symbol = result.grid.symbol
        for order in result.placed:
            self.grid_orders_placed_total.labels(symbol=symbol, side=order.side.value).inc()
        for order in result.cancelled:
            self.grid_orders_cancelled_total.labels(symbol=symbol, side=order.side.value).inc()
        for error in result.errors:
            self.grid_action_errors_total.labels(symbol=symbol, action=error.action.value).inc()
        self.update_grid(result.grid)
