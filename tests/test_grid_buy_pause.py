"""Buy-pause timelines driven through the reconciler."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from conftest import (
    T0,
    FakeExchange,
    calm_snapshot,
    grid_config,
    make_grid,
    make_stats,
    seed_market,
    trending_snapshot,
)
from gridpilot.config.settings import GovernorConfig, RiskConfig
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.grid.models import GridState, PauseReason
from gridpilot.grid.reconciler import GridReconciler, ReconcileResult
from gridpilot.models import Side


def _tick(
    reconciler: GridReconciler,
    exchange: FakeExchange,
    grid: GridState,
    minutes: float,
    indicators: IndicatorSnapshot | None = None,
) -> ReconcileResult:
    return asyncio.run(
        reconciler.reconcile(
            grid,
            exchange.symbols["BTCUSDT"].rules,
            list(exchange.balances),
            indicators=indicators or calm_snapshot(),
            now=T0 + timedelta(minutes=minutes),
        )
    )


def _buys(grid: GridState) -> list[int]:
    return sorted(grid.orders_on_side(Side.BUY))


def _placed_buys(result: ReconcileResult) -> int:
    return sum(1 for o in result.placed if o.side == Side.BUY)


class TestTrendPause:
    def test_resumes_after_clear_ticks_and_minimum_duration(self, exchange: FakeExchange) -> None:
        """Paused at 0m; clear at 2m and 4m is not enough, the third clear tick at 6m resumes."""
        seed_market(exchange)
        reconciler = GridReconciler(exchange, grid_config(), GovernorConfig(), RiskConfig())

        paused = _tick(reconciler, exchange, make_grid(), 0, trending_snapshot())
        assert paused.grid.buy_paused
        assert paused.grid.buy_pause_reason == PauseReason.TREND
        assert paused.grid.buy_paused_at == T0
        assert _buys(paused.grid) == []
        assert len(paused.placed) == 2

        grid = paused.grid
        for minute in (2, 4):
            result = _tick(reconciler, exchange, grid, minute)
            assert result.grid.buy_paused
            assert _placed_buys(result) == 0
            grid = result.grid
        assert grid.resume_streak == 2

        resumed = _tick(reconciler, exchange, grid, 6)
        assert not resumed.grid.buy_paused
        assert resumed.grid.buy_pause_reason == PauseReason.NONE
        assert _buys(resumed.grid) == [0, 1]
        assert _placed_buys(resumed) == 2

    def test_ticks_must_be_consecutive(self, exchange: FakeExchange) -> None:
        seed_market(exchange)
        reconciler = GridReconciler(exchange, grid_config(), GovernorConfig(), RiskConfig())
        neutral = IndicatorSnapshot.neutral("BTCUSDT", "1h", close=100.0)

        grid = _tick(reconciler, exchange, make_grid(), 0, trending_snapshot()).grid
        grid = _tick(reconciler, exchange, grid, 2).grid
        grid = _tick(reconciler, exchange, grid, 4, neutral).grid
        assert grid.resume_streak == 0
        grid = _tick(reconciler, exchange, grid, 6).grid
        grid = _tick(reconciler, exchange, grid, 8).grid
        assert grid.buy_paused
        grid = _tick(reconciler, exchange, grid, 10).grid
        assert not grid.buy_paused

    def test_pause_cancels_resting_buys(self, exchange: FakeExchange) -> None:
        seed_market(exchange)
        reconciler = GridReconciler(exchange, grid_config(), GovernorConfig(), RiskConfig())
        first = _tick(reconciler, exchange, make_grid(), 0)
        assert _buys(first.grid) == [0, 1]

        paused = _tick(reconciler, exchange, first.grid, 1, trending_snapshot())
        assert paused.grid.buy_paused
        assert _buys(paused.grid) == []
        assert {o.side for o in paused.cancelled} == {Side.BUY}
        assert len(paused.grid.orders_on_side(Side.SELL)) == 2


class TestLiquidityPause:
    def test_thin_market_pauses_then_resumes(self, exchange: FakeExchange) -> None:
        seed_market(exchange)
        reconciler = GridReconciler(exchange, grid_config(), GovernorConfig(), RiskConfig())
        first = _tick(reconciler, exchange, make_grid(), 0)
        assert _buys(first.grid) == [0, 1]

        exchange.stats["BTCUSDT"] = make_stats(quote_volume=500.0)
        paused = _tick(reconciler, exchange, first.grid, 1)
        assert paused.grid.buy_paused
        assert paused.grid.buy_pause_reason == PauseReason.LIQUIDITY
        assert paused.grid.buy_paused_at == T0 + timedelta(minutes=1)
        assert len(paused.cancelled) == 2
        assert _buys(paused.grid) == []

        exchange.stats["BTCUSDT"] = make_stats(quote_volume=50_000.0)
        grid = paused.grid
        for minute in (2, 3, 4):
            result = _tick(reconciler, exchange, grid, minute)
            assert result.grid.buy_paused
            assert _placed_buys(result) == 0
            grid = result.grid
        # Three clear ticks, but only three minutes paused.
        assert grid.resume_streak == 3

        resumed = _tick(reconciler, exchange, grid, 6)
        assert not resumed.grid.buy_paused
        assert _placed_buys(resumed) == 2

    def test_liquidity_guard_can_be_disabled(self, exchange: FakeExchange) -> None:
        seed_market(exchange, quote_volume=500.0)
        config = grid_config(buy_pause_on_liquidity=False)
        reconciler = GridReconciler(exchange, config, GovernorConfig(), RiskConfig())
        result = _tick(reconciler, exchange, make_grid(), 0)
        assert not result.grid.buy_paused
        assert _buys(result.grid) == [0, 1]
