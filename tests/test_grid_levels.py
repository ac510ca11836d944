"""Tests for grid range derivation and ladder construction."""

from __future__ import annotations

import pytest

from conftest import T0, make_candles, range_candles, trend_candles
from gridpilot.config.settings import GridConfig
from gridpilot.grid.levels import (
    GridBuildError,
    build_grid_state,
    clamp_levels_by_min_step,
    compute_auto_range,
    geometric_grid,
    is_stable_asset,
    looks_leverage_token,
    percentile,
)
from gridpilot.grid.models import GridStatus
from gridpilot.models import SymbolInfo, SymbolRules

RULES = SymbolRules(tick_size=0.01, step_size=0.0001, min_qty=0.0001, min_notional=5.0)


def _info(symbol: str = "BTCUSDT", base: str = "BTC", quote: str = "USDT", status: str = "TRADING") -> SymbolInfo:
    return SymbolInfo(symbol=symbol, base_asset=base, quote_asset=quote, status=status, rules=RULES)


def test_percentile_interpolates_and_ignores_nan() -> None:
    assert percentile([1.0, 2.0, 3.0, 4.0, 5.0], 0.5) == pytest.approx(3.0)
    assert percentile([1.0, float("nan"), 3.0], 1.0) == pytest.approx(3.0)
    assert percentile([], 0.5) is None


def test_geometric_grid_has_constant_ratio() -> None:
    prices = geometric_grid(100.0, 121.0, 3)
    assert prices == [pytest.approx(100.0), pytest.approx(110.0), pytest.approx(121.0)]


def test_clamp_levels_by_min_step() -> None:
    assert clamp_levels_by_min_step(100.0, 110.0, 50, 1.0) == 10
    assert clamp_levels_by_min_step(100.0, 110.0, 5, 1.0) == 5
    assert clamp_levels_by_min_step(100.0, 100.5, 12, 1.0) == 2


def test_asset_screens() -> None:
    assert is_stable_asset("usdc")
    assert is_stable_asset("USDX")
    assert not is_stable_asset("BTC")
    assert looks_leverage_token("BTCUP")
    assert looks_leverage_token("ethbear")
    assert not looks_leverage_token("BTC")
    assert not looks_leverage_token("JUP")


class TestAutoRange:
    def test_sideways_window(self) -> None:
        auto = compute_auto_range(range_candles())
        assert auto is not None
        assert auto.lower < 100.0 < auto.upper
        assert 3.0 < auto.range_pct < 25.0
        assert auto.trend_ratio < 0.6

    def test_trending_window_has_high_trend_ratio(self) -> None:
        auto = compute_auto_range(trend_candles(n=30, step_pct=0.3))
        assert auto is not None
        assert auto.trend_ratio > 0.6

    def test_empty_window(self) -> None:
        assert compute_auto_range(range_candles().iloc[0:0]) is None


class TestBuildGridState:
    def test_builds_running_ladder_inside_range(self) -> None:
        grid = build_grid_state(_info(), range_candles(), 250.0, GridConfig(levels=12), "usdt", T0)
        assert grid.status == GridStatus.RUNNING
        assert grid.symbol == "BTCUSDT"
        assert grid.home_asset == "USDT"
        assert 2 <= grid.levels <= 12
        assert list(grid.prices) == sorted(grid.prices)
        assert grid.lower_price - 0.01 <= grid.prices[0]
        assert grid.prices[-1] <= grid.upper_price
        assert grid.order_notional_home == pytest.approx(250.0 / (grid.levels - 1))
        assert grid.performance is not None
        assert grid.performance.quote_virtual == pytest.approx(250.0)
        assert grid.performance.base_virtual == 0.0
        assert grid.created_at == T0

    @pytest.mark.parametrize(
        ("info", "message"),
        [
            (_info(status="BREAK"), "not tradable"),
            (_info("ETHBTC", "ETH", "BTC"), "quote asset"),
            (_info("USDCUSDT", "USDC"), "stable-to-stable"),
            (_info("BTCUPUSDT", "BTCUP"), "leverage"),
        ],
    )
    def test_ineligible_symbols(self, info: SymbolInfo, message: str) -> None:
        with pytest.raises(GridBuildError, match=message):
            build_grid_state(info, range_candles(), 250.0, GridConfig(), "USDT", T0)

    def test_narrow_range_is_rejected(self) -> None:
        flat = make_candles([100.0] * 48, high_pct=0.2, low_pct=0.2)
        with pytest.raises(GridBuildError, match="Range"):
            build_grid_state(_info(), flat, 250.0, GridConfig(), "USDT", T0)

    def test_trending_window_is_rejected(self) -> None:
        with pytest.raises(GridBuildError, match="Trend ratio"):
            build_grid_state(_info(), trend_candles(n=30, step_pct=0.3), 250.0, GridConfig(), "USDT", T0)

    def test_missing_candles_are_rejected(self) -> None:
        with pytest.raises(GridBuildError, match="auto range"):
            build_grid_state(_info(), range_candles().iloc[0:0], 250.0, GridConfig(), "USDT", T0)
