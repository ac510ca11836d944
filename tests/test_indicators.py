"""Tests for indicator calculations and snapshots."""

from __future__ import annotations

import pandas as pd
import pytest

from conftest import T0, choppy_candles, make_candles, range_candles, trend_candles
from gridpilot.features.indicators import (
    IndicatorSnapshot,
    calculate_adx,
    calculate_atr,
    calculate_bollinger,
    calculate_ema,
    calculate_rsi,
    calculate_volume_ratio,
    calculate_volume_sma,
    compute_indicator_snapshot,
)


class TestMovingAverages:
    """EMA and volume SMA."""

    def test_ema_seeds_with_simple_mean(self) -> None:
        """EMA(3) of 1..5 seeds at 2 and smooths with alpha 0.5."""
        assert calculate_ema([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)

    def test_ema_short_history_is_undefined(self) -> None:
        assert calculate_ema([1, 2], 3) is None

    def test_volume_sma_uses_trailing_window(self) -> None:
        volume = pd.Series([10.0] * 5 + [20.0] * 20)
        assert calculate_volume_sma(volume, 20) == pytest.approx(20.0)
        assert calculate_volume_sma([1.0, 2.0], 20) is None

    def test_volume_ratio_guards_bad_average(self) -> None:
        assert calculate_volume_ratio(150.0, 100.0) == pytest.approx(1.5)
        assert calculate_volume_ratio(150.0, 0.0) is None
        assert calculate_volume_ratio(150.0, None) is None


class TestOscillators:
    """RSI, ATR, ADX and Bollinger."""

    def test_rsi_flat_series_reads_fifty(self) -> None:
        assert calculate_rsi([100.0] * 30) == pytest.approx(50.0)

    def test_rsi_only_gains_reads_hundred(self) -> None:
        assert calculate_rsi([float(i) for i in range(1, 31)]) == pytest.approx(100.0)

    def test_rsi_short_history_is_undefined(self) -> None:
        assert calculate_rsi([1.0] * 14) is None

    def test_atr_constant_range(self) -> None:
        frame = pd.DataFrame(
            {
                "open": [100.0] * 20,
                "high": [101.0] * 20,
                "low": [99.0] * 20,
                "close": [100.0] * 20,
                "volume": [1.0] * 20,
            }
        )
        assert calculate_atr(frame, 14) == pytest.approx(2.0)

    def test_adx_needs_two_periods(self) -> None:
        assert calculate_adx(trend_candles(n=27), 14) is None

    def test_adx_is_high_for_clean_uptrend(self) -> None:
        adx = calculate_adx(trend_candles(n=80, step_pct=1.0), 14)
        assert adx is not None
        assert adx > 90

    def test_adx_is_low_for_choppy_market(self) -> None:
        adx = calculate_adx(choppy_candles(), 14)
        assert adx is not None
        assert adx < 20

    def test_bollinger_flat_series_collapses(self) -> None:
        bands = calculate_bollinger([50.0] * 25)
        assert bands is not None
        assert bands.upper == bands.lower == bands.middle == pytest.approx(50.0)
        assert calculate_bollinger([50.0] * 5) is None


class TestSnapshot:
    """compute_indicator_snapshot and the neutral fallback."""

    def test_snapshot_fills_every_field(self) -> None:
        candles = range_candles(n=120)
        snap = compute_indicator_snapshot("btcusdt", "1h", candles)
        assert snap.symbol == "BTCUSDT"
        assert snap.as_of == T0
        assert snap.close == pytest.approx(float(candles["close"].iloc[-1]))
        for value in (snap.ema20, snap.ema50, snap.rsi14, snap.atr14, snap.adx14, snap.avg_volume20):
            assert value is not None
        assert snap.bb20 is not None
        assert not snap.is_neutral
        assert snap.volume_ratio == pytest.approx(1.0)

    def test_short_history_leaves_long_indicators_empty(self) -> None:
        snap = compute_indicator_snapshot("ETHUSDT", "15m", make_candles([100.0 + i for i in range(25)]))
        assert snap.ema20 is not None
        assert snap.ema50 is None
        assert snap.adx14 is None

    def test_flat_market_has_no_range_or_trend(self) -> None:
        candles = make_candles([250.0] * 80, high_pct=0.0, low_pct=0.0)
        assert calculate_atr(candles, 14) == 0.0
        assert calculate_adx(candles, 14) == 0.0
        snap = compute_indicator_snapshot("BTCUSDT", "1h", candles)
        assert snap.atr14 == 0.0
        assert snap.adx14 == 0.0
        assert snap.ema20 == pytest.approx(250.0)
        assert snap.ema50 == pytest.approx(250.0)
        assert snap.close == 250.0
        assert snap.atr_pct() == 0.0

    def test_missing_columns_raise(self) -> None:
        frame = pd.DataFrame({"close": [1.0, 2.0]})
        with pytest.raises(ValueError, match="missing_columns"):
            compute_indicator_snapshot("BTCUSDT", "1h", frame)

    def test_empty_frame_is_neutral(self) -> None:
        frame = pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
        snap = compute_indicator_snapshot("BTCUSDT", "1h", frame)
        assert snap.is_neutral

    def test_neutral_snapshot_carries_fallbacks(self) -> None:
        snap = IndicatorSnapshot.neutral("solusdt", "4h", close=20.0, volume=5.0)
        assert snap.symbol == "SOLUSDT"
        assert snap.is_neutral
        assert snap.close == 20.0
        assert snap.atr_pct() is None
        assert snap.volume_ratio is None

    def test_atr_pct_uses_reference_price(self) -> None:
        snap = IndicatorSnapshot(symbol="X", interval="1h", as_of=None, close=200.0, volume=0.0, atr14=4.0)
        assert snap.atr_pct() == pytest.approx(2.0)
        assert snap.atr_pct(100.0) == pytest.approx(4.0)
