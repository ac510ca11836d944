"""Tests for ADX/EMA regime classification."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from gridpilot.config.settings import RegimeConfig
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.models import Side
from gridpilot.strategy.regime import RegimeClassifier, RegimeType


def _snap(adx: float | None, ema20: float | None = 101.0, ema50: float | None = 100.0) -> IndicatorSnapshot:
    return IndicatorSnapshot(
        symbol="BTCUSDT",
        interval="1h",
        as_of=None,
        close=100.0,
        volume=1.0,
        adx14=adx,
        ema20=ema20,
        ema50=ema50,
    )


class TestRegimeClassifier:
    """Threshold behaviour of the classifier."""

    def test_trend_with_bullish_bias(self) -> None:
        """ADX above the trend threshold with EMA20 > EMA50 is a bullish trend."""
        result = RegimeClassifier().classify(_snap(30.0))
        assert result.regime == RegimeType.TREND
        assert result.bias == Side.BUY
        assert not result.is_bearish_trend

    def test_trend_with_bearish_bias(self) -> None:
        """EMA20 below EMA50 flips the bias."""
        result = RegimeClassifier().classify(_snap(30.0, ema20=99.0, ema50=100.0))
        assert result.regime == RegimeType.TREND
        assert result.is_bearish_trend

    def test_equal_emas_are_not_a_trend(self) -> None:
        """A strong ADX without EMA separation stays neutral."""
        result = RegimeClassifier().classify(_snap(30.0, ema20=100.0, ema50=100.0))
        assert result.regime == RegimeType.NEUTRAL

    def test_low_adx_is_range(self) -> None:
        result = RegimeClassifier().classify(_snap(12.0))
        assert result.regime == RegimeType.RANGE
        assert result.bias is None

    def test_between_thresholds_is_neutral(self) -> None:
        result = RegimeClassifier().classify(_snap(19.0))
        assert result.regime == RegimeType.NEUTRAL

    def test_threshold_values_are_exclusive(self) -> None:
        """ADX exactly at either threshold classifies as neutral."""
        classifier = RegimeClassifier(RegimeConfig(trend_adx_min=20.0, range_adx_max=18.0))
        assert classifier.classify(_snap(20.0)).regime == RegimeType.NEUTRAL
        assert classifier.classify(_snap(18.0)).regime == RegimeType.NEUTRAL

    def test_missing_inputs_are_neutral(self) -> None:
        classifier = RegimeClassifier()
        assert classifier.classify(_snap(None)).regime == RegimeType.NEUTRAL
        assert classifier.classify(_snap(30.0, ema50=None)).regime == RegimeType.NEUTRAL
        assert classifier.classify(IndicatorSnapshot.neutral("BTCUSDT", "1h")).regime == RegimeType.NEUTRAL


def test_regime_config_rejects_inverted_thresholds() -> None:
    with pytest.raises(ValidationError):
        RegimeConfig(trend_adx_min=15.0, range_adx_max=25.0)
