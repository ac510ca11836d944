"""Market regime detection from ADX and EMA alignment."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from gridpilot.config.settings import RegimeConfig
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.models import Side


class RegimeType(str, Enum):
    """Market regime types."""

    TREND = "TREND"
    RANGE = "RANGE"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class RegimeClassification:
    """Result of regime classification."""

    regime: RegimeType
    bias: Side | None = None
    adx: float | None = None

    @property
    def is_bearish_trend(self) -> bool:
        return self.regime == RegimeType.TREND and self.bias == Side.SELL


class RegimeClassifier:
    """Classify the market regime of an indicator snapshot."""

    def __init__(self, config: RegimeConfig | None = None) -> None:
        self.config = config or RegimeConfig()

    def classify(self, snapshot: IndicatorSnapshot) -> RegimeClassification:
        """Classify the current market regime.

        Args:
            snapshot: Indicator snapshot; ADX, EMA20 and EMA50 are consulted.

        Returns:
            TREND (with BUY/SELL bias from EMA20 vs EMA50) when ADX is above the
            trend threshold and the EMAs differ, RANGE when ADX is below the
            range threshold, NEUTRAL otherwise or when any input is missing.
        """
        adx = snapshot.adx14
        ema20 = snapshot.ema20
        ema50 = snapshot.ema50
        if adx is None or ema20 is None or ema50 is None:
            return RegimeClassification(regime=RegimeType.NEUTRAL, adx=adx)
        if adx > self.config.trend_adx_min and ema20 != ema50:
            bias = Side.BUY if ema20 > ema50 else Side.SELL
            return RegimeClassification(regime=RegimeType.TREND, bias=bias, adx=adx)
        if adx < self.config.range_adx_max:
            return RegimeClassification(regime=RegimeType.RANGE, adx=adx)
        return RegimeClassification(regime=RegimeType.NEUTRAL, adx=adx)
