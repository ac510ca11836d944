"""Confidence sub-scores for strategy plans."""

from __future__ import annotations

from dataclasses import dataclass

from gridpilot.strategy.regime import RegimeType


def _clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    return max(min_val, min(max_val, value))


def volume_score(volume_ratio: float | None) -> float:
    """Volume vs its 20-period average; unknown volume scores a neutral 0.5."""
    if volume_ratio is None:
        return 0.5
    return _clamp((volume_ratio - 0.8) / 0.8)


def adx_score(adx: float | None) -> float:
    if adx is None:
        return 0.0
    return _clamp((adx - 18) / 22)


def rsi_score(rsi: float | None, regime: RegimeType) -> float:
    """Trend entries prefer RSI near 57.5; other regimes reward oversold readings."""
    if rsi is None:
        return 0.0
    if regime == RegimeType.TREND:
        return _clamp(1 - abs(rsi - 57.5) / 12.5)
    return _clamp((35 - rsi) / 15)


def invalidation_score(entry: float, stop: float | None, atr: float | None) -> float:
    """Tighter stops relative to ATR score higher."""
    if atr is None or atr <= 0 or stop is None:
        return 0.25
    return _clamp(1 - abs(entry - stop) / (2 * atr))


@dataclass(frozen=True)
class ConfidenceScore:
    adx: float
    rsi: float
    volume: float
    invalidation: float

    @property
    def base(self) -> float:
        return (self.adx + self.rsi + self.volume + self.invalidation) / 4

    def confidence(self, entry_ok: bool) -> float:
        """Map the base score to [0.2, 1.0] for valid entries, else to at most 0.5."""
        if entry_ok:
            return 0.2 + 0.8 * self.base
        return min(0.15 + 0.35 * self.base, 0.5)
