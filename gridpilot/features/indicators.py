"""Technical indicator calculations.

Every function returns the latest indicator value, or ``None`` when the
history is too short for the indicator to be defined.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Sequence

import numpy as np
import pandas as pd

REQUIRED_COLUMNS = {"open", "high", "low", "close", "volume"}


def _as_array(values: pd.Series | Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def _true_range(df: pd.DataFrame) -> np.ndarray:
    """Per-bar true range; the first bar has no previous close and uses high-low."""
    high = df["high"]
    low = df["low"]
    prev_close = df["close"].shift(1)
    true_range = pd.concat(
        [
            high - low,
            (high - prev_close).abs(),
            (low - prev_close).abs(),
        ],
        axis=1,
    ).max(axis=1)
    return true_range.to_numpy(dtype=float)


def calculate_ema(series: pd.Series | Sequence[float], period: int) -> float | None:
    """Exponential moving average seeded with the simple mean of the first ``period`` values."""
    values = _as_array(series)
    if period <= 0 or len(values) < period:
        return None
    alpha = 2.0 / (period + 1)
    ema = float(values[:period].mean())
    for value in values[period:]:
        ema = value * alpha + ema * (1 - alpha)
    return float(ema)


def calculate_rsi(series: pd.Series | Sequence[float], period: int = 14) -> float | None:
    """Relative Strength Index with Wilder smoothing.

    A series with no movement at all reads 50; a series with gains and no
    losses reads 100.
    """
    closes = _as_array(series)
    if period <= 0 or len(closes) < period + 1:
        return None
    diffs = np.diff(closes)
    gains = np.clip(diffs, 0.0, None)
    losses = np.clip(-diffs, 0.0, None)
    avg_gain = float(gains[:period].sum()) / period
    avg_loss = float(losses[:period].sum()) / period
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
    if avg_gain == 0 and avg_loss == 0:
        return 50.0
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def calculate_atr(df: pd.DataFrame, period: int = 14) -> float | None:
    """Average True Range with Wilder smoothing."""
    if period <= 0 or len(df) < period + 1:
        return None
    true_range = _true_range(df)
    atr = float(true_range[1 : period + 1].mean())
    for value in true_range[period + 1 :]:
        atr = (atr * (period - 1) + value) / period
    return float(atr)


def calculate_adx(df: pd.DataFrame, period: int = 14) -> float | None:
    """Average Directional Index - measures trend strength (0-100).

    Needs at least ``2 * period`` candles. True range and directional movement
    are Wilder-smoothed from a plain sum over the first ``period`` bars; ADX is
    the mean of the first ``period`` DX values, smoothed thereafter.
    """
    if period <= 0 or len(df) < 2 * period:
        return None
    high = df["high"].to_numpy(dtype=float)
    low = df["low"].to_numpy(dtype=float)

    true_range = _true_range(df)[1:]
    up_move = high[1:] - high[:-1]
    down_move = low[:-1] - low[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

    tr_smooth = float(true_range[:period].sum())
    plus_smooth = float(plus_dm[:period].sum())
    minus_smooth = float(minus_dm[:period].sum())

    dx_values: list[float] = []
    for i in range(period - 1, len(true_range)):
        if i >= period:
            tr_smooth = tr_smooth - tr_smooth / period + true_range[i]
            plus_smooth = plus_smooth - plus_smooth / period + plus_dm[i]
            minus_smooth = minus_smooth - minus_smooth / period + minus_dm[i]
        plus_di = 100 * plus_smooth / tr_smooth if tr_smooth else 0.0
        minus_di = 100 * minus_smooth / tr_smooth if tr_smooth else 0.0
        denom = plus_di + minus_di
        dx_values.append(100 * abs(plus_di - minus_di) / denom if denom else 0.0)

    if len(dx_values) < period:
        return None
    adx = sum(dx_values[:period]) / period
    for dx in dx_values[period:]:
        adx = (adx * (period - 1) + dx) / period
    return float(adx)


@dataclass(frozen=True)
class BollingerBands:
    middle: float
    upper: float
    lower: float
    std_dev: float


def calculate_bollinger(
    series: pd.Series | Sequence[float],
    period: int = 20,
    multiplier: float = 2.0,
) -> BollingerBands | None:
    """Bollinger bands over the trailing ``period`` closes, using population stdev."""
    closes = _as_array(series)
    if period <= 0 or len(closes) < period:
        return None
    window = closes[-period:]
    middle = float(window.mean())
    std_dev = float(window.std(ddof=0))
    return BollingerBands(
        middle=middle,
        upper=middle + std_dev * multiplier,
        lower=middle - std_dev * multiplier,
        std_dev=std_dev,
    )


def calculate_volume_sma(volume: pd.Series | Sequence[float], period: int = 20) -> float | None:
    """Simple moving average of the trailing ``period`` volumes."""
    values = _as_array(volume)
    if period <= 0 or len(values) < period:
        return None
    return float(values[-period:].mean())


def calculate_volume_ratio(volume: float, avg_volume: float | None) -> float | None:
    """Current volume relative to its average; ``None`` when the average is unusable."""
    if avg_volume is None or not np.isfinite(avg_volume) or avg_volume <= 0:
        return None
    return float(volume / avg_volume)


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Latest indicator readings for one symbol/interval."""

    symbol: str
    interval: str
    as_of: datetime | None
    close: float
    volume: float
    avg_volume20: float | None = None
    ema20: float | None = None
    ema50: float | None = None
    rsi14: float | None = None
    atr14: float | None = None
    adx14: float | None = None
    bb20: BollingerBands | None = None

    @classmethod
    def neutral(
        cls,
        symbol: str,
        interval: str,
        close: float = 0.0,
        volume: float = 0.0,
        as_of: datetime | None = None,
    ) -> IndicatorSnapshot:
        """Fallback snapshot with every indicator absent."""
        return cls(symbol=symbol.upper(), interval=interval, as_of=as_of, close=close, volume=volume)

    @property
    def is_neutral(self) -> bool:
        return all(
            v is None
            for v in (self.ema20, self.ema50, self.rsi14, self.atr14, self.adx14, self.bb20)
        )

    @property
    def volume_ratio(self) -> float | None:
        return calculate_volume_ratio(self.volume, self.avg_volume20)

    def atr_pct(self, price: float | None = None) -> float | None:
        """ATR as a percent of ``price`` (defaults to the last close)."""
        ref = price if price is not None else self.close
        if self.atr14 is None or not ref or ref <= 0:
            return None
        return self.atr14 / ref * 100

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat() if self.as_of else None
        return data


def compute_indicator_snapshot(symbol: str, interval: str, candles: pd.DataFrame) -> IndicatorSnapshot:
    """Compute the standard indicator set from an OHLCV frame (oldest first).

    The frame is expected to be indexed by candle close time, as produced by
    ``klines_to_frame``.
    """
    missing = REQUIRED_COLUMNS.difference(candles.columns)
    if missing:
        raise ValueError(f"missing_columns: {sorted(missing)}")
    if candles.empty:
        return IndicatorSnapshot.neutral(symbol, interval)

    as_of: datetime | None = None
    if isinstance(candles.index, pd.DatetimeIndex):
        as_of = candles.index[-1].to_pydatetime()

    closes = candles["close"]
    return IndicatorSnapshot(
        symbol=symbol.upper(),
        interval=interval,
        as_of=as_of,
        close=float(closes.iloc[-1]),
        volume=float(candles["volume"].iloc[-1]),
        avg_volume20=calculate_volume_sma(candles["volume"], 20),
        ema20=calculate_ema(closes, 20),
        ema50=calculate_ema(closes, 50),
        rsi14=calculate_rsi(closes, 14),
        atr14=calculate_atr(candles, 14),
        adx14=calculate_adx(candles, 14),
        bb20=calculate_bollinger(closes, 20, 2.0),
    )
