"""Grid range derivation and level construction."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import pandas as pd

from gridpilot.config.settings import GridConfig
from gridpilot.grid.models import GridPerformance, GridState, GridStatus
from gridpilot.models import SymbolInfo
from gridpilot.risk.sizing import floor_to_step


class GridBuildError(ValueError):
    """Raised when a grid cannot be built for a symbol."""


STABLE_ASSETS = frozenset(
    {"USD", "EUR", "GBP", "USDT", "USDC", "BUSD", "TUSD", "FDUSD", "DAI", "USDP", "USDD"}
)
LEVERAGE_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR")


def is_stable_asset(asset: str) -> bool:
    upper = asset.upper()
    return upper in STABLE_ASSETS or (upper.startswith("USD") and len(upper) <= 4)


def looks_leverage_token(base_asset: str) -> bool:
    upper = base_asset.upper()
    return len(upper) > len("DOWN") and upper.endswith(LEVERAGE_SUFFIXES)


def percentile(values: pd.Series | list[float], p: float) -> float | None:
    """Linearly interpolated percentile, ``p`` in [0, 1]; non-finite values are ignored."""
    arr = np.asarray(values, dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return None
    return float(np.quantile(arr, min(1.0, max(0.0, p))))


def geometric_grid(lower: float, upper: float, levels: int) -> list[float]:
    if levels < 2:
        return [lower, upper]
    ratio = (upper / lower) ** (1 / (levels - 1))
    return [lower * ratio**i for i in range(levels)]


@dataclass(frozen=True)
class AutoRange:
    lower: float
    upper: float
    mid: float
    range_pct: float
    trend_pct: float
    trend_ratio: float
    last_close: float


def compute_auto_range(candles: pd.DataFrame) -> AutoRange | None:
    """Derive a ladder range from p10 of lows and p90 of highs.

    ``trend_ratio`` compares the net open-to-close move over the window with
    the range width; a ratio near 1 means the window was one long trend.
    """
    if candles.empty:
        return None
    lower = percentile(candles["low"], 0.1)
    upper = percentile(candles["high"], 0.9)
    if not lower or not upper or lower <= 0 or upper <= lower:
        return None
    mid = (lower + upper) / 2
    range_pct = (upper - lower) / mid * 100
    first_open = float(candles["open"].iloc[0])
    last_close = float(candles["close"].iloc[-1])
    if not math.isfinite(last_close):
        return None
    trend_pct = abs(last_close - first_open) / mid * 100
    trend_ratio = trend_pct / range_pct if range_pct > 0 else 1.0
    return AutoRange(
        lower=lower,
        upper=upper,
        mid=mid,
        range_pct=range_pct,
        trend_pct=trend_pct,
        trend_ratio=trend_ratio,
        last_close=last_close,
    )


def clamp_levels_by_min_step(lower: float, upper: float, requested: int, min_step_pct: float) -> int:
    """Reduce the level count until adjacent levels are at least ``min_step_pct`` apart."""
    levels = max(2, int(requested))
    min_step = max(0.01, min_step_pct)
    while levels > 2:
        ratio = (upper / lower) ** (1 / (levels - 1))
        if (ratio - 1) * 100 >= min_step:
            break
        levels -= 1
    return levels


def build_grid_state(
    info: SymbolInfo,
    candles: pd.DataFrame,
    allocation_home: float,
    config: GridConfig,
    home_asset: str,
    now: datetime,
) -> GridState:
    """Build a fresh running grid for ``info`` from recent candles.

    Raises:
        GridBuildError: The symbol is not eligible or the range is unusable.
    """
    home = home_asset.upper()
    symbol = info.symbol.upper()
    if not info.is_trading:
        raise GridBuildError(f"Symbol {symbol} not tradable on spot")
    if info.quote_asset.upper() != home:
        raise GridBuildError(f"Grid requires quote asset {home}; {symbol} quote is {info.quote_asset}")
    if is_stable_asset(info.base_asset) and is_stable_asset(info.quote_asset):
        raise GridBuildError("Grid disabled for stable-to-stable pairs")
    if looks_leverage_token(info.base_asset):
        raise GridBuildError("Grid disabled for leverage tokens")

    auto = compute_auto_range(candles)
    if auto is None:
        raise GridBuildError("Unable to derive auto range from klines")
    if not config.min_range_pct <= auto.range_pct <= config.max_range_pct:
        raise GridBuildError(
            f"Range {auto.range_pct:.2f}% outside {config.min_range_pct}-{config.max_range_pct}%"
        )
    if auto.trend_ratio > config.max_trend_ratio:
        raise GridBuildError(
            f"Trend ratio {auto.trend_ratio:.2f} above cap {config.max_trend_ratio}"
        )

    levels = clamp_levels_by_min_step(auto.lower, auto.upper, config.levels, config.min_step_pct)
    prices = [floor_to_step(p, info.rules.tick_size) for p in geometric_grid(auto.lower, auto.upper, levels)]
    prices = sorted({p for p in prices if math.isfinite(p) and p > 0})
    if len(prices) < 2:
        raise GridBuildError("Grid levels collapse after tick rounding")

    allocation = max(0.0, allocation_home)
    return GridState(
        symbol=symbol,
        base_asset=info.base_asset.upper(),
        quote_asset=info.quote_asset.upper(),
        home_asset=home,
        lower_price=auto.lower,
        upper_price=auto.upper,
        prices=tuple(prices),
        order_notional_home=allocation / max(1, len(prices) - 1),
        allocation_home=allocation,
        bootstrap_base_pct=config.bootstrap_base_pct,
        created_at=now,
        updated_at=now,
        status=GridStatus.RUNNING,
        performance=GridPerformance.initial(allocation, now),
    )
