"""Trend and liquidity buy-pause guards.

Both guards are pure: they read the market price, an indicator snapshot and
the grid's previous pause state, and return readings that ``update_buy_pause``
folds into the next pause state. The trend guard is evaluated before the
liquidity guard, so a tick that breaches both reports ``trend``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime

from gridpilot.config.settings import GovernorConfig, GridConfig
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.grid.models import GridState, PauseReason


@dataclass(frozen=True)
class GuardReading:
    """One guard's verdict for a tick.

    ``breach`` pauses (or keeps paused). ``clear`` counts toward resuming.
    A reading can be neither, e.g. when indicators are unavailable; such a
    tick does not extend a resume streak.
    """

    breach: bool
    clear: bool
    detail: str = ""


@dataclass(frozen=True)
class TrendGuardReading(GuardReading):
    breakdown_streak: int = 0


def evaluate_trend_guard(
    price: float,
    snapshot: IndicatorSnapshot,
    lower_price: float,
    prev_breakdown_streak: int,
    config: GridConfig,
    governor: GovernorConfig,
) -> TrendGuardReading:
    """Trend guard: ADX above the trend-on threshold, a sustained breakdown, or an ATR spike."""
    if not config.guard_enabled:
        return TrendGuardReading(breach=False, clear=True)
    if not math.isfinite(price) or price <= 0:
        return TrendGuardReading(breach=False, clear=False, breakdown_streak=prev_breakdown_streak)

    adx = snapshot.adx14 if snapshot.adx14 is not None and math.isfinite(snapshot.adx14) else None
    bb = snapshot.bb20
    atr_pct = snapshot.atr_pct(price)

    floor_ref = bb.lower if bb is not None else lower_price
    below = floor_ref > 0 and price < floor_ref * (1 - config.breakdown_pct / 100)
    streak = prev_breakdown_streak + 1 if below else 0
    breakdown = streak >= config.breakdown_ticks
    vol_spike = config.atr_pct_max > 0 and atr_pct is not None and atr_pct >= config.atr_pct_max
    trending = adx is not None and adx >= governor.trend_adx_on

    details = []
    if trending:
        details.append(f"ADX {adx:.1f} >= {governor.trend_adx_on:.1f}")
    if breakdown:
        details.append(f"breakdown below {floor_ref:.8g} for {streak} ticks")
    if vol_spike:
        details.append(f"ATR% {atr_pct:.2f} >= {config.atr_pct_max:.2f}")

    inside_bands = bb is None or bb.lower <= price <= bb.upper
    clear = (
        not snapshot.is_neutral
        and (adx is None or adx <= governor.trend_adx_off)
        and not below
        and not vol_spike
        and inside_bands
    )
    return TrendGuardReading(
        breach=trending or breakdown or vol_spike,
        clear=clear,
        detail="; ".join(details),
        breakdown_streak=streak,
    )


def evaluate_liquidity_guard(quote_volume: float, config: GridConfig) -> GuardReading:
    """Liquidity guard: 24h quote volume below the configured minimum."""
    if not config.buy_pause_on_liquidity or config.min_quote_volume <= 0:
        return GuardReading(breach=False, clear=True)
    if not math.isfinite(quote_volume):
        return GuardReading(breach=False, clear=False)
    if quote_volume < config.min_quote_volume:
        return GuardReading(
            breach=True,
            clear=False,
            detail=f"quote volume {quote_volume:.0f} < {config.min_quote_volume:.0f}",
        )
    return GuardReading(breach=False, clear=True)


def update_buy_pause(
    grid: GridState,
    trend: TrendGuardReading,
    liquidity: GuardReading,
    config: GridConfig,
    now: datetime,
) -> GridState:
    """Fold this tick's guard readings into the grid's pause state.

    A breach pauses immediately (keeping the original ``buy_paused_at`` when
    already paused) and zeroes the resume streak. While paused, a tick where
    the pausing guard reads clear extends the streak; any other tick resets
    it. Buys resume once the streak reaches the guard's tick threshold and the
    guard's minimum pause duration has elapsed.
    """
    grid = replace(grid, breakdown_streak=trend.breakdown_streak)

    if trend.breach:
        reason = PauseReason.TREND
    elif liquidity.breach:
        reason = PauseReason.LIQUIDITY
    else:
        reason = PauseReason.NONE

    if reason != PauseReason.NONE:
        return replace(
            grid,
            buy_paused=True,
            buy_pause_reason=reason,
            buy_paused_at=grid.buy_paused_at if grid.buy_paused and grid.buy_paused_at else now,
            resume_streak=0,
        )

    if not grid.buy_paused:
        return replace(grid, buy_pause_reason=PauseReason.NONE, buy_paused_at=None, resume_streak=0)

    if grid.buy_pause_reason == PauseReason.LIQUIDITY:
        good = liquidity.clear
        needed_ticks = config.liquidity_resume_ticks
        needed_minutes = config.liquidity_resume_minutes
    else:
        good = trend.clear
        needed_ticks = config.resume_ticks
        needed_minutes = config.resume_minutes

    streak = grid.resume_streak + 1 if good else 0
    paused_at = grid.buy_paused_at or now
    elapsed_minutes = (now - paused_at).total_seconds() / 60
    if streak >= needed_ticks and elapsed_minutes >= needed_minutes:
        return replace(
            grid,
            buy_paused=False,
            buy_pause_reason=PauseReason.NONE,
            buy_paused_at=None,
            resume_streak=0,
        )
    return replace(grid, buy_paused_at=paused_at, resume_streak=streak)
