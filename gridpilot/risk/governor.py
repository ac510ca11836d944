"""Risk governor: a NORMAL/CAUTION/HALT hysteresis state machine.

``evaluate_risk_governor`` is a pure function of the previous decision, the
current metrics and an injected clock. Escalation happens on the tick a
threshold is breached; de-escalation waits until no trigger is active *and*
the current state has been held for its minimum dwell time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from gridpilot.config.settings import GovernorConfig, GridConfig
from gridpilot.connectors.exchange import ExchangeClient
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.features.pipeline import FeaturePipeline
from gridpilot.monitoring.metrics import Metrics
from gridpilot.risk.equity import (
    AssetPricer,
    DailyBaseline,
    EquityPoint,
    RiskGovernorSnapshot,
    compute_equity_home,
    compute_fee_burn_pct,
    percent_drawdown,
    push_ring,
)

log = structlog.get_logger(__name__)


class RiskState(str, Enum):
    NORMAL = "NORMAL"
    CAUTION = "CAUTION"
    HALT = "HALT"


_RANK = {RiskState.NORMAL: 0, RiskState.CAUTION: 1, RiskState.HALT: 2}


class ReasonCode(str, Enum):
    DRAWDOWN_DAILY = "drawdown_daily"
    DRAWDOWN_ROLLING = "drawdown_rolling"
    TREND = "trend"
    FEE_BURN = "fee_burn"
    # Context only; these never move the state on their own.
    VOL_SPIKE = "vol_spike"
    BOLLINGER_BREAK = "bollinger_break"


_TRIGGER_CODES = frozenset(
    {ReasonCode.DRAWDOWN_DAILY, ReasonCode.DRAWDOWN_ROLLING, ReasonCode.TREND, ReasonCode.FEE_BURN}
)


@dataclass(frozen=True)
class GovernorReason:
    code: ReasonCode
    detail: str


@dataclass(frozen=True)
class TrendSignal:
    adx: float | None = None
    atr_pct: float | None = None
    bollinger_break: bool | None = None
    ema_aligned: bool | None = None

    @classmethod
    def from_snapshot(cls, snapshot: IndicatorSnapshot) -> TrendSignal:
        price = snapshot.close
        bb = snapshot.bb20
        ema_aligned = None
        if snapshot.ema20 is not None and snapshot.ema50 is not None:
            ema_aligned = snapshot.ema20 != snapshot.ema50
        bollinger_break = None
        if bb is not None and price > 0:
            bollinger_break = price > bb.upper or price < bb.lower
        return cls(
            adx=snapshot.adx14,
            atr_pct=snapshot.atr_pct(),
            bollinger_break=bollinger_break,
            ema_aligned=ema_aligned,
        )


@dataclass(frozen=True)
class RiskGovernorDecision:
    state: RiskState
    since: datetime
    reasons: tuple[GovernorReason, ...] = field(default_factory=tuple)
    trending: bool = False
    grid_buy_paused_global: bool = False

    @property
    def entries_paused(self) -> bool:
        return self.state != RiskState.NORMAL

    @classmethod
    def default(cls, now: datetime) -> RiskGovernorDecision:
        return cls(state=RiskState.NORMAL, since=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "since": self.since.isoformat(),
            "entries_paused": self.entries_paused,
            "grid_buy_paused_global": self.grid_buy_paused_global,
            "trending": self.trending,
            "reasons": [{"code": r.code.value, "detail": r.detail} for r in self.reasons],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RiskGovernorDecision:
        return cls(
            state=RiskState(data["state"]),
            since=datetime.fromisoformat(data["since"]),
            reasons=tuple(
                GovernorReason(code=ReasonCode(r["code"]), detail=str(r.get("detail", "")))
                for r in data.get("reasons", [])
            ),
            trending=bool(data.get("trending", False)),
            grid_buy_paused_global=bool(data.get("grid_buy_paused_global", False)),
        )


def _finite(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


def evaluate_risk_governor(
    *,
    now: datetime,
    prev: RiskGovernorDecision | None,
    equity: float | None,
    daily_baseline: float | None,
    rolling_baseline: float | None,
    fee_burn_pct: float | None,
    trend: TrendSignal | None,
    config: GovernorConfig,
    vol_spike_floor_pct: float = 0.0,
) -> RiskGovernorDecision:
    """Compute the next governor decision.

    Non-finite or missing metrics count as "no trigger". ``since`` moves only
    when the state value changes.
    """
    dd_daily = percent_drawdown(_finite(daily_baseline), _finite(equity))
    dd_rolling = percent_drawdown(_finite(rolling_baseline), _finite(equity))
    fee_burn = _finite(fee_burn_pct)

    dd_caution = max(0.0, config.drawdown_caution_pct)
    dd_halt = max(0.0, config.drawdown_halt_pct)
    fee_caution = max(0.0, config.fee_burn_caution_pct)
    fee_halt = max(0.0, config.fee_burn_halt_pct)

    trend = trend or TrendSignal()
    adx = _finite(trend.adx)
    atr_pct = _finite(trend.atr_pct)
    was_trending = prev.trending if prev else False
    trending = adx is not None and (
        (adx >= config.trend_adx_on and trend.ema_aligned is not False)
        or (was_trending and adx > config.trend_adx_off)
    )

    reasons: list[GovernorReason] = []
    if dd_caution > 0 and dd_daily >= dd_caution:
        reasons.append(
            GovernorReason(
                ReasonCode.DRAWDOWN_DAILY,
                f"Daily drawdown {dd_daily:.2f}% >= {dd_caution:.2f}%",
            )
        )
    if dd_caution > 0 and dd_rolling >= dd_caution:
        reasons.append(
            GovernorReason(
                ReasonCode.DRAWDOWN_ROLLING,
                f"Rolling drawdown {dd_rolling:.2f}% >= {dd_caution:.2f}%",
            )
        )
    if trending:
        reasons.append(
            GovernorReason(
                ReasonCode.TREND,
                f"Trend regime: ADX {adx:.1f} (on {config.trend_adx_on:.1f} / off {config.trend_adx_off:.1f})",
            )
        )
    if fee_caution > 0 and fee_burn is not None and fee_burn >= fee_caution:
        reasons.append(
            GovernorReason(ReasonCode.FEE_BURN, f"Fee burn {fee_burn:.2f}% >= {fee_caution:.2f}%")
        )
    spike_threshold = max(config.vol_spike_atr_pct, vol_spike_floor_pct)
    if atr_pct is not None and atr_pct > 0 and spike_threshold > 0 and atr_pct >= spike_threshold:
        reasons.append(GovernorReason(ReasonCode.VOL_SPIKE, f"ATR% elevated: {atr_pct:.2f}%"))
    if trend.bollinger_break is True:
        reasons.append(GovernorReason(ReasonCode.BOLLINGER_BREAK, "Bollinger breakout detected"))

    wants_halt = (
        (dd_halt > 0 and (dd_daily >= dd_halt or dd_rolling >= dd_halt))
        or (fee_halt > 0 and fee_burn is not None and fee_burn >= fee_halt)
    )
    wants_caution = any(r.code in _TRIGGER_CODES for r in reasons)
    if wants_halt:
        desired = RiskState.HALT
    elif wants_caution:
        desired = RiskState.CAUTION
    else:
        desired = RiskState.NORMAL

    prev_state = prev.state if prev else RiskState.NORMAL
    prev_since = prev.since if prev else now

    if _RANK[desired] >= _RANK[prev_state]:
        next_state = desired
    else:
        held_seconds = (now - prev_since).total_seconds()
        dwell = config.halt_min_seconds if prev_state == RiskState.HALT else config.min_state_seconds
        next_state = desired if held_seconds >= max(0, dwell) else prev_state

    since = now if next_state != prev_state else prev_since
    return RiskGovernorDecision(
        state=next_state,
        since=since,
        reasons=tuple(reasons),
        trending=trending,
        grid_buy_paused_global=(
            next_state == RiskState.HALT or (next_state == RiskState.CAUTION and trending)
        ),
    )


class RiskGovernor:
    """Gather equity, fee and trend inputs for one tick and evaluate the governor."""

    def __init__(
        self,
        config: GovernorConfig,
        exchange: ExchangeClient,
        pipeline: FeaturePipeline,
        grid_config: GridConfig | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.config = config
        self._exchange = exchange
        self._pipeline = pipeline
        self._vol_spike_floor = grid_config.atr_pct_max if grid_config else 0.0
        self._metrics = metrics

    async def tick(
        self, snapshot: RiskGovernorSnapshot, now: datetime | None = None
    ) -> RiskGovernorSnapshot:
        """Evaluate the governor and return the updated snapshot (decision included)."""
        now = now or datetime.now(timezone.utc)
        prev = snapshot.decision
        if not self.config.enabled:
            decision = prev if prev and prev.state == RiskState.NORMAL else RiskGovernorDecision.default(now)
            return replace(snapshot, decision=decision, updated_at=now)

        equity, missing = await self._equity(snapshot)
        home = snapshot.home_asset

        day_key = now.astimezone(timezone.utc).date().isoformat()
        daily = snapshot.daily_baseline
        if equity is not None and (
            daily is None or daily.day_key != day_key or daily.home_asset != home
        ):
            daily = DailyBaseline(day_key=day_key, equity=equity, home_asset=home, at=now)

        rolling = snapshot.rolling_equity
        if equity is not None:
            rolling = push_ring(
                rolling,
                EquityPoint(at=now, equity=equity),
                max(30, self.config.rolling_window_minutes),
            )
        fee_window = max(30, self.config.fee_window_minutes)
        fees = [p for p in snapshot.rolling_fees if (now - p.at).total_seconds() <= fee_window * 60]
        fee_burn = compute_fee_burn_pct(fees)

        indicators = await self._pipeline.snapshot(self.config.trend_symbol, self.config.trend_interval)
        trend = TrendSignal.from_snapshot(indicators)

        next_snapshot = replace(
            snapshot,
            daily_baseline=daily,
            rolling_equity=rolling,
            rolling_fees=fees,
            last_equity=equity,
            missing_assets=missing,
            updated_at=now,
        )
        decision = evaluate_risk_governor(
            now=now,
            prev=prev,
            equity=equity,
            daily_baseline=daily.equity if daily else None,
            rolling_baseline=next_snapshot.rolling_baseline,
            fee_burn_pct=fee_burn,
            trend=trend,
            config=self.config,
            vol_spike_floor_pct=self._vol_spike_floor,
        )
        if prev is None or decision.state != prev.state:
            log.info(
                "risk_governor_transition",
                previous=prev.state.value if prev else None,
                state=decision.state.value,
                reasons=[r.code.value for r in decision.reasons],
                equity=equity,
            )
        if self._metrics is not None:
            self._metrics.update_governor(
                decision,
                equity=equity,
                drawdown_daily=percent_drawdown(daily.equity if daily else None, equity),
                drawdown_rolling=percent_drawdown(next_snapshot.rolling_baseline, equity),
                fee_burn=fee_burn,
            )
        return replace(next_snapshot, decision=decision)

    async def _equity(self, snapshot: RiskGovernorSnapshot) -> tuple[float | None, list[str]]:
        try:
            balances = await self._exchange.get_balances()
            return await compute_equity_home(
                AssetPricer(self._exchange), balances, snapshot.home_asset
            )
        except Exception as exc:
            log.warning(
                "risk_governor_equity_failed",
                error=str(exc),
                last_equity=snapshot.last_equity,
            )
            return snapshot.last_equity, list(snapshot.missing_assets)
