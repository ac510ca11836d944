"""Regime-based strategy plans with ATR stops and fixed-fractional sizing."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from gridpilot.config.settings import RegimeConfig, RiskConfig
from gridpilot.features.indicators import IndicatorSnapshot
from gridpilot.models import Horizon, MarketStats, Side, SymbolRules
from gridpilot.risk.sizing import PositionSizer, SizeRejection, floor_to_step
from gridpilot.strategy.regime import RegimeClassification, RegimeClassifier, RegimeType
from gridpilot.strategy.scoring import (
    ConfidenceScore,
    adx_score,
    invalidation_score,
    rsi_score,
    volume_score,
)

TRAILING_NOTE = "Trail stop after +1*ATR (move to breakeven, then trail 1.5*ATR below best price)"

THESIS = {
    "trend_bull": "Trend regime: bullish alignment. Buy pullbacks to EMA20 with ATR-based risk.",
    "trend_bear": "Trend regime: bearish alignment. Spot long-only: avoid new longs / consider exiting.",
    "range": "Range regime: mean-reversion entries near lower Bollinger band with ATR-based stops.",
    "neutral": "Neutral regime: no clear edge; stay conservative.",
}


@dataclass(frozen=True)
class EntryPlan:
    side: Side
    price_target: float
    size: float
    confidence: float


@dataclass(frozen=True)
class ExitPlan:
    stop_loss: float
    take_profit: tuple[float, ...]
    timeframe_minutes: int


@dataclass(frozen=True)
class StrategyPlan:
    symbol: str
    horizon: Horizon
    regime: RegimeType
    thesis: str
    entry: EntryPlan
    exit_plan: ExitPlan
    risk_reward: float
    estimated_fees: float
    signals: tuple[str, ...]
    created_at: datetime
    entry_ok: bool = False
    size_reason: SizeRejection | None = None
    ai_notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "horizon": self.horizon.value,
            "regime": self.regime.value,
            "thesis": self.thesis,
            "entry": {
                "side": self.entry.side.value,
                "price_target": self.entry.price_target,
                "size": self.entry.size,
                "confidence": self.entry.confidence,
            },
            "exit_plan": {
                "stop_loss": self.exit_plan.stop_loss,
                "take_profit": list(self.exit_plan.take_profit),
                "timeframe_minutes": self.exit_plan.timeframe_minutes,
            },
            "risk_reward": self.risk_reward,
            "estimated_fees": self.estimated_fees,
            "signals": list(self.signals),
            "entry_ok": self.entry_ok,
            "size_reason": self.size_reason.value if self.size_reason else None,
            "ai_notes": self.ai_notes,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class StrategyBundle:
    symbol: str
    price: float
    plans: dict[Horizon, StrategyPlan] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "plans": {h.value: p.to_dict() for h, p in self.plans.items()},
        }


def _fmt(value: float | None, digits: int) -> str:
    return f"{value:.{digits}f}" if value is not None else "n/a"


class StrategyEngine:
    """Build per-horizon trading plans from indicator snapshots."""

    def __init__(self, risk: RiskConfig, regime: RegimeConfig | None = None) -> None:
        self.risk = risk
        self.classifier = RegimeClassifier(regime)
        self.sizer = PositionSizer(
            max_position_notional=risk.max_position_notional,
            risk_per_trade_fraction=risk.risk_per_trade_fraction,
            slippage_bps=risk.slippage_bps,
        )

    def build_plan(
        self,
        horizon: Horizon,
        market: MarketStats,
        indicators: IndicatorSnapshot,
        *,
        quote_to_home: float = 1.0,
        rules: SymbolRules | None = None,
        entries_paused: bool = False,
        ai_notes: str = "",
        now: datetime | None = None,
    ) -> StrategyPlan:
        """Build one plan. Never raises; an unusable setup yields size 0 with a reason."""
        now = now or datetime.now(timezone.utc)
        rules = rules or SymbolRules()
        classification = self.classifier.classify(indicators)
        regime = classification.regime

        price = market.price if math.isfinite(market.price) and market.price > 0 else indicators.close
        ema20 = indicators.ema20
        ema50 = indicators.ema50
        rsi = indicators.rsi14
        atr = indicators.atr14
        adx = indicators.adx14
        bb = indicators.bb20

        trend_entry_ok = (
            regime == RegimeType.TREND
            and classification.bias == Side.BUY
            and ema20 is not None
            and ema50 is not None
            and rsi is not None
            and atr is not None
            and ema20 > ema50
            and 45 <= rsi <= 70
            and abs(price - ema20) <= 0.5 * atr
        )
        range_entry_ok = (
            regime == RegimeType.RANGE
            and rsi is not None
            and atr is not None
            and bb is not None
            and rsi < 35
            and price <= bb.lower + 0.25 * (bb.middle - bb.lower)
        )

        side = Side.SELL if classification.is_bearish_trend else Side.BUY
        entry_price = floor_to_step(price, rules.tick_size)

        stop, target, trailing_note = self._stop_and_target(
            entry_price, atr, indicators, classification, trend_entry_ok, range_entry_ok
        )
        if stop is not None:
            stop = floor_to_step(stop, rules.tick_size)
        if target is not None:
            target = floor_to_step(target, rules.tick_size)

        if side == Side.BUY:
            distances_ok = stop is not None and target is not None and stop < entry_price < target
        else:
            distances_ok = stop is not None and target is not None and target < entry_price < stop

        size_gate = self.sizer.calculate_size(entry_price, stop, quote_to_home, rules)
        entry_ok = distances_ok and (trend_entry_ok or range_entry_ok)
        size_reason = size_gate.reason
        size = size_gate.quantity if entry_ok else 0.0
        if entries_paused and size > 0:
            size = 0.0
            size_reason = SizeRejection.ENTRIES_PAUSED

        score = ConfidenceScore(
            adx=adx_score(adx),
            rsi=rsi_score(rsi, regime),
            volume=volume_score(indicators.volume_ratio),
            invalidation=invalidation_score(entry_price, stop, atr),
        )
        confidence = score.confidence(entry_ok)

        fee_estimate = size * entry_price * self.risk.taker_fee_rate * 2
        risk_reward = 0.0
        if stop is not None and target is not None:
            risk_reward = abs(target - entry_price) / max(abs(entry_price - stop), 1e-8)

        volume_ratio = indicators.volume_ratio
        signals = [
            f"Regime {regime.value}",
            f"ADX14 {_fmt(adx, 2)}",
            f"EMA20/EMA50 {_fmt(ema20, 6)} / {_fmt(ema50, 6)}",
            f"RSI14 {_fmt(rsi, 2)}",
            f"ATR14 {_fmt(atr, 6)}",
            f"BB20 {_fmt(bb.lower if bb else None, 6)}..{_fmt(bb.upper if bb else None, 6)}",
            f"Vol ratio {_fmt(volume_ratio, 2)}",
        ]
        if entry_ok:
            signals.append(f"Size gate: {size_reason.value}" if size_reason else "Size gate: ok")
        signals.append(trailing_note or "No trailing rule")

        return StrategyPlan(
            symbol=market.symbol.upper(),
            horizon=horizon,
            regime=regime,
            thesis=self._thesis(classification),
            entry=EntryPlan(side=side, price_target=entry_price, size=size, confidence=confidence),
            exit_plan=ExitPlan(
                stop_loss=stop if stop is not None else entry_price,
                take_profit=(target,) if target is not None else (),
                timeframe_minutes=horizon.holding_minutes,
            ),
            risk_reward=risk_reward,
            estimated_fees=fee_estimate if math.isfinite(fee_estimate) else 0.0,
            signals=tuple(signals),
            created_at=now,
            entry_ok=entry_ok,
            size_reason=size_reason,
            ai_notes=ai_notes,
        )

    def build_bundle(
        self,
        market: MarketStats,
        indicators: Mapping[Horizon, IndicatorSnapshot],
        *,
        quote_to_home: float = 1.0,
        rules: SymbolRules | None = None,
        entries_paused: bool = False,
        notes: Mapping[Horizon, str] | None = None,
        now: datetime | None = None,
    ) -> StrategyBundle:
        """Build short/medium/long plans; a missing snapshot falls back to neutral."""
        now = now or datetime.now(timezone.utc)
        notes = notes or {}
        plans = {}
        for horizon in Horizon:
            snapshot = indicators.get(horizon) or IndicatorSnapshot.neutral(
                market.symbol, horizon.interval, close=market.price, volume=market.volume
            )
            plans[horizon] = self.build_plan(
                horizon,
                market,
                snapshot,
                quote_to_home=quote_to_home,
                rules=rules,
                entries_paused=entries_paused,
                ai_notes=notes.get(horizon, ""),
                now=now,
            )
        return StrategyBundle(
            symbol=market.symbol.upper(), price=market.price, plans=plans, created_at=now
        )

    @staticmethod
    def _stop_and_target(
        entry: float,
        atr: float | None,
        indicators: IndicatorSnapshot,
        classification: RegimeClassification,
        trend_entry_ok: bool,
        range_entry_ok: bool,
    ) -> tuple[float | None, float | None, str | None]:
        if atr is None:
            return None, None, None
        if trend_entry_ok:
            return entry - 1.5 * atr, entry + 2.5 * atr, TRAILING_NOTE
        if range_entry_ok:
            bb = indicators.bb20
            if bb is None:
                target = entry + 1.6 * atr
            elif entry > 0 and atr / entry < 0.015:
                target = bb.middle
            else:
                target = bb.upper
            return entry - 1.2 * atr, target, None
        if classification.is_bearish_trend:
            # Long-only venue: bearish bias gets a mirrored placeholder, never an entry.
            return entry + 1.5 * atr, entry - 2.5 * atr, None
        return entry - 1.2 * atr, entry + 1.6 * atr, None

    @staticmethod
    def _thesis(classification: RegimeClassification) -> str:
        if classification.regime == RegimeType.TREND:
            return THESIS["trend_bull"] if classification.bias == Side.BUY else THESIS["trend_bear"]
        if classification.regime == RegimeType.RANGE:
            return THESIS["range"]
        return THESIS["neutral"]
