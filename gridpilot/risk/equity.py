"""Equity, drawdown baseline and fee-burn telemetry feeding the risk governor."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable, Sequence, TypeVar

import structlog

from gridpilot.connectors.exchange import ExchangeClient, ExchangeError
from gridpilot.models import Balance

if TYPE_CHECKING:
    from gridpilot.risk.governor import RiskGovernorDecision

log = structlog.get_logger(__name__)

BRIDGE_ASSETS = ("USDT", "USDC", "BTC", "ETH", "BNB")


def _clamp_non_negative(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, value)


def percent_drawdown(baseline: float | None, equity: float | None) -> float:
    """Percent drop of ``equity`` below ``baseline``; 0 for missing or non-positive inputs."""
    if baseline is None or equity is None:
        return 0.0
    if not math.isfinite(baseline) or baseline <= 0:
        return 0.0
    if not math.isfinite(equity) or equity <= 0:
        return 0.0
    return (baseline - equity) / baseline * 100


@dataclass(frozen=True)
class EquityPoint:
    at: datetime
    equity: float


@dataclass(frozen=True)
class FeePoint:
    at: datetime
    fees: float
    notional: float
    fills: int = 0


@dataclass(frozen=True)
class DailyBaseline:
    day_key: str
    equity: float
    home_asset: str
    at: datetime


P = TypeVar("P", EquityPoint, FeePoint)


def push_ring(points: Sequence[P], item: P, window_minutes: float) -> list[P]:
    """Append ``item`` and keep only points inside the window, hard-capped in length."""
    horizon = timedelta(minutes=max(0.0, window_minutes))
    kept = [p for p in (*points, item) if item.at - p.at <= horizon]
    hard_cap = max(32, math.ceil(window_minutes * 2))
    if len(kept) > hard_cap:
        kept = kept[len(kept) - hard_cap :]
    return kept


def compute_fee_burn_pct(points: Iterable[FeePoint]) -> float | None:
    """Fees paid as a percent of traded notional; ``None`` when nothing traded."""
    fees = 0.0
    notional = 0.0
    for point in points:
        fees += _clamp_non_negative(point.fees)
        notional += _clamp_non_negative(point.notional)
    if notional <= 0:
        return None
    return fees / notional * 100


def estimate_fees_home(notional_home: float, fee_rate: float) -> float:
    return _clamp_non_negative(notional_home) * _clamp_non_negative(fee_rate)


@dataclass
class RiskGovernorSnapshot:
    """Everything the governor carries between ticks."""

    home_asset: str
    decision: RiskGovernorDecision | None = None
    daily_baseline: DailyBaseline | None = None
    rolling_equity: list[EquityPoint] = field(default_factory=list)
    rolling_fees: list[FeePoint] = field(default_factory=list)
    last_equity: float | None = None
    missing_assets: list[str] = field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def rolling_baseline(self) -> float | None:
        values = [p.equity for p in self.rolling_equity if math.isfinite(p.equity)]
        return max(values) if values else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "home_asset": self.home_asset,
            "decision": self.decision.to_dict() if self.decision else None,
            "daily_baseline": (
                {
                    "day_key": self.daily_baseline.day_key,
                    "equity": self.daily_baseline.equity,
                    "home_asset": self.daily_baseline.home_asset,
                    "at": self.daily_baseline.at.isoformat(),
                }
                if self.daily_baseline
                else None
            ),
            "rolling_equity": [
                {"at": p.at.isoformat(), "equity": p.equity} for p in self.rolling_equity
            ],
            "rolling_fees": [
                {"at": p.at.isoformat(), "fees": p.fees, "notional": p.notional, "fills": p.fills}
                for p in self.rolling_fees
            ],
            "last_equity": self.last_equity,
            "missing_assets": list(self.missing_assets),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], home_asset: str) -> RiskGovernorSnapshot:
        from gridpilot.risk.governor import RiskGovernorDecision

        daily = data.get("daily_baseline")
        updated_at = data.get("updated_at")
        return cls(
            home_asset=str(data.get("home_asset") or home_asset).upper(),
            decision=(
                RiskGovernorDecision.from_dict(data["decision"]) if data.get("decision") else None
            ),
            daily_baseline=(
                DailyBaseline(
                    day_key=str(daily["day_key"]),
                    equity=float(daily["equity"]),
                    home_asset=str(daily["home_asset"]).upper(),
                    at=datetime.fromisoformat(daily["at"]),
                )
                if daily
                else None
            ),
            rolling_equity=[
                EquityPoint(at=datetime.fromisoformat(p["at"]), equity=float(p["equity"]))
                for p in data.get("rolling_equity", [])
            ],
            rolling_fees=[
                FeePoint(
                    at=datetime.fromisoformat(p["at"]),
                    fees=float(p["fees"]),
                    notional=float(p["notional"]),
                    fills=int(p.get("fills", 0)),
                )
                for p in data.get("rolling_fees", [])
            ],
            last_equity=data.get("last_equity"),
            missing_assets=list(data.get("missing_assets", [])),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


def record_fee_telemetry(
    snapshot: RiskGovernorSnapshot,
    at: datetime,
    fees: float | None,
    notional: float | None,
    fills: int,
    window_minutes: float,
) -> RiskGovernorSnapshot:
    """Return ``snapshot`` with a fee sample appended; empty samples are ignored."""
    fees_clean = _clamp_non_negative(fees)
    notional_clean = _clamp_non_negative(notional)
    if fees_clean <= 0 and notional_clean <= 0:
        return snapshot
    point = FeePoint(at=at, fees=fees_clean, notional=notional_clean, fills=max(0, fills))
    return replace(
        snapshot,
        rolling_fees=push_ring(snapshot.rolling_fees, point, max(30.0, window_minutes)),
        updated_at=at,
    )


class AssetPricer:
    """Convert asset amounts into the home asset using 24h ticker prices.

    Tries the direct pair, then the inverse pair, then a two-hop route through
    a bridge asset. Rates are memoized for the lifetime of the instance, which
    is one governor tick.
    """

    def __init__(self, exchange: ExchangeClient) -> None:
        self._exchange = exchange
        self._prices: dict[str, float | None] = {}

    async def _price(self, symbol: str) -> float | None:
        if symbol not in self._prices:
            try:
                stats = await self._exchange.get_24h_stats(symbol)
                price = stats.price if math.isfinite(stats.price) and stats.price > 0 else None
            except ExchangeError:
                price = None
            self._prices[symbol] = price
        return self._prices[symbol]

    async def pair_rate(self, from_asset: str, to_asset: str) -> float | None:
        if from_asset == to_asset:
            return 1.0
        direct = await self._price(f"{from_asset}{to_asset}")
        if direct:
            return direct
        inverse = await self._price(f"{to_asset}{from_asset}")
        if inverse:
            return 1.0 / inverse
        return None

    async def rate_to_home(self, asset: str, home: str) -> float | None:
        asset = asset.upper()
        home = home.upper()
        direct = await self.pair_rate(asset, home)
        if direct:
            return direct
        for bridge in BRIDGE_ASSETS:
            if bridge in (asset, home):
                continue
            leg1 = await self.pair_rate(asset, bridge)
            if not leg1:
                continue
            leg2 = await self.pair_rate(bridge, home)
            if not leg2:
                continue
            return leg1 * leg2
        return None


async def compute_equity_home(
    pricer: AssetPricer, balances: Iterable[Balance], home_asset: str
) -> tuple[float, list[str]]:
    """Sum balances into the home asset; assets that cannot be priced are reported, not valued."""
    home = home_asset.upper()
    equity = 0.0
    missing: list[str] = []
    for balance in balances:
        amount = balance.total
        if not math.isfinite(amount) or amount <= 0:
            continue
        asset = balance.asset.upper()
        if asset == home:
            equity += amount
            continue
        rate = await pricer.rate_to_home(asset, home)
        if rate is None or not math.isfinite(rate) or rate <= 0:
            missing.append(asset)
            continue
        equity += amount * rate
    if missing:
        log.info("equity_assets_unpriced", assets=missing, home_asset=home)
    return equity, missing
