"""Grid state models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from gridpilot.models import Side


class GridStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class PauseReason(str, Enum):
    NONE = "none"
    TREND = "trend"
    LIQUIDITY = "liquidity"


class BreakoutAction(str, Enum):
    NONE = "none"
    CANCEL = "cancel"
    CANCEL_AND_LIQUIDATE = "cancel_and_liquidate"


def _dt(value: Any) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class GridOrder:
    """A live limit order the grid tracks for one level."""

    order_id: int
    side: Side
    price: float
    quantity: float
    placed_at: datetime
    last_seen_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "placed_at": self.placed_at.isoformat(),
            "last_seen_at": _iso(self.last_seen_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GridOrder:
        return cls(
            order_id=int(data["order_id"]),
            side=Side(data["side"]),
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            placed_at=datetime.fromisoformat(data["placed_at"]),
            last_seen_at=_dt(data.get("last_seen_at")),
        )


@dataclass(frozen=True)
class GridPerformance:
    """Virtual inventory and PnL accumulators for one grid, in home-asset units."""

    start_at: datetime
    start_value_home: float
    last_at: datetime
    last_value_home: float
    base_virtual: float = 0.0
    quote_virtual: float = 0.0
    fees_home: float = 0.0
    pnl_home: float = 0.0
    pnl_pct: float = 0.0
    fills_buy: int = 0
    fills_sell: int = 0
    breakouts: int = 0
    last_fill_at: datetime | None = None

    @classmethod
    def initial(cls, allocation_home: float, now: datetime) -> GridPerformance:
        allocation = max(0.0, allocation_home)
        return cls(
            start_at=now,
            start_value_home=allocation,
            last_at=now,
            last_value_home=allocation,
            quote_virtual=allocation,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_at": self.start_at.isoformat(),
            "start_value_home": self.start_value_home,
            "last_at": self.last_at.isoformat(),
            "last_value_home": self.last_value_home,
            "base_virtual": self.base_virtual,
            "quote_virtual": self.quote_virtual,
            "fees_home": self.fees_home,
            "pnl_home": self.pnl_home,
            "pnl_pct": self.pnl_pct,
            "fills_buy": self.fills_buy,
            "fills_sell": self.fills_sell,
            "breakouts": self.breakouts,
            "last_fill_at": _iso(self.last_fill_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GridPerformance:
        return cls(
            start_at=datetime.fromisoformat(data["start_at"]),
            start_value_home=float(data["start_value_home"]),
            last_at=datetime.fromisoformat(data["last_at"]),
            last_value_home=float(data["last_value_home"]),
            base_virtual=float(data.get("base_virtual", 0.0)),
            quote_virtual=float(data.get("quote_virtual", 0.0)),
            fees_home=float(data.get("fees_home", 0.0)),
            pnl_home=float(data.get("pnl_home", 0.0)),
            pnl_pct=float(data.get("pnl_pct", 0.0)),
            fills_buy=int(data.get("fills_buy", 0)),
            fills_sell=int(data.get("fills_sell", 0)),
            breakouts=int(data.get("breakouts", 0)),
            last_fill_at=_dt(data.get("last_fill_at")),
        )


@dataclass(frozen=True)
class GridState:
    """Declared ladder, tracked orders and buy-pause status of one grid.

    ``orders_by_level`` maps a level index into ``prices`` to the order the
    grid currently tracks there. ``resume_streak`` and ``breakdown_streak``
    are in-memory counters and are not written by ``to_dict``.
    """

    symbol: str
    base_asset: str
    quote_asset: str
    home_asset: str
    lower_price: float
    upper_price: float
    prices: tuple[float, ...]
    order_notional_home: float
    allocation_home: float
    created_at: datetime
    updated_at: datetime
    status: GridStatus = GridStatus.RUNNING
    bootstrap_base_pct: float = 0.0
    orders_by_level: dict[int, GridOrder] = field(default_factory=dict)
    buy_paused: bool = False
    buy_pause_reason: PauseReason = PauseReason.NONE
    buy_paused_at: datetime | None = None
    resume_streak: int = 0
    breakdown_streak: int = 0
    performance: GridPerformance | None = None
    last_tick_at: datetime | None = None
    last_error: str | None = None

    @property
    def levels(self) -> int:
        return len(self.prices)

    @property
    def is_running(self) -> bool:
        return self.status == GridStatus.RUNNING

    def orders_on_side(self, side: Side) -> dict[int, GridOrder]:
        return {i: o for i, o in self.orders_by_level.items() if o.side == side}

    def with_error(self, message: str, now: datetime) -> GridState:
        return replace(self, last_error=message, last_tick_at=now, updated_at=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "base_asset": self.base_asset,
            "quote_asset": self.quote_asset,
            "home_asset": self.home_asset,
            "lower_price": self.lower_price,
            "upper_price": self.upper_price,
            "levels": self.levels,
            "prices": list(self.prices),
            "order_notional_home": self.order_notional_home,
            "allocation_home": self.allocation_home,
            "bootstrap_base_pct": self.bootstrap_base_pct,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "orders_by_level": {str(i): o.to_dict() for i, o in self.orders_by_level.items()},
            "buy_paused": self.buy_paused,
            "buy_pause_reason": self.buy_pause_reason.value,
            "buy_paused_at": _iso(self.buy_paused_at),
            "performance": self.performance.to_dict() if self.performance else None,
            "last_tick_at": _iso(self.last_tick_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GridState:
        perf = data.get("performance")
        return cls(
            symbol=str(data["symbol"]).upper(),
            status=GridStatus(data.get("status", GridStatus.RUNNING.value)),
            base_asset=str(data.get("base_asset", "")).upper(),
            quote_asset=str(data.get("quote_asset", "")).upper(),
            home_asset=str(data.get("home_asset", "")).upper(),
            lower_price=float(data["lower_price"]),
            upper_price=float(data["upper_price"]),
            prices=tuple(float(p) for p in data.get("prices", [])),
            order_notional_home=float(data.get("order_notional_home", 0.0)),
            allocation_home=float(data.get("allocation_home", 0.0)),
            bootstrap_base_pct=float(data.get("bootstrap_base_pct", 0.0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            orders_by_level={
                int(k): GridOrder.from_dict(v) for k, v in data.get("orders_by_level", {}).items()
            },
            buy_paused=bool(data.get("buy_paused", False)),
            buy_pause_reason=PauseReason(data.get("buy_pause_reason", PauseReason.NONE.value)),
            buy_paused_at=_dt(data.get("buy_paused_at")),
            performance=GridPerformance.from_dict(perf) if perf else None,
            last_tick_at=_dt(data.get("last_tick_at")),
            last_error=data.get("last_error"),
        )
