"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class Horizon(str, Enum):
    """Planning horizon; each maps to a candle interval and a holding window."""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"

    @property
    def interval(self) -> str:
        return _HORIZON_INTERVALS[self]

    @property
    def holding_minutes(self) -> int:
        return _HORIZON_HOLDING_MINUTES[self]


_HORIZON_INTERVALS = {Horizon.SHORT: "15m", Horizon.MEDIUM: "1h", Horizon.LONG: "4h"}
_HORIZON_HOLDING_MINUTES = {Horizon.SHORT: 120, Horizon.MEDIUM: 1440, Horizon.LONG: 10080}

OPEN_ORDER_STATUSES = frozenset({"NEW", "PARTIALLY_FILLED", "PENDING_NEW"})


@dataclass(frozen=True)
class SymbolRules:
    """Venue price/quantity increments and minimums. Zero means the venue sets no rule."""

    tick_size: float = 0.0
    step_size: float = 0.0
    min_qty: float = 0.0
    min_notional: float = 0.0


@dataclass(frozen=True)
class SymbolInfo:
    symbol: str
    base_asset: str
    quote_asset: str
    status: str
    rules: SymbolRules

    @property
    def is_trading(self) -> bool:
        return self.status == "TRADING"


@dataclass(frozen=True)
class MarketStats:
    """Rolling 24h ticker statistics."""

    symbol: str
    price: float
    high: float
    low: float
    volume: float
    quote_volume: float
    price_change_pct: float


@dataclass(frozen=True)
class Balance:
    asset: str
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: Side
    quantity: float
    type: OrderType = OrderType.LIMIT
    price: float | None = None


@dataclass(frozen=True)
class ExchangeOrder:
    """An order as reported by the venue."""

    order_id: int
    symbol: str
    side: Side
    type: OrderType
    status: str
    price: float
    orig_qty: float
    executed_qty: float = 0.0
    cumulative_quote_qty: float = 0.0
    update_time: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ORDER_STATUSES

    @property
    def filled_notional(self) -> float:
        if self.cumulative_quote_qty > 0:
            return self.cumulative_quote_qty
        return self.executed_qty * max(self.price, 1e-8)
