"""Grid fill accounting and revaluation."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from gridpilot.grid.models import GridPerformance, GridState
from gridpilot.models import ExchangeOrder, OrderType, Side
from gridpilot.risk.equity import estimate_fees_home

_COUNTED_STATUSES = frozenset({"FILLED", "PARTIALLY_FILLED", "CANCELED"})


def _non_negative(value: float | None) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, value)


@dataclass(frozen=True)
class FillRecord:
    """An executed grid fill, reported to the scheduler for fee telemetry."""

    at: datetime
    symbol: str
    side: Side
    order_id: int
    executed_qty: float
    notional: float
    fee_estimate: float
    price: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "symbol": self.symbol,
            "side": self.side.value,
            "order_id": self.order_id,
            "executed_qty": self.executed_qty,
            "notional": self.notional,
            "fee_estimate": self.fee_estimate,
            "price": self.price,
        }


def ensure_performance(grid: GridState, now: datetime) -> GridPerformance:
    """Return the grid's accumulators, initialising them from the allocation if absent."""
    if grid.performance is not None:
        return grid.performance
    return GridPerformance.initial(grid.allocation_home, grid.created_at or now)


def apply_fill(
    perf: GridPerformance,
    order: ExchangeOrder | None,
    maker_fee_rate: float,
    taker_fee_rate: float,
    now: datetime,
) -> tuple[GridPerformance, FillRecord | None]:
    """Apply an order's executed quantity to the virtual inventory.

    Orders with nothing executed leave ``perf`` unchanged. Fees are estimated
    at the maker rate for limit orders and the taker rate for market orders.
    """
    if order is None:
        return perf, None
    executed = _non_negative(order.executed_qty)
    if executed <= 0:
        return perf, None
    notional = order.filled_notional
    if not math.isfinite(notional) or notional <= 0:
        return perf, None

    fee_rate = taker_fee_rate if order.type == OrderType.MARKET else maker_fee_rate
    fee = estimate_fees_home(notional, fee_rate)
    counted = 1 if order.status in _COUNTED_STATUSES else 0

    if order.side == Side.BUY:
        perf = replace(
            perf,
            base_virtual=perf.base_virtual + executed,
            quote_virtual=max(0.0, perf.quote_virtual - notional),
            fills_buy=perf.fills_buy + counted,
        )
    else:
        perf = replace(
            perf,
            base_virtual=max(0.0, perf.base_virtual - executed),
            quote_virtual=perf.quote_virtual + notional,
            fills_sell=perf.fills_sell + counted,
        )
    perf = replace(perf, fees_home=_non_negative(perf.fees_home + fee), last_fill_at=now)

    price = order.price if order.price > 0 else notional / executed
    record = FillRecord(
        at=now,
        symbol=order.symbol.upper(),
        side=order.side,
        order_id=order.order_id,
        executed_qty=executed,
        notional=notional,
        fee_estimate=fee,
        price=price,
    )
    return perf, record


def revalue(perf: GridPerformance, price: float, now: datetime) -> GridPerformance:
    """Mark the virtual inventory to ``price``: value = base * price + quote - fees."""
    base_value = _non_negative(perf.base_virtual) * max(price, 0.0)
    gross = base_value + _non_negative(perf.quote_virtual)
    net = max(0.0, gross - _non_negative(perf.fees_home))
    start = max(0.0, perf.start_value_home)
    pnl = net - start
    return replace(
        perf,
        last_at=now,
        last_value_home=net,
        pnl_home=pnl,
        pnl_pct=pnl / start * 100 if start > 0 else 0.0,
    )
