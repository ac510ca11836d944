"""Position sizing utilities."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from enum import Enum

from gridpilot.models import SymbolRules


class SizeRejection(str, Enum):
    """Why a sized quantity was forced to zero."""

    INVALID_SIZE = "invalid_size"
    BELOW_MIN_QTY = "below_min_qty"
    BELOW_MIN_NOTIONAL = "below_min_notional"
    NO_STOP = "no_stop"
    ENTRIES_PAUSED = "entries_paused"


@dataclass(frozen=True)
class PositionSize:
    quantity: float
    notional: float
    reason: SizeRejection | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None and self.quantity > 0


def floor_to_step(value: float, step: float) -> float:
    """Floor ``value`` to a multiple of ``step``; a non-positive step leaves it unchanged."""
    if step <= 0 or not math.isfinite(value):
        return value
    precision = abs(Decimal(str(step)).normalize().as_tuple().exponent)
    quant = Decimal(str(step))
    floored = (Decimal(str(value)) / quant).to_integral_value(rounding=ROUND_FLOOR) * quant
    return float(round(floored, precision))


def decimals_for_step(step: float) -> int:
    if step <= 0:
        return 8
    exponent = Decimal(str(step)).normalize().as_tuple().exponent
    return max(0, -int(exponent))


class PositionSizer:
    """Fixed-fractional sizing against a home-currency position cap."""

    def __init__(
        self,
        max_position_notional: float,
        risk_per_trade_fraction: float,
        slippage_bps: float = 0.0,
    ) -> None:
        self.max_position_notional = max_position_notional
        self.risk_per_trade_fraction = risk_per_trade_fraction
        self.slippage_bps = slippage_bps

    def calculate_size(
        self,
        entry_price: float,
        stop_price: float | None,
        quote_to_home: float = 1.0,
        symbol_rules: SymbolRules | None = None,
    ) -> PositionSize:
        """Size a position so a stop-out loses ``max_position_notional * risk_per_trade_fraction``.

        Args:
            entry_price: Planned entry, in quote currency.
            stop_price: Protective stop, in quote currency. ``None`` yields ``no_stop``.
            quote_to_home: Conversion rate from quote to home currency.
            symbol_rules: Venue increments and minimums.

        Returns:
            The floored quantity, or quantity 0 with a rejection reason.
        """
        if stop_price is None:
            return PositionSize(quantity=0.0, notional=0.0, reason=SizeRejection.NO_STOP)
        rules = symbol_rules or SymbolRules()
        q2h = max(quote_to_home, 1e-8) if math.isfinite(quote_to_home) else 1e-8

        risk_capital = self.max_position_notional * self.risk_per_trade_fraction
        per_unit_risk = abs(entry_price - stop_price) * q2h
        raw_qty = risk_capital / per_unit_risk if per_unit_risk > 0 else 0.0
        slip_factor = max(0.0, 1 - self.slippage_bps / 10_000)
        max_qty = self.max_position_notional / max(entry_price * q2h, 1e-8)
        capped = min(raw_qty * slip_factor, max_qty)
        quantity = floor_to_step(max(0.0, capped), rules.step_size)

        if not math.isfinite(quantity) or quantity <= 0:
            return PositionSize(quantity=0.0, notional=0.0, reason=SizeRejection.INVALID_SIZE)
        if rules.min_qty and quantity < rules.min_qty:
            return PositionSize(quantity=0.0, notional=0.0, reason=SizeRejection.BELOW_MIN_QTY)
        notional = quantity * entry_price
        if rules.min_notional and notional < rules.min_notional:
            return PositionSize(
                quantity=0.0, notional=0.0, reason=SizeRejection.BELOW_MIN_NOTIONAL
            )
        return PositionSize(quantity=quantity, notional=notional)
