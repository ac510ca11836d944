from __future__ import annotations

import re
import shutil
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import numpy as np
import pandas as pd
import pytest

from gridpilot.config.settings import GridConfig, RunConfig, Settings
from gridpilot.connectors.exchange import ExchangeError
from gridpilot.features.indicators import BollingerBands, IndicatorSnapshot
from gridpilot.grid.models import GridPerformance, GridState
from gridpilot.models import (
    Balance,
    ExchangeOrder,
    MarketStats,
    OrderRequest,
    OrderType,
    SymbolInfo,
    SymbolRules,
)

T0 = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp)."""
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


def make_candles(
    closes: list[float],
    high_pct: float = 0.5,
    low_pct: float = 0.5,
    volume: float = 1000.0,
    freq: str = "1h",
    end: datetime = T0,
) -> pd.DataFrame:
    """OHLCV frame indexed by close time, oldest first, ending at ``end``."""
    n = len(closes)
    index = pd.date_range(end=end, periods=n, freq=freq)
    opens = [closes[0]] + closes[:-1]
    return pd.DataFrame(
        {
            "open": opens,
            "high": [max(o, c) * (1 + high_pct / 100) for o, c in zip(opens, closes)],
            "low": [min(o, c) * (1 - low_pct / 100) for o, c in zip(opens, closes)],
            "close": closes,
            "volume": [volume] * n,
        },
        index=index,
    )


def range_candles(n: int = 120, center: float = 100.0, amplitude_pct: float = 4.0) -> pd.DataFrame:
    """Sideways market oscillating around ``center`` that ends where it started."""
    closes = [center * (1 + amplitude_pct / 100 * np.sin(i * 2 * np.pi / 24)) for i in range(n)]
    return make_candles(closes)


def choppy_candles(n: int = 80) -> pd.DataFrame:
    """Directionless market: highs and lows alternately push out by similar amounts."""
    cycle = [100.0, 103.0, 99.0, 102.0]
    return make_candles([cycle[i % 4] for i in range(n)])


def trend_candles(n: int = 120, start: float = 100.0, step_pct: float = 0.8) -> pd.DataFrame:
    """Steady one-directional move."""
    closes = [start * (1 + step_pct / 100) ** i for i in range(n)]
    return make_candles(closes, high_pct=0.2, low_pct=0.2)


def make_stats(symbol: str = "BTCUSDT", price: float = 100.0, quote_volume: float = 50_000_000.0) -> MarketStats:
    return MarketStats(
        symbol=symbol,
        price=price,
        high=price * 1.02,
        low=price * 0.98,
        volume=quote_volume / price,
        quote_volume=quote_volume,
        price_change_pct=0.5,
    )


def make_settings(trading: bool = True, **overrides: Any) -> Settings:
    data: dict[str, Any] = {
        "run": RunConfig(enable_trading=trading),
        "binance_api_key": "key" if trading else "",
        "binance_secret_key": "secret" if trading else "",
        "openai_api_key": "",
        "_env_file": None,
    }
    data.update(overrides)
    return Settings(**data)


class FakeExchange:
    """In-memory ``ExchangeClient`` that records every call."""

    def __init__(self) -> None:
        self.stats: dict[str, MarketStats] = {}
        self.klines: dict[tuple[str, str], pd.DataFrame] = {}
        self.symbols: dict[str, SymbolInfo] = {}
        self.balances: list[Balance] = []
        self.open_orders: dict[int, ExchangeOrder] = {}
        self.order_details: dict[int, ExchangeOrder] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self.placed: list[OrderRequest] = []
        self.cancelled: list[int] = []
        self._next_id = 1000

    # Test helpers

    def add_symbol(
        self,
        symbol: str = "BTCUSDT",
        base: str = "BTC",
        quote: str = "USDT",
        rules: SymbolRules | None = None,
        status: str = "TRADING",
    ) -> SymbolInfo:
        info = SymbolInfo(
            symbol=symbol,
            base_asset=base,
            quote_asset=quote,
            status=status,
            rules=rules or SymbolRules(tick_size=0.01, step_size=0.0001, min_qty=0.0001, min_notional=5.0),
        )
        self.symbols[symbol] = info
        return info

    def set_balance(self, asset: str, free: float, locked: float = 0.0) -> None:
        self.balances = [b for b in self.balances if b.asset != asset]
        self.balances.append(Balance(asset=asset, free=free, locked=locked))

    def add_open_order(self, order: ExchangeOrder) -> None:
        self.open_orders[order.order_id] = order

    def fill(self, order_id: int, qty: float | None = None) -> ExchangeOrder:
        """Remove an open order and report it as (partially) filled."""
        order = self.open_orders.pop(order_id)
        executed = order.orig_qty if qty is None else qty
        filled = ExchangeOrder(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            type=order.type,
            status="FILLED" if executed >= order.orig_qty else "PARTIALLY_FILLED",
            price=order.price,
            orig_qty=order.orig_qty,
            executed_qty=executed,
            cumulative_quote_qty=executed * order.price,
        )
        self.order_details[order_id] = filled
        return filled

    def partial_fill(self, order_id: int, qty: float) -> ExchangeOrder:
        """Execute part of a resting order; it stays open on the book."""
        order = self.open_orders[order_id]
        partial = replace(
            order,
            status="PARTIALLY_FILLED",
            executed_qty=qty,
            cumulative_quote_qty=qty * order.price,
        )
        self.open_orders[order_id] = partial
        return partial

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    # ExchangeClient

    async def get_24h_stats(self, symbol: str) -> MarketStats:
        self._record("get_24h_stats", symbol)
        stats = self.stats.get(symbol.upper())
        if stats is None:
            raise ExchangeError("Invalid symbol.", code=-1121)
        return stats

    async def get_klines(self, symbol: str, interval: str, limit: int = 200) -> pd.DataFrame:
        self._record("get_klines", symbol, interval, limit)
        frame = self.klines.get((symbol.upper(), interval))
        if frame is None:
            raise ExchangeError(f"no klines for {symbol} {interval}")
        return frame.tail(limit)

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        self._record("get_symbol_info", symbol)
        info = self.symbols.get(symbol.upper())
        if info is None:
            raise ExchangeError(f"unknown symbol {symbol.upper()}")
        return info

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return (await self.get_symbol_info(symbol)).rules

    async def get_balances(self) -> list[Balance]:
        self._record("get_balances")
        return list(self.balances)

    async def get_open_orders(self, symbol: str | None = None) -> list[ExchangeOrder]:
        self._record("get_open_orders", symbol)
        return [o for o in self.open_orders.values() if symbol is None or o.symbol == symbol.upper()]

    async def get_order(self, symbol: str, order_id: int) -> ExchangeOrder | None:
        self._record("get_order", symbol, order_id)
        if order_id in self.open_orders:
            return self.open_orders[order_id]
        return self.order_details.get(order_id)

    async def place_order(self, request: OrderRequest) -> ExchangeOrder:
        self._record("place_order", request)
        self._next_id += 1
        self.placed.append(request)
        if request.type == OrderType.MARKET:
            price = self.stats[request.symbol].price
            order = ExchangeOrder(
                order_id=self._next_id,
                symbol=request.symbol,
                side=request.side,
                type=OrderType.MARKET,
                status="FILLED",
                price=0.0,
                orig_qty=request.quantity,
                executed_qty=request.quantity,
                cumulative_quote_qty=request.quantity * price,
            )
            self.order_details[order.order_id] = order
            return order
        order = ExchangeOrder(
            order_id=self._next_id,
            symbol=request.symbol,
            side=request.side,
            type=OrderType.LIMIT,
            status="NEW",
            price=request.price or 0.0,
            orig_qty=request.quantity,
        )
        self.open_orders[order.order_id] = order
        return order

    async def cancel_order(self, symbol: str, order_id: int) -> ExchangeOrder:
        self._record("cancel_order", symbol, order_id)
        order = self.open_orders.pop(order_id, None)
        if order is None:
            raise ExchangeError("Unknown order sent.", code=-2011)
        self.cancelled.append(order_id)
        cancelled = ExchangeOrder(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side,
            type=order.type,
            status="CANCELED",
            price=order.price,
            orig_qty=order.orig_qty,
            executed_qty=order.executed_qty,
            cumulative_quote_qty=order.cumulative_quote_qty,
        )
        self.order_details[order_id] = cancelled
        return cancelled


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


def make_grid(
    prices: tuple[float, ...] = (96.0, 98.0, 100.0, 102.0, 104.0),
    base_virtual: float = 0.5,
    quote_virtual: float = 80.0,
    **overrides: Any,
) -> GridState:
    """Running BTCUSDT grid with a little virtual base so both sides can quote."""
    perf = GridPerformance(
        start_at=T0,
        start_value_home=quote_virtual + base_virtual * 100.0,
        last_at=T0,
        last_value_home=quote_virtual + base_virtual * 100.0,
        base_virtual=base_virtual,
        quote_virtual=quote_virtual,
    )
    data: dict[str, Any] = {
        "symbol": "BTCUSDT",
        "base_asset": "BTC",
        "quote_asset": "USDT",
        "home_asset": "USDT",
        "lower_price": prices[0],
        "upper_price": prices[-1],
        "prices": prices,
        "order_notional_home": 20.0,
        "allocation_home": 80.0,
        "created_at": T0,
        "updated_at": T0,
        "performance": perf,
    }
    data.update(overrides)
    return GridState(**data)


def grid_config(**overrides: Any) -> GridConfig:
    data: dict[str, Any] = {
        "symbols": ["BTCUSDT"],
        "levels": 5,
        "gap_bps": 10.0,
        "min_quote_volume": 1000.0,
        "resume_ticks": 3,
        "resume_minutes": 5.0,
        "liquidity_resume_ticks": 3,
        "liquidity_resume_minutes": 5.0,
        "breakdown_ticks": 3,
        "breakdown_pct": 1.0,
        "atr_pct_max": 6.0,
        "breakout_action": "cancel",
        "breakout_buffer_pct": 0.5,
    }
    data.update(overrides)
    return GridConfig(**data)


def calm_snapshot(price: float = 100.0, **overrides: Any) -> IndicatorSnapshot:
    """Indicators that read as a quiet, non-trending market around ``price``."""
    data: dict[str, Any] = {
        "symbol": "BTCUSDT",
        "interval": "1h",
        "as_of": T0,
        "close": price,
        "volume": 1000.0,
        "avg_volume20": 1000.0,
        "ema20": price,
        "ema50": price,
        "rsi14": 50.0,
        "atr14": price * 0.01,
        "adx14": 10.0,
        "bb20": BollingerBands(middle=price, upper=price * 1.05, lower=price * 0.95, std_dev=price * 0.025),
    }
    data.update(overrides)
    return IndicatorSnapshot(**data)


def trending_snapshot(price: float = 100.0) -> IndicatorSnapshot:
    return calm_snapshot(price, adx14=32.0)


def seed_market(exchange: FakeExchange, price: float = 100.0, quote_volume: float = 50_000_000.0) -> None:
    """BTCUSDT listed at ``price`` with funded USDT and BTC balances."""
    exchange.add_symbol()
    exchange.stats["BTCUSDT"] = make_stats(price=price, quote_volume=quote_volume)
    exchange.set_balance("USDT", 1000.0)
    exchange.set_balance("BTC", 1.0)
