"""Exchange collaborator interface and errors."""

from __future__ import annotations

from typing import Any, Protocol

import pandas as pd

from gridpilot.models import (
    Balance,
    ExchangeOrder,
    MarketStats,
    OrderRequest,
    SymbolInfo,
    SymbolRules,
)


class ExchangeError(Exception):
    """Venue-reported failure, carrying the venue code and message when available."""

    def __init__(self, msg: str, code: int | None = None, status_code: int | None = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.code = code
        self.status_code = status_code

    @classmethod
    def from_payload(cls, payload: Any, status_code: int | None = None) -> ExchangeError:
        if isinstance(payload, dict):
            code = payload.get("code")
            return cls(
                str(payload.get("msg", "unknown error")),
                code=int(code) if isinstance(code, int) else None,
                status_code=status_code,
            )
        return cls(str(payload), status_code=status_code)

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.code}: {self.msg}"
        return self.msg


class TradingDisabledError(ExchangeError):
    """Raised by mutating calls while the trading gate is closed."""


class ExchangeClient(Protocol):
    """Async market data, account and order operations used by the control loop."""

    async def get_24h_stats(self, symbol: str) -> MarketStats: ...

    async def get_klines(self, symbol: str, interval: str, limit: int = 200) -> pd.DataFrame: ...

    async def get_symbol_rules(self, symbol: str) -> SymbolRules: ...

    async def get_symbol_info(self, symbol: str) -> SymbolInfo: ...

    async def get_balances(self) -> list[Balance]: ...

    async def get_open_orders(self, symbol: str | None = None) -> list[ExchangeOrder]: ...

    async def get_order(self, symbol: str, order_id: int) -> ExchangeOrder | None: ...

    async def place_order(self, request: OrderRequest) -> ExchangeOrder: ...

    async def cancel_order(self, symbol: str, order_id: int) -> ExchangeOrder: ...
