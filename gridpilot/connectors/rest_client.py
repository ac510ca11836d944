"""Async Binance Spot REST client with rate limiting."""

from __future__ import annotations

import asyncio
import hmac
import time
from datetime import datetime, timezone
from decimal import Decimal
from hashlib import sha256
from typing import Any
from urllib.parse import urlencode

import httpx
import pandas as pd
import structlog

from gridpilot.config.settings import Settings
from gridpilot.connectors.exchange import ExchangeError, TradingDisabledError
from gridpilot.models import (
    Balance,
    ExchangeOrder,
    MarketStats,
    OrderRequest,
    OrderType,
    Side,
    SymbolInfo,
    SymbolRules,
)
from gridpilot.monitoring.metrics import Metrics

log = structlog.get_logger(__name__)

_RETRY_STATUS = {429, 418, 500, 502, 503, 504}
_ORDER_NOT_FOUND = -2013


class RateLimitTracker:
    """Track request weight usage per minute."""

    def __init__(self, max_weight_per_minute: int = 6000) -> None:
        self.max_weight = max_weight_per_minute
        self.used_weight = 0
        self.reset_at = time.time() + 60
        self._server_reported_weight: int | None = None

    async def consume(self, weight: int) -> None:
        now = time.time()
        if now >= self.reset_at:
            self.used_weight = 0
            self.reset_at = now + 60
        if self.used_weight + weight > self.max_weight * 0.8:
            await asyncio.sleep(max(0, self.reset_at - now))
            self.used_weight = 0
            self.reset_at = time.time() + 60
        self.used_weight += weight

    def update_limit(self, max_weight: int) -> None:
        if max_weight > 0:
            self.max_weight = max_weight

    def update_server_reported_weight(self, weight: int) -> None:
        self._server_reported_weight = weight

    @property
    def current_weight(self) -> int:
        """Get current used weight (prefer server-reported if available)."""
        return (
            self._server_reported_weight
            if self._server_reported_weight is not None
            else self.used_weight
        )


def parse_symbol_rules(filters: list[dict[str, Any]]) -> SymbolRules:
    """Extract tick/step sizes and minimums from an exchangeInfo filter list."""
    tick_size = 0.0
    step_size = 0.0
    min_qty = 0.0
    min_notional = 0.0
    for flt in filters:
        ftype = flt.get("filterType")
        if ftype == "PRICE_FILTER":
            tick_size = float(flt.get("tickSize", 0) or 0)
        elif ftype == "LOT_SIZE":
            step_size = float(flt.get("stepSize", 0) or 0)
            min_qty = float(flt.get("minQty", 0) or 0)
        elif ftype in {"NOTIONAL", "MIN_NOTIONAL"}:
            min_notional = float(flt.get("minNotional", flt.get("notional", 0)) or 0)
    return SymbolRules(
        tick_size=tick_size,
        step_size=step_size,
        min_qty=min_qty,
        min_notional=min_notional,
    )


def parse_symbol_info(raw: dict[str, Any]) -> SymbolInfo:
    return SymbolInfo(
        symbol=str(raw["symbol"]).upper(),
        base_asset=str(raw.get("baseAsset", "")).upper(),
        quote_asset=str(raw.get("quoteAsset", "")).upper(),
        status=str(raw.get("status", "")),
        rules=parse_symbol_rules(raw.get("filters", [])),
    )


def parse_order(raw: dict[str, Any]) -> ExchangeOrder:
    update_ms = raw.get("updateTime") or raw.get("transactTime") or raw.get("time")
    return ExchangeOrder(
        order_id=int(raw["orderId"]),
        symbol=str(raw.get("symbol", "")).upper(),
        side=Side(str(raw.get("side", "BUY")).upper()),
        type=OrderType.MARKET if str(raw.get("type", "")).upper() == "MARKET" else OrderType.LIMIT,
        status=str(raw.get("status", "")).upper(),
        price=float(raw.get("price", 0) or 0),
        orig_qty=float(raw.get("origQty", 0) or 0),
        executed_qty=float(raw.get("executedQty", 0) or 0),
        cumulative_quote_qty=float(raw.get("cummulativeQuoteQty", 0) or 0),
        update_time=(
            datetime.fromtimestamp(int(update_ms) / 1000, tz=timezone.utc) if update_ms else None
        ),
    )


def klines_to_frame(klines: list[list[Any]], now: datetime | None = None) -> pd.DataFrame:
    """Convert raw kline rows into an OHLCV frame of closed candles indexed by close time."""
    rows = []
    if not isinstance(klines, list):
        log.warning("klines_invalid_type", type=type(klines).__name__)
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
    for kline in klines:
        try:
            if len(kline) < 7:
                raise IndexError("kline missing required fields")
            rows.append(
                {
                    "open_time": int(kline[0]),
                    "open": float(kline[1]),
                    "high": float(kline[2]),
                    "low": float(kline[3]),
                    "close": float(kline[4]),
                    "volume": float(kline[5]),
                    "close_time": int(kline[6]),
                }
            )
        except (TypeError, ValueError, IndexError) as exc:
            log.warning("kline_parse_failed", error=str(exc))
            continue
    if not rows:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
    df = pd.DataFrame(rows)
    df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
    df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
    cutoff = now or datetime.now(timezone.utc)
    df = df[df["close_time"] <= cutoff]
    return df.set_index("close_time")


def _format_decimal(value: float) -> str:
    text = format(Decimal(str(value)).normalize(), "f")
    return text


class BinanceSpotClient:
    """Binance Spot REST client implementing ``ExchangeClient``."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics
        self.base_url = settings.exchange_base_url
        self.api_key = settings.binance_api_key
        self.api_secret = settings.binance_secret_key
        self.recv_window = settings.exchange.recv_window
        self.http = http or httpx.AsyncClient(
            base_url=self.base_url, timeout=settings.exchange.request_timeout_sec
        )
        self.rate_limiter = RateLimitTracker(settings.exchange.max_weight_per_minute)
        self.trading_enabled, self.trading_block_reasons = settings.trading_gate()
        self._rules_ttl_sec = settings.exchange.rules_cache_ttl_sec
        self._symbols: dict[str, SymbolInfo] = {}
        self._symbols_loaded_at = 0.0
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    # Market data

    async def get_24h_stats(self, symbol: str) -> MarketStats:
        data = await self._request(
            "GET", "/api/v3/ticker/24hr", params={"symbol": symbol.upper()}, weight=2
        )
        return MarketStats(
            symbol=str(data.get("symbol", symbol)).upper(),
            price=float(data.get("lastPrice", 0) or 0),
            high=float(data.get("highPrice", 0) or 0),
            low=float(data.get("lowPrice", 0) or 0),
            volume=float(data.get("volume", 0) or 0),
            quote_volume=float(data.get("quoteVolume", 0) or 0),
            price_change_pct=float(data.get("priceChangePercent", 0) or 0),
        )

    async def get_klines(self, symbol: str, interval: str, limit: int = 200) -> pd.DataFrame:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": min(limit, 1000)}
        raw = await self._request("GET", "/api/v3/klines", params=params, weight=2)
        return klines_to_frame(raw)

    async def get_exchange_info(self) -> dict[str, SymbolInfo]:
        """Return tradable symbol metadata, cached for ``rules_cache_ttl_sec``."""
        if self._symbols and time.monotonic() - self._symbols_loaded_at < self._rules_ttl_sec:
            return self._symbols
        data = await self._request("GET", "/api/v3/exchangeInfo", weight=20)
        self._update_rate_limits(data.get("rateLimits", []))
        symbols: dict[str, SymbolInfo] = {}
        for raw in data.get("symbols", []):
            try:
                info = parse_symbol_info(raw)
            except (KeyError, TypeError, ValueError) as exc:
                self.log.warning("symbol_info_parse_failed", error=str(exc))
                continue
            symbols[info.symbol] = info
        self._symbols = symbols
        self._symbols_loaded_at = time.monotonic()
        return symbols

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        symbols = await self.get_exchange_info()
        info = symbols.get(symbol.upper())
        if info is None:
            raise ExchangeError(f"unknown symbol {symbol.upper()}")
        return info

    async def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return (await self.get_symbol_info(symbol)).rules

    # Account and orders

    async def get_balances(self) -> list[Balance]:
        data = await self._request("GET", "/api/v3/account", signed=True, weight=20)
        balances = []
        for raw in data.get("balances", []):
            free = float(raw.get("free", 0) or 0)
            locked = float(raw.get("locked", 0) or 0)
            if free <= 0 and locked <= 0:
                continue
            balances.append(Balance(asset=str(raw["asset"]).upper(), free=free, locked=locked))
        return balances

    async def get_open_orders(self, symbol: str | None = None) -> list[ExchangeOrder]:
        params = {"symbol": symbol.upper()} if symbol else None
        raw = await self._request(
            "GET", "/api/v3/openOrders", params=params, signed=True, weight=6 if symbol else 80
        )
        return [parse_order(o) for o in raw]

    async def get_order(self, symbol: str, order_id: int) -> ExchangeOrder | None:
        params = {"symbol": symbol.upper(), "orderId": order_id}
        try:
            raw = await self._request("GET", "/api/v3/order", params=params, signed=True, weight=4)
        except ExchangeError as exc:
            if exc.code == _ORDER_NOT_FOUND:
                return None
            raise
        return parse_order(raw)

    async def place_order(self, request: OrderRequest) -> ExchangeOrder:
        self._require_trading()
        params: dict[str, Any] = {
            "symbol": request.symbol.upper(),
            "side": request.side.value,
            "type": request.type.value,
            "quantity": _format_decimal(request.quantity),
            "newOrderRespType": "FULL",
        }
        if request.type == OrderType.LIMIT:
            if request.price is None:
                raise ValueError("price is required for LIMIT orders")
            params["price"] = _format_decimal(request.price)
            params["timeInForce"] = "GTC"
        raw = await self._request("POST", "/api/v3/order", params=params, signed=True, weight=1)
        return parse_order(raw)

    async def cancel_order(self, symbol: str, order_id: int) -> ExchangeOrder:
        self._require_trading()
        params = {"symbol": symbol.upper(), "orderId": order_id}
        raw = await self._request("DELETE", "/api/v3/order", params=params, signed=True, weight=1)
        return parse_order(raw)

    def _require_trading(self) -> None:
        if not self.trading_enabled:
            raise TradingDisabledError(
                "trading disabled: " + ", ".join(self.trading_block_reasons)
            )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = False,
        weight: int = 1,
    ) -> Any:
        await self.rate_limiter.consume(weight)
        params = params.copy() if params else {}
        headers = {}
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.recv_window
            params["signature"] = self._sign_params(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        log_http = self.settings.monitoring.log_http
        safe_params = self._sanitize_params(params)
        last_error: Exception | None = None

        for attempt in range(3):
            start = time.perf_counter()
            if log_http:
                self.log.info(
                    "rest_request",
                    method=method,
                    path=path,
                    params=safe_params,
                    signed=signed,
                    weight=weight,
                    attempt=attempt + 1,
                )
            try:
                response = await self.http.request(method, path, params=params, headers=headers)
            except httpx.RequestError as exc:
                last_error = exc
                self.log.warning(
                    "rest_request_error_retrying",
                    method=method,
                    path=path,
                    latency_ms=round((time.perf_counter() - start) * 1000, 2),
                    error=str(exc),
                )
                await asyncio.sleep(2**attempt)
                continue

            latency_ms = (time.perf_counter() - start) * 1000
            self._update_rate_limit_headers(response)
            if self.metrics is not None:
                self.metrics.rest_request_latency_ms.observe(latency_ms)
                if response.status_code >= 400:
                    self.metrics.rest_error_total.labels(path=path).inc()
            if response.status_code in _RETRY_STATUS:
                last_error = self._error_from_response(response)
                self.log.warning(
                    "rest_http_error_retrying",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )
                await asyncio.sleep(2**attempt)
                continue
            if response.status_code >= 400:
                error = self._error_from_response(response)
                self.log.error(
                    "rest_http_error",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    code=error.code,
                    error=error.msg,
                )
                raise error
            if log_http:
                self.log.info(
                    "rest_response",
                    method=method,
                    path=path,
                    status_code=response.status_code,
                    latency_ms=round(latency_ms, 2),
                )
            return response.json()

        raise ExchangeError(f"request failed after retries: {method} {path}: {last_error}")

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ExchangeError:
        try:
            payload = response.json()
        except ValueError:
            payload = response.text or f"HTTP {response.status_code}"
        return ExchangeError.from_payload(payload, status_code=response.status_code)

    @staticmethod
    def _sanitize_params(params: dict[str, Any]) -> dict[str, Any]:
        redacted: dict[str, Any] = {}
        for key, value in params.items():
            lowered = key.lower()
            if lowered == "signature":
                redacted[key] = "<redacted>"
                continue
            if lowered in {"timestamp", "recvwindow"}:
                continue
            redacted[key] = value
        return redacted

    def _sign_params(self, params: dict[str, Any]) -> str:
        query = urlencode(params, doseq=True)
        return hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), sha256).hexdigest()

    def _update_rate_limit_headers(self, response: httpx.Response) -> None:
        if used_weight := response.headers.get("x-mbx-used-weight-1m"):
            try:
                self.rate_limiter.update_server_reported_weight(int(used_weight))
            except ValueError:
                pass

    def _update_rate_limits(self, limits: list[dict[str, Any]]) -> None:
        for limit in limits:
            if limit.get("rateLimitType") == "REQUEST_WEIGHT" and limit.get("interval") == "MINUTE":
                self.rate_limiter.update_limit(int(limit.get("limit", 6000)))
