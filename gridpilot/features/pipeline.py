"""Fetch candles and compute indicator snapshots, degrading to a neutral snapshot on failure."""

from __future__ import annotations

import asyncio

import structlog

from gridpilot.connectors.exchange import ExchangeClient
from gridpilot.features.indicators import IndicatorSnapshot, compute_indicator_snapshot
from gridpilot.monitoring.metrics import Metrics

log = structlog.get_logger(__name__)


class FeaturePipeline:
    """Compute indicator snapshots for symbols/intervals via the exchange collaborator."""

    def __init__(
        self,
        exchange: ExchangeClient,
        timeout_sec: float = 10.0,
        kline_limit: int = 200,
        metrics: Metrics | None = None,
    ) -> None:
        self._exchange = exchange
        self._timeout_sec = timeout_sec
        self._kline_limit = kline_limit
        self._metrics = metrics

    async def snapshot(
        self,
        symbol: str,
        interval: str,
        fallback_close: float = 0.0,
        fallback_volume: float = 0.0,
    ) -> IndicatorSnapshot:
        """Return the latest snapshot; never raises.

        On timeout, exchange error or malformed candles the neutral snapshot is
        returned, carrying ``fallback_close``/``fallback_volume`` from the
        caller's market snapshot.
        """
        try:
            candles = await asyncio.wait_for(
                self._exchange.get_klines(symbol, interval, self._kline_limit),
                timeout=self._timeout_sec,
            )
            return compute_indicator_snapshot(symbol, interval, candles)
        except Exception as exc:
            log.warning(
                "indicator_fetch_failed",
                symbol=symbol,
                interval=interval,
                error=str(exc) or type(exc).__name__,
            )
            if self._metrics is not None:
                self._metrics.indicator_fetch_failures_total.labels(interval=interval).inc()
            return IndicatorSnapshot.neutral(
                symbol, interval, close=fallback_close, volume=fallback_volume
            )
