"""Tests for the indicator snapshot pipeline."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeExchange, range_candles
from gridpilot.features.pipeline import FeaturePipeline
from gridpilot.monitoring.metrics import Metrics


def test_snapshot_from_candles(exchange: FakeExchange) -> None:
    exchange.klines[("BTCUSDT", "1h")] = range_candles()
    snapshot = asyncio.run(FeaturePipeline(exchange, kline_limit=100).snapshot("BTCUSDT", "1h"))
    assert not snapshot.is_neutral
    assert snapshot.close == pytest.approx(float(range_candles()["close"].iloc[-1]))
    assert ("get_klines", ("BTCUSDT", "1h", 100)) in exchange.calls


def test_failure_degrades_to_neutral_snapshot(exchange: FakeExchange) -> None:
    metrics = Metrics()
    pipeline = FeaturePipeline(exchange, metrics=metrics)
    snapshot = asyncio.run(pipeline.snapshot("btcusdt", "15m", fallback_close=101.0, fallback_volume=5.0))
    assert snapshot.is_neutral
    assert snapshot.symbol == "BTCUSDT"
    assert snapshot.close == 101.0
    assert snapshot.volume == 5.0
    assert metrics.registry.get_sample_value("indicator_fetch_failures_total", {"interval": "15m"}) == 1.0


def test_slow_exchange_times_out(exchange: FakeExchange) -> None:
    async def slow_klines(symbol: str, interval: str, limit: int = 200) -> None:
        await asyncio.sleep(1)

    exchange.get_klines = slow_klines  # type: ignore[method-assign]
    snapshot = asyncio.run(FeaturePipeline(exchange, timeout_sec=0.01).snapshot("BTCUSDT", "1h"))
    assert snapshot.is_neutral
