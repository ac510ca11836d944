"""Tests for logging setup and Prometheus metrics."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import orjson
import structlog

from conftest import T0, make_grid
from gridpilot.grid.models import GridOrder
from gridpilot.grid.reconciler import ActionError, ActionType, ReconcileResult
from gridpilot.models import Side
from gridpilot.monitoring import Metrics, configure_logging, symbol_context
from gridpilot.risk.governor import RiskGovernorDecision, RiskState


def test_errors_are_written_to_rotating_file(workspace_tmp_path: Path) -> None:
    configure_logging("INFO", str(workspace_tmp_path))
    try:
        log = structlog.get_logger("gridpilot.test")
        log.info("quiet_line")
        log.error("loud_line", symbol="BTCUSDT")
        lines = (workspace_tmp_path / "errors.log").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        record = orjson.loads(lines[0])
        assert record["event"] == "loud_line"
        assert record["symbol"] == "BTCUSDT"
        assert record["level"] == "error"
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
        structlog.reset_defaults()


def test_symbol_context_and_secret_redaction(workspace_tmp_path: Path) -> None:
    configure_logging("INFO", str(workspace_tmp_path))
    try:
        log = structlog.get_logger("gridpilot.test")
        with symbol_context("grid", "ethusdt"):
            log.error("cancel_rejected", api_key="abc123")
        log.error("outside_block")
        lines = (workspace_tmp_path / "errors.log").read_text(encoding="utf-8").splitlines()
        inside, outside = (orjson.loads(line) for line in lines)
        assert inside["loop"] == "grid"
        assert inside["symbol"] == "ETHUSDT"
        assert inside["api_key"] == "***"
        assert "symbol" not in outside
        assert "loop" not in outside
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()


class TestMetrics:
    def test_governor_gauges(self) -> None:
        metrics = Metrics()
        decision = RiskGovernorDecision(state=RiskState.HALT, since=T0)
        metrics.update_governor(decision, equity=1000.0, drawdown_daily=4.5)
        registry = metrics.registry
        assert registry.get_sample_value("risk_governor_state") == 2.0
        assert registry.get_sample_value("entries_paused") == 1.0
        assert registry.get_sample_value("equity_home") == 1000.0
        assert registry.get_sample_value("drawdown_daily_pct") == 4.5

    def test_reconcile_counters(self) -> None:
        metrics = Metrics()
        order = GridOrder(order_id=1, side=Side.BUY, price=96.0, quantity=0.2, placed_at=T0)
        result = ReconcileResult(
            grid=make_grid(buy_paused=True),
            placed=[order],
            cancelled=[order],
            errors=[ActionError(action=ActionType.PLACE, reason="rejected")],
        )
        metrics.record_reconcile(result)
        registry = metrics.registry
        labels = {"symbol": "BTCUSDT", "side": "BUY"}
        assert registry.get_sample_value("grid_orders_placed_total", labels) == 1.0
        assert registry.get_sample_value("grid_orders_cancelled_total", labels) == 1.0
        assert (
            registry.get_sample_value("grid_action_errors_total", {"symbol": "BTCUSDT", "action": "place"})
            == 1.0
        )
        assert registry.get_sample_value("grid_buy_paused", {"symbol": "BTCUSDT"}) == 1.0

    def test_registries_are_independent(self) -> None:
        first, second = Metrics(), Metrics()
        first.entries_paused.set(1)
        assert second.registry.get_sample_value("entries_paused") == 0.0
