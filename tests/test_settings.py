"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from conftest import make_settings
from gridpilot.config.settings import (
    GovernorConfig,
    GridConfig,
    RegimeConfig,
    RiskConfig,
    create_default_config,
    load_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("RUN_ENABLE_TRADING", "BINANCE_API_KEY", "BINANCE_SECRET_KEY", "OPENAI_API_KEY", "CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


class TestValidators:
    def test_governor_hysteresis_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError, match="trend_adx_off"):
            GovernorConfig(trend_adx_on=20.0, trend_adx_off=22.0)

    def test_halt_drawdown_not_below_caution(self) -> None:
        with pytest.raises(ValidationError, match="drawdown_halt_pct"):
            GovernorConfig(drawdown_caution_pct=3.0, drawdown_halt_pct=2.0)

    def test_grid_range_bounds(self) -> None:
        with pytest.raises(ValidationError, match="min_range_pct"):
            GridConfig(min_range_pct=10.0, max_range_pct=10.0)

    def test_regime_thresholds(self) -> None:
        with pytest.raises(ValidationError):
            RegimeConfig(trend_adx_min=15.0, range_adx_max=18.0)

    def test_symbols_and_assets_are_uppercased(self) -> None:
        assert GridConfig(symbols=["btcusdt", "EthUsdt"]).symbols == ["BTCUSDT", "ETHUSDT"]
        assert RiskConfig(home_asset="usdt").home_asset == "USDT"


class TestTradingGate:
    def test_all_conditions_met(self) -> None:
        assert make_settings(trading=True).trading_gate() == (True, [])

    def test_reasons_are_listed(self) -> None:
        allowed, reasons = make_settings(trading=False).trading_gate()
        assert not allowed
        assert reasons == ["RUN_ENABLE_TRADING_FALSE", "BINANCE_API_KEY not set", "BINANCE_SECRET_KEY not set"]

    def test_testnet_base_url(self) -> None:
        settings = make_settings(exchange={"use_testnet": True})
        assert settings.exchange_base_url == "https://testnet.binance.vision"


class TestLoadSettings:
    def test_yaml_values_are_loaded(self, workspace_tmp_path: Path) -> None:
        path = workspace_tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump({"grid": {"symbols": ["solusdt"], "levels": 20}, "risk": {"home_asset": "usdc"}}),
            encoding="utf-8",
        )
        settings = load_settings(path)
        assert settings.grid.symbols == ["SOLUSDT"]
        assert settings.grid.levels == 20
        assert settings.risk.home_asset == "USDC"
        assert settings.run.enable_trading is False

    def test_missing_file_uses_defaults(self, workspace_tmp_path: Path) -> None:
        settings = load_settings(workspace_tmp_path / "absent.yaml")
        assert settings.grid == GridConfig()

    def test_env_overrides_trading_flag(self, workspace_tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = workspace_tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"run": {"enable_trading": True}}), encoding="utf-8")
        monkeypatch.setenv("RUN_ENABLE_TRADING", "false")
        monkeypatch.setenv("BINANCE_API_KEY", "key")
        settings = load_settings(path)
        assert settings.run.enable_trading is False
        assert settings.binance_api_key == "key"
        assert settings.trading_gate()[1] == ["RUN_ENABLE_TRADING_FALSE", "BINANCE_SECRET_KEY not set"]

    def test_env_file_beside_config(self, workspace_tmp_path: Path) -> None:
        (workspace_tmp_path / ".env").write_text("BINANCE_SECRET_KEY=from-file\n", encoding="utf-8")
        settings = load_settings(workspace_tmp_path / "config.yaml")
        assert settings.binance_secret_key == "from-file"

    def test_default_config_round_trips(self, workspace_tmp_path: Path) -> None:
        path = workspace_tmp_path / "config.yaml"
        create_default_config(path)
        settings = load_settings(path)
        assert settings.grid == GridConfig()
        assert settings.governor == GovernorConfig()
        assert settings.run.enable_trading is False
