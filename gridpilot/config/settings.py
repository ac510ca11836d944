"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class ExchangeConfig(BaseModel):
    """Binance spot API configuration."""

    base_url: str = "https://api.binance.com"
    testnet_base_url: str = "https://testnet.binance.vision"
    use_testnet: bool = False
    recv_window: int = Field(default=5000, ge=1000, le=60000)
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)
    rules_cache_ttl_sec: int = Field(default=600, ge=10, le=86400)
    max_weight_per_minute: int = Field(default=6000, ge=100, le=20000)


class RunConfig(BaseModel):
    """Runtime trading mode configuration."""

    enable_trading: bool = Field(default=False, validation_alias="RUN_ENABLE_TRADING")

    model_config = {
        "populate_by_name": True,
    }


class RiskConfig(BaseModel):
    """Per-trade risk settings used by the strategy engine."""

    home_asset: str = "USDT"
    max_position_notional: float = Field(default=200.0, gt=0.0, le=1_000_000.0)
    risk_per_trade_fraction: float = Field(default=0.005, ge=0.0, le=1.0)
    slippage_bps: float = Field(default=5.0, ge=0.0, le=500.0)
    maker_fee_rate: float = Field(default=0.001, ge=0.0, le=0.01)
    taker_fee_rate: float = Field(default=0.001, ge=0.0, le=0.01)

    @field_validator("home_asset")
    @classmethod
    def upper_home_asset(cls, v: str) -> str:
        return v.upper()


class RegimeConfig(BaseModel):
    """Regime detection thresholds."""

    trend_adx_min: float = Field(default=20.0, ge=5.0, le=60.0)
    range_adx_max: float = Field(default=18.0, ge=5.0, le=60.0)

    @model_validator(mode="after")
    def check_order(self) -> RegimeConfig:
        if self.range_adx_max > self.trend_adx_min:
            raise ValueError(
                f"range_adx_max ({self.range_adx_max}) cannot exceed trend_adx_min ({self.trend_adx_min})"
            )
        return self


class StrategyConfig(BaseModel):
    """Strategy plan generation configuration."""

    symbols: list[str] = Field(default_factory=lambda: ["BTCUSDT"])
    kline_limit: int = Field(default=200, ge=60, le=1000)
    refresh_seconds: int = Field(default=60, ge=5, le=3600)
    regime: RegimeConfig = Field(default_factory=RegimeConfig)

    @field_validator("symbols")
    @classmethod
    def upper_symbols(cls, v: list[str]) -> list[str]:
        return [s.upper() for s in v]


class GovernorConfig(BaseModel):
    """Risk governor thresholds and dwell times."""

    enabled: bool = True
    trend_symbol: str = "BTCUSDT"
    trend_interval: str = "1h"
    trend_adx_on: float = Field(default=25.0, ge=5.0, le=80.0)
    trend_adx_off: float = Field(default=18.0, ge=0.0, le=80.0)
    drawdown_caution_pct: float = Field(default=2.0, ge=0.0, le=50.0)
    drawdown_halt_pct: float = Field(default=4.0, ge=0.0, le=80.0)
    rolling_window_minutes: int = Field(default=240, ge=30, le=10080)
    fee_burn_caution_pct: float = Field(default=0.20, ge=0.0, le=10.0)
    fee_burn_halt_pct: float = Field(default=0.40, ge=0.0, le=10.0)
    fee_window_minutes: int = Field(default=1440, ge=60, le=10080)
    min_state_seconds: int = Field(default=300, ge=0, le=86400)
    halt_min_seconds: int = Field(default=1800, ge=0, le=7 * 86400)
    vol_spike_atr_pct: float = Field(default=8.0, ge=0.0, le=100.0)

    @model_validator(mode="after")
    def check_thresholds(self) -> GovernorConfig:
        if self.trend_adx_off > self.trend_adx_on:
            raise ValueError(
                f"trend_adx_off ({self.trend_adx_off}) cannot exceed trend_adx_on ({self.trend_adx_on})"
            )
        if self.drawdown_halt_pct and self.drawdown_halt_pct < self.drawdown_caution_pct:
            raise ValueError("drawdown_halt_pct must be >= drawdown_caution_pct")
        if self.fee_burn_halt_pct and self.fee_burn_halt_pct < self.fee_burn_caution_pct:
            raise ValueError("fee_burn_halt_pct must be >= fee_burn_caution_pct")
        return self


class GridConfig(BaseModel):
    """Grid trading configuration, including buy-pause guards."""

    enabled: bool = True
    symbols: list[str] = Field(default_factory=list)
    levels: int = Field(default=12, ge=2, le=200)
    gap_bps: float = Field(default=10.0, ge=0.0, le=1000.0)
    min_step_pct: float = Field(default=0.3, ge=0.01, le=20.0)
    kline_interval: str = "1h"
    kline_limit: int = Field(default=168, ge=24, le=1000)
    min_range_pct: float = Field(default=3.0, ge=0.1, le=100.0)
    max_range_pct: float = Field(default=25.0, ge=0.5, le=200.0)
    max_trend_ratio: float = Field(default=0.6, ge=0.0, le=5.0)
    max_alloc_pct: float = Field(default=25.0, ge=0.0, le=100.0)
    max_active_grids: int = Field(default=3, ge=1, le=50)
    bootstrap_base_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    max_new_orders_per_tick: int = Field(default=6, ge=1, le=100)
    max_order_checks_per_tick: int = Field(default=12, ge=1, le=100)
    breakout_action: Literal["none", "cancel", "cancel_and_liquidate"] = "cancel"
    breakout_buffer_pct: float = Field(default=0.5, ge=0.0, le=50.0)
    # Buy-pause guards
    guard_enabled: bool = True
    guard_interval: str = "1h"
    breakdown_pct: float = Field(default=1.0, ge=0.0, le=50.0)
    breakdown_ticks: int = Field(default=3, ge=1, le=100)
    atr_pct_max: float = Field(default=6.0, ge=0.0, le=100.0)
    resume_ticks: int = Field(default=3, ge=1, le=1000)
    resume_minutes: float = Field(default=30.0, ge=0.0, le=10080.0)
    buy_pause_on_liquidity: bool = True
    min_quote_volume: float = Field(default=5_000_000.0, ge=0.0)
    liquidity_resume_ticks: int = Field(default=3, ge=1, le=1000)
    liquidity_resume_minutes: float = Field(default=30.0, ge=0.0, le=10080.0)

    @field_validator("symbols")
    @classmethod
    def upper_symbols(cls, v: list[str]) -> list[str]:
        return [s.upper() for s in v]

    @model_validator(mode="after")
    def check_range(self) -> GridConfig:
        if self.min_range_pct >= self.max_range_pct:
            raise ValueError("min_range_pct must be < max_range_pct")
        return self


class TuningConfig(BaseModel):
    """Bounds applied to suggested (never binding) tuning changes."""

    max_grid_alloc_increase_pct_per_day: float = Field(default=5.0, ge=0.0, le=100.0)
    min_quote_volume_min: float = Field(default=100_000.0, ge=0.0)
    min_quote_volume_max: float = Field(default=200_000_000.0, ge=0.0)
    levels_min: int = Field(default=4, ge=2)
    levels_max: int = Field(default=60, ge=2)


class AdvisoryConfig(BaseModel):
    """Advisory rationale service (display-only)."""

    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4.1-mini"
    timeout_sec: float = Field(default=15.0, ge=1.0, le=120.0)
    max_calls_per_hour: int = Field(default=30, ge=1, le=1000)


class SchedulerConfig(BaseModel):
    """Tick scheduling configuration."""

    tick_seconds: float = Field(default=30.0, ge=1.0, le=3600.0)
    fetch_timeout_sec: float = Field(default=10.0, ge=0.5, le=120.0)
    persist_every_tick: bool = True


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    state_path: str = "./data/state"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    api_port: int = Field(default=8000, ge=1024, le=65535)
    metrics_enabled: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_http: bool = False
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    run: RunConfig = Field(default_factory=RunConfig)

    # API credentials from environment
    binance_api_key: str = Field(default="", alias="BINANCE_API_KEY")
    binance_secret_key: str = Field(default="", alias="BINANCE_SECRET_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")

    # Sub-configurations
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    governor: GovernorConfig = Field(default_factory=GovernorConfig)
    grid: GridConfig = Field(default_factory=GridConfig)
    tuning: TuningConfig = Field(default_factory=TuningConfig)
    advisory: AdvisoryConfig = Field(default_factory=AdvisoryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @property
    def exchange_base_url(self) -> str:
        """Get the REST base URL for the active environment."""
        if self.exchange.use_testnet:
            return self.exchange.testnet_base_url
        return self.exchange.base_url

    def trading_gate(self) -> tuple[bool, list[str]]:
        """Return whether trading is allowed along with blocking reasons."""
        reasons: list[str] = []
        if not self.run.enable_trading:
            reasons.append("RUN_ENABLE_TRADING_FALSE")
        if not self.binance_api_key:
            reasons.append("BINANCE_API_KEY not set")
        if not self.binance_secret_key:
            reasons.append("BINANCE_SECRET_KEY not set")
        return (len(reasons) == 0, reasons)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    env_run_enable = os.environ.get("RUN_ENABLE_TRADING")
    if env_run_enable is not None:
        config_data.setdefault("run", {})["enable_trading"] = env_run_enable

    env_path = config_file.parent / ".env"
    return Settings(**config_data, _env_file=env_path)


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Write a default configuration file."""
    default_config = {
        "run": {"enable_trading": False},
        "exchange": {"base_url": "https://api.binance.com", "recv_window": 5000},
        "risk": RiskConfig().model_dump(),
        "strategy": StrategyConfig().model_dump(),
        "governor": GovernorConfig().model_dump(),
        "grid": GridConfig().model_dump(),
        "scheduler": SchedulerConfig().model_dump(),
        "storage": StorageConfig().model_dump(),
        "monitoring": MonitoringConfig().model_dump(),
    }
    with open(path, "w") as f:
        yaml.safe_dump(default_config, f, sort_keys=False)
