"""Technical indicators and the snapshot pipeline."""

from gridpilot.features.indicators import (
    BollingerBands,
    IndicatorSnapshot,
    calculate_adx,
    calculate_atr,
    calculate_bollinger,
    calculate_ema,
    calculate_rsi,
    calculate_volume_ratio,
    calculate_volume_sma,
    compute_indicator_snapshot,
)
from gridpilot.features.pipeline import FeaturePipeline

__all__ = [
    "BollingerBands",
    "IndicatorSnapshot",
    "calculate_adx",
    "calculate_atr",
    "calculate_bollinger",
    "calculate_ema",
    "calculate_rsi",
    "calculate_volume_ratio",
    "calculate_volume_sma",
    "compute_indicator_snapshot",
    "FeaturePipeline",
]
