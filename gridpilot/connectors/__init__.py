"""Exchange and advisory connectors."""

from gridpilot.connectors.advisory import AdvisoryClient, NullAdvisor, Rationale
from gridpilot.connectors.exchange import ExchangeClient, ExchangeError, TradingDisabledError
from gridpilot.connectors.rest_client import BinanceSpotClient, klines_to_frame, parse_symbol_rules

__all__ = [
    "AdvisoryClient",
    "BinanceSpotClient",
    "ExchangeClient",
    "ExchangeError",
    "NullAdvisor",
    "Rationale",
    "TradingDisabledError",
    "klines_to_frame",
    "parse_symbol_rules",
]
