"""Monitoring utilities."""

from gridpilot.monitoring.logging import configure_logging, symbol_context
from gridpilot.monitoring.metrics import Metrics

__all__ = ["configure_logging", "symbol_context", "Metrics"]
