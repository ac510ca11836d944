"""Regime-aware spot trading control loop: indicators, strategy plans, risk governor, grids."""

__version__ = "0.1.0"
