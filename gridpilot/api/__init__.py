"""Operator HTTP surface."""

from gridpilot.api.operator import create_app

__all__ = ["create_app"]
