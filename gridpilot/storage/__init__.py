"""Durable state storage."""

from gridpilot.storage.state_store import PersistedState, StateStore

__all__ = ["PersistedState", "StateStore"]
